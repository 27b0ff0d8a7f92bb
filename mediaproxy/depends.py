from functools import lru_cache
from typing import Annotated, Any, Callable, TypeVar

from fastapi import Depends, FastAPI, Request

T = TypeVar("T")


@lru_cache(maxsize=None)
def _provider(tp: Any) -> Callable[[Request], Any]:
    def provide(request: Request) -> Any:
        try:
            return request.app.state.bindings[tp]
        except (AttributeError, KeyError):
            raise LookupError(f"Nothing bound for {tp!r}") from None

    return provide


class Injected:
    """``Injected[T]`` resolves to the instance bound to ``T`` on the app."""

    def __class_getitem__(cls, tp: Any) -> Any:
        return Annotated[tp, Depends(_provider(tp))]


def bind(app: FastAPI, tp: type[T], value: T) -> None:
    bindings = getattr(app.state, "bindings", None)
    if bindings is None:
        bindings = app.state.bindings = {}
    bindings[tp] = value
