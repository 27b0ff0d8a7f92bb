import logging
from typing import Annotated, Any

import anyio
from fastapi import APIRouter, Header, Path, Request, Response
from fastapi.responses import PlainTextResponse

from mediaproxy.catalog import Catalog
from mediaproxy.config import Config
from mediaproxy.depends import Injected
from mediaproxy.ranges import head_envelope, negotiate, parse_range, unsatisfiable_envelope
from mediaproxy.responder import StreamingProxyResponse
from mediaproxy.upstream import (
    FileDescriptor,
    NotFound,
    RangeNotSatisfiable,
    Transient,
    Unauthorized,
    UpstreamClient,
    UpstreamError,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health() -> Response:
    return Response(status_code=200)


async def describe(upstream: UpstreamClient, file_id: str, timeout: float) -> FileDescriptor:
    try:
        with anyio.fail_after(timeout):
            return await upstream.get_metadata(file_id)
    except TimeoutError:
        raise Transient(f"Metadata for {file_id} took longer than {timeout}s") from None


@router.head("/files/{file_id:path}")
async def head_file(
    file_id: Annotated[str, Path()],
    upstream: Injected[UpstreamClient],
    config: Injected[Config],
) -> Response:
    descriptor = await describe(upstream, file_id, config.metadata_timeout)
    envelope = head_envelope(descriptor)
    return Response(status_code=envelope.status_code, headers=envelope.headers)


@router.get("/files/{file_id:path}")
async def stream_file(
    file_id: Annotated[str, Path()],
    upstream: Injected[UpstreamClient],
    config: Injected[Config],
    range: Annotated[str | None, Header()] = None,
) -> Response:
    logger.info(f"[Stream] Request for {file_id} | Range: {range or 'None'}")
    descriptor = await describe(upstream, file_id, config.metadata_timeout)
    # a bad range is answered before upstream is asked for any body
    client_range = parse_range(range, descriptor.size)
    result = await upstream.open_stream(file_id, client_range)
    try:
        envelope = negotiate(client_range, descriptor, result)
    except BaseException:
        await result.aclose()
        raise
    logger.info(
        f"[Stream] {file_id} -> {envelope.status_code} "
        f"(upstream {result.delivery.value}, {envelope.headers.get('Content-Range', 'no range')})"
    )
    return StreamingProxyResponse(envelope, result, label=file_id)


@router.get("/api/media")
async def list_media(catalog: Injected[Catalog]) -> list[dict[str, Any]]:
    return [item.to_json() for item in await catalog.list_media()]


async def upstream_error_handler(request: Request, exc: UpstreamError) -> Response:
    headers: dict[str, str] = {}
    body = exc.detail
    if isinstance(exc, RangeNotSatisfiable):
        headers = unsatisfiable_envelope(exc.size).headers
        body = ""
    if request.method == "HEAD":
        body = ""
    if exc.status_code >= 500:
        logger.error(f"Error fetching {request.url.path}: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code}: {exc}")
    return PlainTextResponse(body, status_code=exc.status_code, headers=headers)


# StreamError is left out: it only happens after headers are sent
HANDLED_ERRORS = (NotFound, Unauthorized, Transient, RangeNotSatisfiable)
