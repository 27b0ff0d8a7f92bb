"""
Streaming responder for proxied upstream bodies.

Writes the negotiated status and headers, then pipes the upstream byte stream
to the client one chunk per ASGI ``send``. Awaiting each send lets the server's
flow control pause upstream reads while the client socket is backed up, so
memory stays bounded by a single chunk whatever the file size.
"""

from __future__ import annotations

import logging
from functools import partial
from typing import Awaitable, Callable

import anyio
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from mediaproxy.ranges import Envelope
from mediaproxy.upstream import StreamError, UpstreamResult

logger = logging.getLogger(__name__)


class StreamingProxyResponse(Response):
    """
    Response whose body is an upstream stream.

    Once ``http.response.start`` is sent the headers are final. If upstream
    fails after that point no further bytes are written and the ``StreamError``
    is re-raised, which makes the ASGI server drop the connection; the client
    sees a short body against the committed ``Content-Length``. A client
    disconnect cancels the pending upstream read. The upstream result is
    closed in every case.
    """

    def __init__(
        self,
        envelope: Envelope,
        upstream: UpstreamResult,
        label: str = "",
    ) -> None:
        self.status_code = envelope.status_code
        self.upstream = upstream
        self.label = label
        self.background = None
        self.init_headers(envelope.headers)
        self.bytes_sent = 0
        self.completed = False
        self.client_disconnected = False
        self._failure: StreamError | None = None

    async def _listen_for_disconnect(self, receive: Receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                self.client_disconnected = True
                logger.debug(f"Client disconnected from {self.label} after {self.bytes_sent} bytes")
                break

    async def _stream(self, send: Send) -> None:
        await send(
            {
                "type": "http.response.start",
                "status": self.status_code,
                "headers": self.raw_headers,
            }
        )
        try:
            async for chunk in self.upstream.stream:
                if not chunk:
                    continue
                await send({"type": "http.response.body", "body": chunk, "more_body": True})
                self.bytes_sent += len(chunk)
            # release upstream before the client can see the response finish
            await self.upstream.aclose()
            await send({"type": "http.response.body", "body": b"", "more_body": False})
        except StreamError as exc:
            self._failure = exc
            return
        except OSError:
            # the server reports a vanished client by failing send
            self.client_disconnected = True
            logger.debug(f"Client went away from {self.label} after {self.bytes_sent} bytes")
            return
        self.completed = True

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            async with anyio.create_task_group() as task_group:

                async def wrap(func: Callable[[], Awaitable[None]]) -> None:
                    await func()
                    task_group.cancel_scope.cancel()

                task_group.start_soon(wrap, partial(self._stream, send))
                await wrap(partial(self._listen_for_disconnect, receive))
        finally:
            with anyio.CancelScope(shield=True):
                await self.upstream.aclose()

        if self._failure is not None:
            logger.warning(
                f"Upstream failed mid-stream for {self.label} after {self.bytes_sent} bytes, "
                f"aborting connection: {self._failure}"
            )
            raise self._failure

        if self.background is not None and self.completed:
            await self.background()
