from __future__ import annotations

import enum
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol


class UpstreamError(Exception):
    status_code = 500
    detail = "Upstream error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.detail)


class NotFound(UpstreamError):
    status_code = 404
    detail = "File not found"


class Unauthorized(UpstreamError):
    status_code = 401
    detail = "Upstream refused access"


class Transient(UpstreamError):
    status_code = 500
    detail = "Error fetching file"


class RangeNotSatisfiable(UpstreamError):
    status_code = 416
    detail = "Range not satisfiable"

    def __init__(self, size: int, message: str | None = None) -> None:
        super().__init__(message)
        self.size = size


class StreamError(UpstreamError):
    """The upstream body failed after bytes had started flowing."""


@dataclass(frozen=True)
class FileDescriptor:
    file_id: str
    mime_type: str
    size: int


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def header(self) -> str:
        return f"bytes={self.start}-{self.end}"


class Delivery(enum.Enum):
    FULL = "full"
    PARTIAL = "partial"


_CONTENT_RANGE = re.compile(r"^bytes (\d+)-(\d+)/(\d+|\*)$")


def parse_content_range(value: str | None) -> ByteRange | None:
    # Content-Range: bytes 100-199/1000
    if not value:
        return None
    match = _CONTENT_RANGE.match(value.strip())
    if match is None:
        return None
    return ByteRange(start=int(match.group(1)), end=int(match.group(2)))


@dataclass
class UpstreamResult:
    delivery: Delivery
    delivered_range: ByteRange | None
    content_range: str | None
    content_length: str | None
    stream: AsyncIterator[bytes]
    close: Callable[[], Awaitable[None]] | None = None

    async def aclose(self) -> None:
        if self.close is not None:
            close, self.close = self.close, None
            await close()


@dataclass(frozen=True)
class Folder:
    folder_id: str
    name: str


@dataclass(frozen=True)
class MediaEntry:
    file_id: str
    name: str
    mime_type: str
    created_time: str | None = None
    thumbnail_link: str | None = None
    width: int | None = None
    height: int | None = None
    duration_millis: int | None = None


class UpstreamClient(Protocol):
    async def get_metadata(self, file_id: str) -> FileDescriptor: ...

    async def open_stream(self, file_id: str, requested_range: ByteRange | None = None) -> UpstreamResult: ...

    async def get_folder(self, folder_id: str) -> Folder: ...

    def list_folder(self, folder_id: str) -> AsyncIterator[MediaEntry]: ...
