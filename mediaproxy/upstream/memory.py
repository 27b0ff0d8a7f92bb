from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timezone

import anyio

from mediaproxy.upstream import (
    ByteRange,
    Delivery,
    FileDescriptor,
    Folder,
    MediaEntry,
    NotFound,
    StreamError,
    UpstreamClient,
    UpstreamResult,
)


@dataclass
class Object:
    body: bytes
    mime_type: str
    folder_id: str | None = None
    name: str | None = None
    created_time: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    # raise StreamError once this many bytes have been yielded
    fail_after: int | None = None


@dataclass
class InMemoryUpstream(UpstreamClient):
    storage: dict[str, Object] = field(default_factory=dict)
    folders: dict[str, str] = field(default_factory=dict)
    honor_ranges: bool = True
    chunk_size: int = 64 * 1024
    # seconds to sleep between chunks, lets tests observe an in-flight stream
    chunk_delay: float = 0.0
    opened: int = 0
    closed: int = 0
    requested_ranges: list[ByteRange | None] = field(default_factory=list)

    def put(
        self,
        file_id: str,
        body: bytes,
        mime_type: str = "application/octet-stream",
        folder_id: str | None = None,
        name: str | None = None,
        fail_after: int | None = None,
    ) -> None:
        self.storage[file_id] = Object(
            body=body,
            mime_type=mime_type,
            folder_id=folder_id,
            name=name or file_id,
            fail_after=fail_after,
        )

    def _get(self, file_id: str) -> Object:
        try:
            return self.storage[file_id]
        except KeyError:
            raise NotFound(f"No such file: {file_id}") from None

    async def get_metadata(self, file_id: str) -> FileDescriptor:
        obj = self._get(file_id)
        return FileDescriptor(file_id=file_id, mime_type=obj.mime_type, size=len(obj.body))

    async def open_stream(self, file_id: str, requested_range: ByteRange | None = None) -> UpstreamResult:
        obj = self._get(file_id)
        self.requested_ranges.append(requested_range)
        total = len(obj.body)
        if requested_range is not None and self.honor_ranges:
            data = obj.body[requested_range.start : requested_range.end + 1]
            delivered = ByteRange(requested_range.start, requested_range.start + len(data) - 1)
            result = UpstreamResult(
                delivery=Delivery.PARTIAL,
                delivered_range=delivered,
                content_range=f"bytes {delivered.start}-{delivered.end}/{total}",
                content_length=str(len(data)),
                stream=self._chunks(data, obj.fail_after),
                close=self._close,
            )
        else:
            result = UpstreamResult(
                delivery=Delivery.FULL,
                delivered_range=None,
                content_range=None,
                content_length=str(total),
                stream=self._chunks(obj.body, obj.fail_after),
                close=self._close,
            )
        self.opened += 1
        return result

    async def _chunks(self, data: bytes, fail_after: int | None) -> AsyncIterator[bytes]:
        sent = 0
        for offset in range(0, len(data), self.chunk_size):
            if fail_after is not None and sent >= fail_after:
                raise StreamError(f"Upstream connection dropped after {sent} bytes")
            chunk = data[offset : offset + self.chunk_size]
            if fail_after is not None:
                chunk = chunk[: fail_after - sent]
            if self.chunk_delay:
                await anyio.sleep(self.chunk_delay)
            sent += len(chunk)
            yield chunk
        if fail_after is not None and sent >= fail_after and sent < len(data):
            raise StreamError(f"Upstream connection dropped after {sent} bytes")

    async def _close(self) -> None:
        self.closed += 1

    async def get_folder(self, folder_id: str) -> Folder:
        try:
            return Folder(folder_id=folder_id, name=self.folders[folder_id])
        except KeyError:
            raise NotFound(f"No such folder: {folder_id}") from None

    async def list_folder(self, folder_id: str) -> AsyncIterator[MediaEntry]:
        if folder_id not in self.folders:
            raise NotFound(f"No such folder: {folder_id}")
        for file_id, obj in self.storage.items():
            if obj.folder_id != folder_id:
                continue
            if not obj.mime_type.startswith(("image/", "video/")):
                continue
            yield MediaEntry(
                file_id=file_id,
                name=obj.name or file_id,
                mime_type=obj.mime_type,
                created_time=obj.created_time,
            )
