from __future__ import annotations

import logging
import mimetypes
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from aioaws.core import RequestError
from aioaws.s3 import S3Client, S3Config
from httpx import AsyncClient

from mediaproxy.upstream import (
    ByteRange,
    Delivery,
    FileDescriptor,
    Folder,
    MediaEntry,
    NotFound,
    RangeNotSatisfiable,
    StreamError,
    Transient,
    Unauthorized,
    UpstreamClient,
    UpstreamError,
    UpstreamResult,
    parse_content_range,
)

logger = logging.getLogger(__name__)


def _guess_type(key: str) -> str:
    return mimetypes.guess_type(key)[0] or "application/octet-stream"


def _raise_for_status(response: httpx.Response, key: str) -> None:
    status = response.status_code
    if status < 400:
        return
    if status == 404:
        raise NotFound(f"No object {key}")
    if status in (401, 403):
        raise Unauthorized(f"Access to {key} denied ({status})")
    raise Transient(f"Store answered {status} for {key}")


@dataclass
class S3Upstream(UpstreamClient):
    client: AsyncClient
    access_key_id: str
    access_key_secret: str
    region: str
    bucket: str
    endpoint: str | None = None
    chunk_size: int = 64 * 1024

    @classmethod
    @asynccontextmanager
    async def connect(
        cls,
        access_key_id: str,
        access_key_secret: str,
        region: str,
        bucket: str,
        endpoint: str | None = None,
        chunk_size: int = 64 * 1024,
    ) -> AsyncIterator[S3Upstream]:
        timeout = httpx.Timeout(connect=10.0, read=60.0, write=60.0, pool=10.0)
        async with AsyncClient(timeout=timeout) as client:
            try:
                yield cls(client, access_key_id, access_key_secret, region, bucket, endpoint, chunk_size)
            finally:
                await client.aclose()

    def _get_client(self) -> S3Client:
        return S3Client(
            self.client,
            S3Config(
                aws_access_key=self.access_key_id,
                aws_secret_key=self.access_key_secret,
                aws_region=self.region,
                aws_s3_bucket=self.bucket,
                aws_host=self.endpoint,
            ),
        )

    async def get_metadata(self, file_id: str) -> FileDescriptor:
        # the size is the Content-Range total of a one byte read
        url = self._get_client().signed_download_url(file_id, method="GET")
        try:
            async with self.client.stream("GET", url, headers={"Range": "bytes=0-0"}) as response:
                status = response.status_code
                headers = response.headers
        except httpx.HTTPError as exc:
            raise Transient(f"GET {file_id} failed: {exc}") from exc
        content_range = headers.get("Content-Range") or ""
        if status == 416:
            # only an empty object cannot satisfy bytes=0-0
            total = content_range.rpartition("/")[2]
            size: str | None = total if total.isdigit() else "0"
        else:
            _raise_for_status(response, file_id)
            if status == 206:
                total = content_range.rpartition("/")[2]
                size = total if total.isdigit() else None
            else:
                size = headers.get("Content-Length")
        if size is None or not size.isdigit():
            raise Transient(f"Store did not report a size for {file_id}")
        content_type = headers.get("Content-Type")
        if not content_type or content_type in ("binary/octet-stream", "application/octet-stream"):
            content_type = _guess_type(file_id)
        return FileDescriptor(file_id=file_id, mime_type=content_type, size=int(size))

    async def open_stream(self, file_id: str, requested_range: ByteRange | None = None) -> UpstreamResult:
        url = self._get_client().signed_download_url(file_id, method="GET")
        headers: dict[str, str] = {}
        if requested_range is not None:
            headers["Range"] = requested_range.header()
        request = self.client.build_request("GET", url, headers=headers)
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise Transient(f"GET {file_id} failed: {exc}") from exc

        try:
            if response.status_code == 416:
                total = (response.headers.get("Content-Range") or "").rpartition("/")[2]
                raise RangeNotSatisfiable(int(total) if total.isdigit() else 0)
            _raise_for_status(response, file_id)
            content_range = response.headers.get("Content-Range")
            delivered = None
            delivery = Delivery.FULL
            if response.status_code == 206:
                delivered = parse_content_range(content_range)
                if delivered is None:
                    raise Transient(f"206 for {file_id} without a usable Content-Range")
                delivery = Delivery.PARTIAL
        except UpstreamError:
            await response.aclose()
            raise

        logger.debug(f"Store answered {response.status_code} for {file_id} ({content_range or 'full'})")
        return UpstreamResult(
            delivery=delivery,
            delivered_range=delivered,
            content_range=content_range,
            content_length=response.headers.get("Content-Length"),
            stream=self._iter_body(response, file_id),
            close=response.aclose,
        )

    async def _iter_body(self, response: httpx.Response, key: str) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes(self.chunk_size):
                yield chunk
        except httpx.HTTPError as exc:
            raise StreamError(f"Stream for {key} broke: {exc}") from exc

    async def get_folder(self, folder_id: str) -> Folder:
        # folders are key prefixes, named after their last path segment
        name = folder_id.rstrip("/").rpartition("/")[2] or self.bucket
        return Folder(folder_id=folder_id, name=name)

    async def list_folder(self, folder_id: str) -> AsyncIterator[MediaEntry]:
        client = self._get_client()
        prefix = folder_id.rstrip("/") + "/" if folder_id else ""
        try:
            async for obj in client.list(prefix=prefix):
                mime_type = _guess_type(obj.key)
                if not mime_type.startswith(("image/", "video/")):
                    continue
                yield MediaEntry(
                    file_id=obj.key,
                    name=obj.key.rpartition("/")[2],
                    mime_type=mime_type,
                    created_time=obj.last_modified.isoformat(),
                )
        except RequestError as exc:
            if exc.status in (401, 403):
                raise Unauthorized(f"Listing {prefix!r} denied ({exc.status})") from exc
            raise Transient(f"Listing {prefix!r} failed: {exc.status}") from exc
        except httpx.HTTPError as exc:
            raise Transient(f"Listing {prefix!r} failed: {exc}") from exc
