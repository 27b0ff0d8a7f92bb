from __future__ import annotations

import logging
import urllib.parse
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx
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

DRIVE_API = "https://www.googleapis.com/drive/v3"
LIST_FIELDS = (
    "nextPageToken, files(id, name, createdTime, mimeType, thumbnailLink, "
    "imageMediaMetadata(width, height), videoMediaMetadata(durationMillis))"
)
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "dailyLimitExceeded"}


def _quote(file_id: str) -> str:
    # ids are opaque, never path segments
    return urllib.parse.quote(file_id, safe="")


def _error_reasons(response: httpx.Response) -> set[str]:
    try:
        payload = response.json()
    except ValueError:
        return set()
    errors = payload.get("error", {}).get("errors", []) if isinstance(payload, dict) else []
    return {e.get("reason", "") for e in errors if isinstance(e, dict)}


def _raise_for_status(response: httpx.Response, file_id: str) -> None:
    status = response.status_code
    if status < 400:
        return
    if status == 404:
        raise NotFound(f"Drive has no file {file_id}")
    if status == 401:
        raise Unauthorized(f"Drive rejected the access token for {file_id}")
    if status == 403:
        if _error_reasons(response) & RATE_LIMIT_REASONS:
            raise Transient(f"Drive rate limited the request for {file_id}")
        raise Unauthorized(f"Drive denied access to {file_id}")
    raise Transient(f"Drive answered {status} for {file_id}")


@dataclass
class DriveUpstream(UpstreamClient):
    client: AsyncClient
    access_token: str
    chunk_size: int = 64 * 1024
    base_url: str = DRIVE_API

    @classmethod
    @asynccontextmanager
    async def connect(cls, access_token: str, chunk_size: int = 64 * 1024) -> AsyncIterator[DriveUpstream]:
        # the read timeout applies per chunk, not to the whole transfer
        timeout = httpx.Timeout(connect=10.0, read=60.0, write=60.0, pool=10.0)
        async with AsyncClient(timeout=timeout, follow_redirects=True) as client:
            yield cls(client, access_token, chunk_size)

    @property
    def _auth(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    async def _get_json(self, path: str, params: dict[str, Any], ident: str) -> dict[str, Any]:
        try:
            response = await self.client.get(f"{self.base_url}/{path}", params=params, headers=self._auth)
        except httpx.HTTPError as exc:
            raise Transient(f"Drive request for {ident} failed: {exc}") from exc
        _raise_for_status(response, ident)
        return response.json()

    async def get_metadata(self, file_id: str) -> FileDescriptor:
        data = await self._get_json(
            f"files/{_quote(file_id)}",
            {"fields": "mimeType, size, name", "supportsAllDrives": "true"},
            file_id,
        )
        if data.get("size") is None:
            # native Google Docs have no binary content to stream
            raise NotFound(f"Drive file {file_id} has no downloadable content")
        return FileDescriptor(
            file_id=file_id,
            mime_type=data.get("mimeType") or "application/octet-stream",
            size=int(data["size"]),
        )

    async def open_stream(self, file_id: str, requested_range: ByteRange | None = None) -> UpstreamResult:
        headers = self._auth
        if requested_range is not None:
            headers["Range"] = requested_range.header()
        request = self.client.build_request(
            "GET",
            f"{self.base_url}/files/{_quote(file_id)}",
            params={"alt": "media", "supportsAllDrives": "true"},
            headers=headers,
        )
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise Transient(f"Drive stream for {file_id} failed to open: {exc}") from exc
        try:
            return await self._to_result(response, file_id)
        except UpstreamError:
            await response.aclose()
            raise

    async def _to_result(self, response: httpx.Response, file_id: str) -> UpstreamResult:
        if response.status_code == 416:
            total = (response.headers.get("Content-Range") or "").rpartition("/")[2]
            raise RangeNotSatisfiable(int(total) if total.isdigit() else 0)
        if response.status_code >= 400:
            # error bodies are small json documents
            try:
                await response.aread()
            except httpx.HTTPError as exc:
                raise Transient(f"Drive answered {response.status_code} for {file_id}") from exc
            _raise_for_status(response, file_id)
        content_range = response.headers.get("Content-Range")
        if response.status_code == 206:
            delivered = parse_content_range(content_range)
            if delivered is None:
                raise Transient(f"Drive sent 206 for {file_id} without a usable Content-Range")
            delivery = Delivery.PARTIAL
        else:
            delivered = None
            delivery = Delivery.FULL
        logger.debug(f"Drive answered {response.status_code} for {file_id} ({content_range or 'full'})")
        return UpstreamResult(
            delivery=delivery,
            delivered_range=delivered,
            content_range=content_range,
            content_length=response.headers.get("Content-Length"),
            stream=self._iter_body(response, file_id),
            close=response.aclose,
        )

    async def _iter_body(self, response: httpx.Response, file_id: str) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes(self.chunk_size):
                yield chunk
        except httpx.HTTPError as exc:
            raise StreamError(f"Drive stream for {file_id} broke: {exc}") from exc

    async def get_folder(self, folder_id: str) -> Folder:
        data = await self._get_json(
            f"files/{_quote(folder_id)}",
            {"fields": "name", "supportsAllDrives": "true"},
            folder_id,
        )
        return Folder(folder_id=folder_id, name=data.get("name", folder_id))

    async def list_folder(self, folder_id: str) -> AsyncIterator[MediaEntry]:
        query = (
            f"'{folder_id}' in parents and "
            "(mimeType contains 'image/' or mimeType contains 'video/') and trashed = false"
        )
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {
                "q": query,
                "fields": LIST_FIELDS,
                "pageSize": 100,
                "supportsAllDrives": "true",
                "includeItemsFromAllDrives": "true",
            }
            if page_token:
                params["pageToken"] = page_token
            data = await self._get_json("files", params, folder_id)
            files = data.get("files", [])
            logger.info(f"Fetched {len(files)} files from folder {folder_id}")
            for item in files:
                image = item.get("imageMediaMetadata") or {}
                video = item.get("videoMediaMetadata") or {}
                duration = video.get("durationMillis")
                yield MediaEntry(
                    file_id=item["id"],
                    name=item.get("name", item["id"]),
                    mime_type=item.get("mimeType", "application/octet-stream"),
                    created_time=item.get("createdTime"),
                    thumbnail_link=item.get("thumbnailLink"),
                    width=image.get("width"),
                    height=image.get("height"),
                    duration_millis=int(duration) if duration is not None else None,
                )
            page_token = data.get("nextPageToken")
            if not page_token:
                break
