from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from mediaproxy.upstream import MediaEntry, UpstreamClient, UpstreamError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MediaItem:
    entry: MediaEntry
    collection: str

    def to_json(self) -> dict[str, Any]:
        entry = self.entry
        return {
            "id": entry.file_id,
            "name": entry.name,
            "createdTime": entry.created_time,
            "url": f"/files/{entry.file_id}",
            "thumbnailLink": entry.thumbnail_link,
            "mimeType": entry.mime_type,
            "collection": self.collection,
            "width": entry.width,
            "height": entry.height,
            "durationMillis": entry.duration_millis,
        }


@dataclass
class Catalog:
    """Media listing across the configured folders, fetched fresh on every call."""

    upstream: UpstreamClient
    folder_ids: list[str]

    async def list_media(self) -> list[MediaItem]:
        logger.info(f"Fetching media for folders: {self.folder_ids}")
        items: list[MediaItem] = []
        for folder_id in self.folder_ids:
            try:
                folder = await self.upstream.get_folder(folder_id)
                found = [
                    MediaItem(entry=entry, collection=folder.name)
                    async for entry in self.upstream.list_folder(folder_id)
                ]
            except UpstreamError as exc:
                # one unreadable folder does not hide the others
                logger.warning(f"Error accessing folder {folder_id}: {exc}")
                continue
            logger.info(f"Found {len(found)} media files in {folder.name}")
            items.extend(found)
        logger.info(f"Total media files found: {len(items)}")
        return items
