"""Media library records: uploaded originals and their registered size files."""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from avifkit.db import (
    find_media_item_rows_by_filename,
    get_media_item_row,
    insert_media_item,
    list_media_item_rows,
)

logger = logging.getLogger("avifkit.media")


@dataclass
class MediaItem:
    id: int
    file_path: Path
    url: str
    mime_type: Optional[str] = None
    sizes: list[str] = field(default_factory=list)  # file names next to file_path

    @property
    def base_url(self) -> str:
        return self.url.rsplit("/", 1)[0]

    def size_paths(self) -> list[Path]:
        return [self.file_path.parent / name for name in self.sizes]

    def size_urls(self) -> list[str]:
        return [f"{self.base_url}/{name}" for name in self.sizes]


def _from_row(row: dict) -> MediaItem:
    return MediaItem(
        id=row["id"],
        file_path=Path(row["file_path"]),
        url=row["url"],
        mime_type=row.get("mime_type"),
        sizes=list(row.get("sizes") or []),
    )


def add_media_item(file_path: Path, url: str, mime_type: Optional[str] = None,
                   sizes: Optional[list[str]] = None) -> MediaItem:
    item_id = insert_media_item(str(file_path), url, mime_type, list(sizes or []))
    logger.info("Registered media item %s: %s", item_id, file_path.name)
    return MediaItem(id=item_id, file_path=file_path, url=url, mime_type=mime_type, sizes=list(sizes or []))


def get_media_item(item_id: int) -> Optional[MediaItem]:
    row = get_media_item_row(item_id)
    return _from_row(row) if row else None


def list_media_items(mime_types: Optional[tuple[str, ...]] = None) -> list[MediaItem]:
    return [_from_row(r) for r in list_media_item_rows(mime_types)]


def find_by_url(url: str) -> Optional[MediaItem]:
    """Owning item for a URL: the original URL, one of its size URLs, then a file name match."""
    if not url:
        return None
    filename = url.rsplit("/", 1)[-1].split("?", 1)[0]
    if not filename:
        return None
    candidates = [_from_row(r) for r in find_media_item_rows_by_filename(filename)]
    for item in candidates:
        if item.url == url:
            return item
    # size files share the directory but not the stem, so scan everything for those
    for item in list_media_items():
        if url in item.size_urls():
            return item
    return candidates[0] if candidates else None
