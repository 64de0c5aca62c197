"""Reverse index from a source image to its produced variants."""
import logging
from pathlib import Path
from typing import Optional

from avifkit.conversion.files import path_to_url, read_dimensions
from avifkit.db import delete_all_variants, get_variant_rows, upsert_variant

logger = logging.getLogger("avifkit.registry")

ORIGINAL_KEY = "original"


def dimension_key(path: Path) -> str:
    """WxH read back from the produced file, or "original" when it cannot be read."""
    dims = read_dimensions(path)
    if not dims:
        return ORIGINAL_KEY
    return f"{dims[0]}x{dims[1]}"


def _key_width(key: str) -> Optional[int]:
    parts = key.split("x")
    if len(parts) != 2 or not parts[0].isdigit():
        return None
    return int(parts[0])


class VariantRegistry:
    """format -> (dimension key -> URL), keyed by source identity."""

    def record(self, identity: str, fmt: str, dest_path: Path, url: Optional[str] = None) -> str:
        key = dimension_key(dest_path)
        upsert_variant(identity, fmt, key, url or path_to_url(dest_path))
        logger.debug("Recorded %s variant %s for %s", fmt, key, identity)
        return key

    def lookup(
        self,
        identity: str,
        fmt: str,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> Optional[str]:
        entries = get_variant_rows(identity, fmt)
        if not entries:
            return None
        by_key = dict(entries)
        if width and height:
            exact = by_key.get(f"{int(width)}x{int(height)}")
            if exact:
                return exact
        if width and not height:
            for key, url in entries:
                if _key_width(key) == int(width):
                    return url
        return by_key.get(ORIGINAL_KEY)

    def clear(self) -> int:
        removed = delete_all_variants()
        logger.info("Cleared %s variant records", removed)
        return removed
