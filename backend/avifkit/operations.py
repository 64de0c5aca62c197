"""Operator actions: capability tools, upload hook, bulk conversion, purge, cleanup, statistics."""
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

from avifkit import config as app_config
from avifkit.config import Settings, load_settings
from avifkit.conversion.files import destination_path, is_valid_output, path_to_url, remove_quietly
from avifkit.conversion.models import ConversionResult, FileHandleRef, TargetFormat, UrlRef
from avifkit.conversion.resize import scaled_copy
from avifkit.conversion.service import ConversionService, get_conversion_service
from avifkit.media import MediaItem, get_media_item, list_media_items

logger = logging.getLogger("avifkit.operations")

BULK_BATCH_MIN = 1
BULK_BATCH_MAX = 20


@dataclass
class BulkProgress:
    processed: int
    total: int
    done: bool

    def to_dict(self) -> dict:
        return asdict(self)


def _service(service: Optional[ConversionService]) -> ConversionService:
    return service or get_conversion_service()


def detect_capabilities(service: Optional[ConversionService] = None) -> dict[str, str]:
    return _service(service).detector.snapshot()


def clear_capability_cache(service: Optional[ConversionService] = None) -> dict[str, str]:
    methods = _service(service).detector.clear()
    logger.info("Capability cache cleared, re-detected: %s", methods)
    return methods


def _enabled_formats(settings: Settings) -> list[TargetFormat]:
    formats = []
    if settings.generate_avif:
        formats.append(TargetFormat.AVIF)
    if settings.generate_webp:
        formats.append(TargetFormat.WEBP)
    return formats


def convert_media_item(
    item: MediaItem,
    settings: Optional[Settings] = None,
    service: Optional[ConversionService] = None,
) -> list[ConversionResult]:
    """Original, every registered size, then breakpoint widths, for each enabled format."""
    service = _service(service)
    settings = settings or service.settings()
    formats = _enabled_formats(settings)
    if not formats or not item.file_path.is_file():
        return []

    targets = [FileHandleRef(path=item.file_path, url=item.url, item_id=item.id)]
    for path, url in zip(item.size_paths(), item.size_urls()):
        targets.append(FileHandleRef(path=path, url=url, item_id=item.id))
    if settings.pregenerate_breakpoints:
        for width in settings.breakpoint_widths:
            resized = scaled_copy(item.file_path, width)
            if resized is not None:
                targets.append(FileHandleRef(path=resized, url=path_to_url(resized), item_id=item.id))

    results = []
    for ref in targets:
        for fmt in formats:
            results.append(service.run(ref, fmt, quality=settings.default_quality(fmt.value), settings=settings))
    return results


def handle_upload(item_id: int, service: Optional[ConversionService] = None) -> list[ConversionResult]:
    """Upload hook: convert the new item when either generation toggle is on."""
    service = _service(service)
    settings = service.settings()
    if not settings.generate_avif and not settings.generate_webp:
        return []
    item = get_media_item(item_id)
    if item is None:
        logger.warning("Upload hook: media item %s not found", item_id)
        return []
    results = convert_media_item(item, settings, service)
    logger.info(
        "Upload %s: %s of %s conversions available",
        item_id, sum(1 for r in results if r.succeeded), len(results),
    )
    return results


def bulk_convert(
    offset: int = 0,
    batch_size: Optional[int] = None,
    service: Optional[ConversionService] = None,
) -> BulkProgress:
    """Convert raster media items in id order. With batch_size, process one page starting at offset."""
    service = _service(service)
    settings = service.settings()
    items = list_media_items(app_config.SOURCE_MIME_TYPES)
    total = len(items)
    offset = max(0, int(offset))
    if batch_size is None:
        batch = items[offset:]
    else:
        size = max(BULK_BATCH_MIN, min(BULK_BATCH_MAX, int(batch_size)))
        batch = items[offset:offset + size]

    for item in batch:
        convert_media_item(item, settings, service)

    processed = offset + len(batch)
    progress = BulkProgress(processed=processed, total=total, done=processed >= total)
    logger.info("Bulk conversion: %s/%s", progress.processed, progress.total)
    return progress


def _generated_files(root: Path):
    for path in sorted(root.rglob("*")):
        if path.is_file() and path.suffix.lower() in (".avif", ".webp"):
            yield path


def purge_all_conversions(root: Optional[Path] = None, service: Optional[ConversionService] = None) -> int:
    """Delete generated AVIF/WEBP files under the upload root. Uploaded AVIF/WEBP originals and their sizes stay."""
    root = Path(root or app_config.UPLOAD_DIR)
    protected: set[Path] = set()
    for item in list_media_items(("image/avif", "image/webp")):
        protected.add(item.file_path.resolve())
        protected.update(p.resolve() for p in item.size_paths())

    deleted = 0
    if root.is_dir():
        for path in _generated_files(root):
            if path.resolve() in protected:
                continue
            if remove_quietly(path):
                deleted += 1

    _service(service).registry.clear()
    logger.info("Purged %s generated files under %s", deleted, root)
    return deleted


def cleanup_invalid_files(directory: Optional[Path] = None) -> int:
    """Delete AVIF/WEBP files that fail validation."""
    root = Path(directory or app_config.UPLOAD_DIR)
    if not root.is_dir():
        return 0
    count = 0
    for path in _generated_files(root):
        fmt = path.suffix.lower().lstrip(".")
        if not is_valid_output(path, fmt, strict=True) and remove_quietly(path):
            count += 1
            logger.warning("Removed corrupted %s: %s", fmt, path)
    return count


def get_statistics() -> dict:
    """Counts and byte sums for raster originals and their default-quality AVIF/WEBP siblings."""
    settings = load_settings()
    items = list_media_items(app_config.SOURCE_MIME_TYPES)
    stats = {
        "total_images": len(items),
        "avif_converted": 0,
        "webp_converted": 0,
        "original_size": 0,
        "avif_size": 0,
        "webp_size": 0,
    }
    for item in items:
        if not item.file_path.is_file():
            continue
        stats["original_size"] += item.file_path.stat().st_size
        for fmt in app_config.OUTPUT_FORMATS:
            default = settings.default_quality(fmt)
            sibling = destination_path(item.file_path, fmt, default, default)
            if sibling.is_file():
                stats[f"{fmt}_converted"] += 1
                stats[f"{fmt}_size"] += sibling.stat().st_size
    for fmt in app_config.OUTPUT_FORMATS:
        size = stats[f"{fmt}_size"]
        stats[f"{fmt}_saved"] = stats["original_size"] - size if size > 0 else 0
    return stats


def convert_url(src: str, fmt: str, quality: Optional[int] = None, force: bool = False,
                service: Optional[ConversionService] = None) -> ConversionResult:
    """Single ad-hoc conversion of a URL or path reference."""
    return _service(service).run(UrlRef(url=(src or "").strip()), fmt, quality=quality, force=force)
