"""Admin API routes: capabilities, conversion, bulk, purge, cleanup, statistics, upload."""
import logging
import re
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Body, File, Header, HTTPException, Query, UploadFile
from PIL import Image, UnidentifiedImageError

from avifkit import config as app_config
from avifkit.accessors import best_format_url
from avifkit.conversion.files import path_to_url, remove_quietly
from avifkit.media import add_media_item
from avifkit.operations import (
    bulk_convert,
    cleanup_invalid_files,
    clear_capability_cache,
    convert_url,
    detect_capabilities,
    get_statistics,
    handle_upload,
    purge_all_conversions,
)

logger = logging.getLogger("avifkit.api")
router = APIRouter(prefix="/api", tags=["avifkit"])

UPLOAD_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".avif"}
_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/capabilities")
def get_capabilities():
    """Conversion method per format: in_process, library, external or none."""
    return detect_capabilities()


@router.post("/capabilities/clear")
def clear_capabilities():
    """Forget cached capability verdicts and detect again."""
    return {"ok": True, "methods": clear_capability_cache()}


@router.post("/convert")
def convert(
    src: str = Body(..., embed=True),
    format: str = Body("avif", embed=True),
    quality: Optional[int] = Body(None, embed=True, ge=1, le=100),
    force: bool = Body(False, embed=True),
):
    """Convert one image URL. Always answers with a usable URL; outcome says what happened."""
    src = (src or "").strip()
    if not src:
        raise HTTPException(400, "src is required")
    fmt = (format or "avif").strip().lower()
    if fmt not in app_config.OUTPUT_FORMATS:
        raise HTTPException(400, f"Unsupported format: {fmt}")
    result = convert_url(src, fmt, quality=quality, force=force)
    return {"url": result.url, "outcome": result.outcome.value, "converted": result.succeeded}


@router.get("/best")
def best_format(src: str = Query(...), accept: Optional[str] = Header(None)):
    """Already generated AVIF/WEBP the client accepts, else the source URL."""
    return {"url": best_format_url(src, accept)}


@router.post("/bulk")
def bulk(
    offset: int = Query(0, ge=0),
    batch_size: int = Query(5, ge=1, le=20),
):
    """Process one batch of the media library. Call again with offset=processed until done."""
    return bulk_convert(offset=offset, batch_size=batch_size).to_dict()


@router.post("/purge")
def purge():
    """Delete every generated AVIF/WEBP under the upload root and clear the variant registry."""
    return {"ok": True, "deleted": purge_all_conversions()}


@router.post("/cleanup")
def cleanup():
    """Delete AVIF/WEBP files that fail validation."""
    return {"ok": True, "removed": cleanup_invalid_files()}


@router.get("/statistics")
def statistics():
    return get_statistics()


def _safe_filename(name: str) -> str:
    cleaned = _UNSAFE_NAME.sub("-", Path(name).name).strip("-.")
    return cleaned or "upload"


def _unique_path(directory: Path, filename: str) -> Path:
    dest = directory / filename
    stem, suffix = dest.stem, dest.suffix
    n = 1
    while dest.exists():
        dest = directory / f"{stem}-{n}{suffix}"
        n += 1
    return dest


@router.post("/upload")
async def upload(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
):
    """Store an image in the upload root, register it, and generate its variants in the background."""
    ext = Path(file.filename or "").suffix.lower()
    if ext not in UPLOAD_EXTENSIONS:
        raise HTTPException(400, f"Unsupported format: {ext}")
    max_bytes = app_config.MAX_UPLOAD_SIZE_BYTES
    app_config.UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    dest = _unique_path(app_config.UPLOAD_DIR, _safe_filename(file.filename))
    try:
        total = 0
        with open(dest, "wb") as f:
            while chunk := await file.read(1024 * 1024):
                total += len(chunk)
                if total > max_bytes:
                    raise HTTPException(413, f"File too large (max {max_bytes // (1024 * 1024)} MB)")
                f.write(chunk)
    except HTTPException:
        remove_quietly(dest)
        raise
    except OSError as e:
        logger.exception("Upload failed: %s", e)
        remove_quietly(dest)
        raise HTTPException(500, "Upload failed")

    try:
        with Image.open(dest) as img:
            mime_type = Image.MIME.get(img.format)
    except (OSError, UnidentifiedImageError, Image.DecompressionBombError):
        remove_quietly(dest)
        raise HTTPException(400, "Not a readable image")

    item = add_media_item(dest, path_to_url(dest), mime_type)
    background_tasks.add_task(handle_upload, item.id)
    return {"id": item.id, "url": item.url, "mime_type": mime_type}
