"""Proportional resizing for breakpoint and accessor variants."""
import logging
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError

from avifkit.conversion.files import resized_path

logger = logging.getLogger("avifkit.resize")

# Pillow save options per source container
_SAVE_OPTIONS = {
    "JPEG": {"quality": 90},
    "PNG": {"compress_level": 9},
    "WEBP": {"quality": 90},
    "GIF": {},
}


def target_size(
    width: int,
    height: int,
    target_width: Optional[int] = None,
    target_height: Optional[int] = None,
) -> tuple[int, int]:
    """
    Fit within target width and/or height, maintaining aspect ratio.
    If only one dimension is set, the other is computed from the image ratio.
    """
    if target_width is None and target_height is None:
        return width, height
    if target_width is not None and target_height is not None:
        scale = min(target_width / width, target_height / height)
    elif target_width is not None:
        scale = target_width / width
    else:
        scale = target_height / height
    return max(1, int(round(width * scale))), max(1, int(round(height * scale)))


def create_resized_image(source: Path, dest: Path, width: int, height: int) -> bool:
    """Write source scaled to exactly width x height at dest, in the source's own container."""
    try:
        with Image.open(source) as img:
            fmt = img.format
            if fmt not in _SAVE_OPTIONS:
                logger.warning("Cannot resize %s image: %s", fmt, source)
                return False
            out = img if img.mode != "P" else img.convert("RGBA")
            out = out.resize((width, height), Image.Resampling.LANCZOS)
            if fmt == "JPEG" and out.mode != "RGB":
                out = out.convert("RGB")
            out.save(dest, format=fmt, **_SAVE_OPTIONS[fmt])
    except (OSError, UnidentifiedImageError, ValueError, Image.DecompressionBombError) as e:
        logger.warning("Resize failed for %s: %s", source, e)
        return False
    return True


def scaled_copy(source: Path, width: Optional[int], height: Optional[int] = None) -> Optional[Path]:
    """
    Proportional copy {stem}-{w}x{h}.{ext} beside source, reused when it already exists.
    Returns None when nothing smaller than the original is asked for, or on failure.
    """
    if not width and not height:
        return None
    try:
        with Image.open(source) as img:
            orig_w, orig_h = img.size
    except (OSError, UnidentifiedImageError, ValueError, Image.DecompressionBombError) as e:
        logger.warning("Cannot read %s for resizing: %s", source, e)
        return None
    if (width and width >= orig_w) or (height and height >= orig_h and not width):
        return None
    w, h = target_size(orig_w, orig_h, width or None, height or None)
    dest = resized_path(source, w, h)
    if dest.is_file():
        return dest
    if not create_resized_image(source, dest, w, h):
        return None
    logger.info("Created %sx%s copy of %s", w, h, source.name)
    return dest
