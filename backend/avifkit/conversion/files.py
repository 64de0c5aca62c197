"""Derived file naming and output validation."""
import logging
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError

from avifkit import config as app_config

logger = logging.getLogger("avifkit.files")

MIN_VALID_BYTES = 50
HEADER_BYTES = 16


def destination_path(source: Path, fmt: str, quality: int, default_quality: int) -> Path:
    """{dir}/{stem}[-q{quality}].{fmt}; the suffix only appears for non-default qualities."""
    suffix = f"-q{quality}" if quality != default_quality else ""
    return source.with_name(f"{source.stem}{suffix}.{fmt}")


def resized_path(source: Path, width: int, height: int) -> Path:
    return source.with_name(f"{source.stem}-{width}x{height}{source.suffix}")


def lock_path(dest: Path) -> Path:
    return dest.with_name(dest.name + ".lock")


def sibling_url(source_url: str, source: Path, derived: Path) -> str:
    """Swap the source file name in its URL for the derived file name."""
    base, sep, name = source_url.rpartition("/")
    if sep and name == source.name:
        return f"{base}/{derived.name}"
    return source_url.replace(source.name, derived.name)


def path_to_url(path: Path) -> str:
    """Public URL for a file under a content root, else the path itself."""
    for root, base_url in app_config.content_roots():
        try:
            relative = path.resolve().relative_to(root.resolve())
        except ValueError:
            continue
        return f"{base_url}/{relative.as_posix()}"
    return str(path)


def read_header(path: Path) -> bytes:
    with open(path, "rb") as fh:
        return fh.read(HEADER_BYTES)


def is_valid_output(path: Path, fmt: str, strict: bool = False) -> bool:
    """Magic-byte check. AVIF needs ftyp + avif; WEBP needs WEBP (and RIFF when strict)."""
    try:
        if not path.is_file() or path.stat().st_size < MIN_VALID_BYTES:
            return False
        header = read_header(path)
    except OSError as e:
        logger.warning("Could not read %s: %s", path, e)
        return False
    if fmt == "avif":
        return b"ftyp" in header and b"avif" in header
    if fmt == "webp":
        if strict and b"RIFF" not in header:
            return False
        return b"WEBP" in header
    return True


def read_dimensions(path: Path) -> Optional[tuple[int, int]]:
    """Pixel size from the file header, or None when the file cannot be identified."""
    try:
        with Image.open(path) as img:
            return img.size
    except (OSError, UnidentifiedImageError, ValueError, Image.DecompressionBombError):
        return None


def remove_quietly(path: Path) -> bool:
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)
        return False
