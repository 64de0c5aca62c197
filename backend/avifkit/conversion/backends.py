"""Conversion backends: Pillow in-process, Wand (ImageMagick library), ImageMagick command line."""
import io
import logging
import math
import resource
import shlex
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

from PIL import Image

from avifkit import config as app_config
from avifkit.conversion.models import Capability

logger = logging.getLogger("avifkit.backends")

MiB = 1024 * 1024

# container -> Pillow decoder name
DECODERS = {
    "jpeg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "gif": "GIF",
}


def sniff_container(path: Path) -> Optional[str]:
    """Container format from magic bytes; None for anything we do not decode."""
    try:
        with open(path, "rb") as fh:
            head = fh.read(12)
    except OSError:
        return None
    if head.startswith(b"\xff\xd8\xff"):
        return "jpeg"
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return "png"
    if head.startswith((b"GIF87a", b"GIF89a")):
        return "gif"
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "webp"
    return None


class BackendAdapter:
    """One conversion strategy. convert() writes dest_path and reports success."""

    capability: Capability = Capability.NONE
    name = "none"

    def probe(self, fmt: str) -> bool:
        raise NotImplementedError

    def convert(self, source_path: Path, dest_path: Path, quality: int, fmt: str) -> bool:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


# In-process ----------------------------------------------------------------

def estimate_memory_needed(width: int, height: int, container: str) -> int:
    channels = 4 if container == "png" else 3
    return math.ceil(width * height * channels * 1.5)


def ensure_memory_limit(needed_bytes: int) -> None:
    """Raise the address-space soft limit when it cannot hold the decode. Unlimited is left alone."""
    soft, hard = resource.getrlimit(resource.RLIMIT_AS)
    if soft == resource.RLIM_INFINITY:
        return
    required = needed_bytes + 32 * MiB
    if soft >= required:
        return
    new_soft = required if hard == resource.RLIM_INFINITY else min(required, hard)
    try:
        resource.setrlimit(resource.RLIMIT_AS, (new_soft, hard))
        logger.info("Increased memory limit to %sM", math.ceil(new_soft / MiB))
    except (ValueError, OSError) as e:
        logger.warning("Could not raise memory limit to %s bytes: %s", new_soft, e)


def _prepare_mode(img: Image.Image, container: str) -> Image.Image:
    # keep alpha as-is: no compositing onto a background before encoding
    if img.mode in ("RGB", "RGBA"):
        return img
    if img.mode in ("LA", "PA") or "transparency" in img.info:
        return img.convert("RGBA")
    if container == "png" and img.mode == "P":
        return img.convert("RGBA")
    return img.convert("RGB")


class PillowBackend(BackendAdapter):
    capability = Capability.IN_PROCESS
    name = "pillow"

    def probe(self, fmt: str) -> bool:
        Image.init()
        if fmt.upper() not in Image.SAVE:
            return False
        buf = io.BytesIO()
        Image.new("RGB", (1, 1), "white").save(buf, format=fmt.upper(), quality=80)
        return buf.tell() > 0

    def convert(self, source_path: Path, dest_path: Path, quality: int, fmt: str) -> bool:
        container = sniff_container(source_path)
        if container is None:
            logger.error("Unsupported source container: %s", source_path)
            return False
        with Image.open(source_path, formats=[DECODERS[container]]) as img:
            ensure_memory_limit(estimate_memory_needed(img.width, img.height, container))
            img.load()
            out = _prepare_mode(img, container)
            out.save(dest_path, format=fmt.upper(), quality=int(quality))
        return dest_path.is_file() and dest_path.stat().st_size > 0


# Library -------------------------------------------------------------------

class WandBackend(BackendAdapter):
    capability = Capability.LIBRARY
    name = "wand"

    MEMORY_LIMIT = 256 * MiB
    TIME_LIMIT = 60

    def probe(self, fmt: str) -> bool:
        from wand.color import Color
        from wand.image import Image as WandImage
        from wand.version import formats

        if not formats(fmt.upper()):
            return False
        with Color("white") as white, WandImage(width=1, height=1, background=white) as img:
            img.format = fmt
            blob = img.make_blob()
        return bool(blob)

    def convert(self, source_path: Path, dest_path: Path, quality: int, fmt: str) -> bool:
        from wand.exceptions import WandException
        from wand.image import Image as WandImage
        from wand.resource import limits

        try:
            limits["memory"] = self.MEMORY_LIMIT
            limits["time"] = self.TIME_LIMIT
            with WandImage(filename=str(source_path)) as img:
                img.strip()
                img.format = fmt
                img.compression_quality = int(quality)
                img.save(filename=str(dest_path))
        except WandException as e:
            logger.error("ImageMagick library conversion failed for %s: %s", source_path, e)
            return False
        return dest_path.is_file() and dest_path.stat().st_size > 0


# External ------------------------------------------------------------------

class ImageMagickCliBackend(BackendAdapter):
    capability = Capability.EXTERNAL
    name = "imagemagick-cli"

    # ImageMagick 7 first, then the legacy v6 entry point
    COMMANDS = ("magick", "convert")

    def __init__(self, timeout: Optional[int] = None):
        self.timeout = timeout or app_config.EXEC_TIMEOUT

    def _run(self, args: list[str]) -> tuple[int, str]:
        try:
            result = subprocess.run(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout,
                check=False,
            )
            return result.returncode, result.stdout or ""
        except subprocess.TimeoutExpired:
            return 124, f"TimeoutExpired after {self.timeout}s"
        except FileNotFoundError:
            return 127, f"{args[0]} not found"

    def _attempt(self, command: str, source_path: Path, dest_path: Path, quality: Optional[int]) -> tuple[bool, str]:
        args = [command, str(source_path)]
        if quality is not None:
            args += ["-quality", str(int(quality))]
        args.append(str(dest_path))
        logger.debug("Running: %s", shlex.join(args))
        returncode, output = self._run(args)
        ok = returncode == 0 and dest_path.is_file() and dest_path.stat().st_size > 0
        return ok, output

    def probe(self, fmt: str) -> bool:
        if not any(shutil.which(c) for c in self.COMMANDS):
            return False
        with tempfile.TemporaryDirectory(prefix="avifkit_probe_") as tmp:
            src = Path(tmp) / "probe.png"
            dst = Path(tmp) / f"probe.{fmt}"
            Image.new("RGB", (1, 1), "white").save(src, format="PNG")
            for command in self.COMMANDS:
                ok, _ = self._attempt(command, src, dst, None)
                if ok:
                    return True
        return False

    def convert(self, source_path: Path, dest_path: Path, quality: int, fmt: str) -> bool:
        outputs: list[str] = []
        for command in self.COMMANDS:
            ok, output = self._attempt(command, source_path, dest_path, quality)
            if ok:
                return True
            outputs.append(f"{command}: {output.strip()}")
        logger.error("Exec failed for %s. Output: %s", source_path, " | ".join(outputs))
        return False


BACKENDS: dict[Capability, BackendAdapter] = {
    Capability.IN_PROCESS: PillowBackend(),
    Capability.LIBRARY: WandBackend(),
    Capability.EXTERNAL: ImageMagickCliBackend(),
}

# probing order: fastest first
PROBE_ORDER = (Capability.IN_PROCESS, Capability.LIBRARY, Capability.EXTERNAL)
