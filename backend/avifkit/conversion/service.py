"""Conversion orchestration: policy checks, cache, locking, backend call, validation, recording."""
import dataclasses
import logging
import os
import stat
from pathlib import Path
from typing import Callable, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from avifkit.config import Settings, load_settings
from avifkit.conversion.capabilities import CapabilityDetector
from avifkit.conversion.files import (
    destination_path,
    is_valid_output,
    read_dimensions,
    remove_quietly,
    sibling_url,
)
from avifkit.conversion.locks import LockManager
from avifkit.conversion.models import (
    Capability,
    ConversionOutcome,
    ConversionRequest,
    ConversionResult,
    FileHandleRef,
    SourceImage,
    SourceRef,
    TargetFormat,
    as_source_ref,
)
from avifkit.conversion.resolver import SourceResolver
from avifkit.registry import VariantRegistry

logger = logging.getLogger("avifkit.service")

SourceInput = Union[SourceRef, str, None]


def clamp_quality(value) -> int:
    return max(1, min(100, int(value)))


class ConversionService:
    """Turns an image reference into the URL of its best available variant. Never raises."""

    def __init__(
        self,
        detector: Optional[CapabilityDetector] = None,
        resolver: Optional[SourceResolver] = None,
        registry: Optional[VariantRegistry] = None,
        settings_provider: Callable[[], Settings] = load_settings,
    ):
        self.detector = detector or CapabilityDetector()
        self.resolver = resolver or SourceResolver()
        self.registry = registry or VariantRegistry()
        self._settings_provider = settings_provider
        logger.info("ConversionService initialized")

    def settings(self) -> Settings:
        return self._settings_provider()

    # public entry points --------------------------------------------------

    def convert(self, src: SourceInput, fmt, quality: Optional[int] = None, force: bool = False,
                settings: Optional[Settings] = None) -> str:
        return self.run(src, fmt, quality=quality, force=force, settings=settings).url

    def convert_to_avif(self, src: SourceInput, quality: Optional[int] = None, force: bool = False) -> str:
        return self.convert(src, TargetFormat.AVIF, quality, force)

    def convert_to_webp(self, src: SourceInput, quality: Optional[int] = None, force: bool = False) -> str:
        return self.convert(src, TargetFormat.WEBP, quality, force)

    def resolve_quality(self, source: SourceImage, fmt: TargetFormat, quality: Optional[int],
                        settings: Settings) -> int:
        """Explicit quality, else the smart rule for the image size, else the format default."""
        if quality is not None:
            return clamp_quality(quality)
        if settings.enable_smart_quality and source.width and source.height:
            return clamp_quality(settings.smart_quality(fmt.value, max(source.width, source.height)))
        return settings.default_quality(fmt.value)

    def run(self, src: SourceInput, fmt, quality: Optional[int] = None, force: bool = False,
            settings: Optional[Settings] = None) -> ConversionResult:
        fmt = TargetFormat.parse(fmt)
        settings = settings or self.settings()
        ref = as_source_ref(src)
        original_url = ref.url

        if not original_url and not isinstance(ref, FileHandleRef):
            return ConversionResult(url="", outcome=ConversionOutcome.SOURCE_UNRESOLVABLE)

        capability = self.detector.detect(fmt)
        if capability is Capability.NONE:
            return ConversionResult(url=original_url, outcome=ConversionOutcome.POLICY_REJECTED)

        source = self.resolver.resolve(ref)
        if not source.convertible:
            logger.warning("Source file not found: '%s'", source.url)
            return ConversionResult(url=source.url, outcome=ConversionOutcome.SOURCE_UNRESOLVABLE)

        source, rejected = self._check_policy(source, settings)
        if rejected is not None:
            return rejected

        request = ConversionRequest(
            source=source,
            target_format=fmt,
            quality=self.resolve_quality(source, fmt, quality, settings),
            force=force,
        )
        return self._execute(request, capability, settings)

    # state machine --------------------------------------------------------

    def _reject(self, source: SourceImage) -> ConversionResult:
        return ConversionResult(url=source.url, outcome=ConversionOutcome.POLICY_REJECTED)

    def _check_policy(self, source: SourceImage, settings: Settings) -> tuple[SourceImage, Optional[ConversionResult]]:
        path = source.path
        try:
            byte_size = path.stat().st_size
        except OSError as e:
            logger.warning("Cannot stat %s: %s", path, e)
            return source, ConversionResult(url=source.url, outcome=ConversionOutcome.SOURCE_UNRESOLVABLE)
        if byte_size > settings.max_file_size_bytes:
            logger.info("File too large for conversion (%.1fMB): %s", byte_size / 1024 / 1024, source.url)
            return source, self._reject(source)

        dims = read_dimensions(path)
        if not dims:
            logger.warning("Unable to read image info: %s", path)
            return source, self._reject(source)
        width, height = dims
        if width > settings.max_dimension or height > settings.max_dimension:
            logger.info("Image dimensions exceed maximum (%sx%s): %s", width, height, path)
            return source, self._reject(source)

        return dataclasses.replace(source, byte_size=byte_size, width=width, height=height), None

    def _execute(self, request: ConversionRequest, capability: Capability, settings: Settings) -> ConversionResult:
        source = request.source
        fmt = request.target_format.value
        dest = destination_path(source.path, fmt, request.quality, settings.default_quality(fmt))
        dest_url = sibling_url(source.url, source.path, dest)

        def failed(outcome: ConversionOutcome) -> ConversionResult:
            return ConversionResult(url=source.url, outcome=outcome)

        if not request.force and self._cached_size(dest) > 0:
            if is_valid_output(dest, fmt):
                return ConversionResult(url=dest_url, outcome=ConversionOutcome.CACHED, path=dest)
            remove_quietly(dest)
            logger.warning("Corrupted %s file removed: %s", fmt, dest)

        if not os.access(dest.parent, os.W_OK):
            logger.error("Directory not writable: %s", dest.parent)
            return failed(ConversionOutcome.BACKEND_FAILURE)

        backend = self.detector.backend_for(capability)
        if backend is None:
            logger.error("No conversion backend registered for %s", capability.value)
            return failed(ConversionOutcome.POLICY_REJECTED)

        lock = LockManager(settings.stale_lock_timeout).acquire(dest)
        if lock is None:
            return failed(ConversionOutcome.LOCK_BUSY)

        with lock:
            try:
                ok = backend.convert(source.path, dest, request.quality, fmt)
            except Exception:
                logger.exception("Exception during %s conversion of %s with %r", fmt, source.path, backend)
                ok = False
            if not ok:
                remove_quietly(dest)
                logger.error("%r failed to produce %s", backend, dest)
                return failed(ConversionOutcome.BACKEND_FAILURE)

            if not is_valid_output(dest, fmt):
                remove_quietly(dest)
                logger.error("Generated %s failed validation: %s", fmt, dest)
                return failed(ConversionOutcome.VALIDATION_FAILED)

            converted_size = dest.stat().st_size
            if settings.only_if_smaller and converted_size >= source.byte_size:
                remove_quietly(dest)
                logger.info("%s not smaller than original (%s >= %s bytes), removed: %s",
                            fmt, converted_size, source.byte_size, dest)
                return failed(ConversionOutcome.SIZE_POLICY_VIOLATION)

            saved = round((1 - converted_size / source.byte_size) * 100, 1) if source.byte_size else 0.0
            logger.info("%s created successfully, %s%% smaller: %s", fmt, saved, dest)
            self._record(source, fmt, dest, dest_url)

        return ConversionResult(url=dest_url, outcome=ConversionOutcome.CONVERTED, path=dest)

    @staticmethod
    def _cached_size(dest: Path) -> int:
        try:
            st = dest.stat()
        except FileNotFoundError:
            return 0
        return st.st_size if stat.S_ISREG(st.st_mode) else 0

    def _record(self, source: SourceImage, fmt: str, dest: Path, dest_url: str) -> None:
        if not source.identity:
            return
        try:
            self.registry.record(source.identity, fmt, dest, dest_url)
        except SQLAlchemyError as e:
            logger.warning("Could not record %s variant for %s: %s", fmt, source.identity, e)


# Singleton
_conversion_service: Optional[ConversionService] = None


def get_conversion_service() -> ConversionService:
    global _conversion_service
    if _conversion_service is None:
        _conversion_service = ConversionService()
    return _conversion_service
