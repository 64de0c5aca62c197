"""Per-image accessors: .avif(), .webp(), .best(), and Accept-header format choice."""
import logging
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from avifkit.conversion.files import destination_path, sibling_url
from avifkit.conversion.models import FileHandleRef, SourceRef, TargetFormat, as_source_ref
from avifkit.conversion.resize import scaled_copy
from avifkit.conversion.service import ConversionService, get_conversion_service

logger = logging.getLogger("avifkit.accessors")


class ImageVariants:
    """
    Variant URLs for one image reference.

    Known variants come from the registry; anything else is converted on demand,
    pre-scaled first when a width or height is requested. Every method returns a
    usable URL: the variant, or the source image when no variant can be had.
    """

    def __init__(self, src: Union[SourceRef, str, None], service: Optional[ConversionService] = None):
        self.ref = as_source_ref(src)
        self.service = service or get_conversion_service()
        self._source = None

    @property
    def source(self):
        if self._source is None:
            self._source = self.service.resolver.resolve(self.ref)
        return self._source

    @property
    def url(self) -> str:
        return self.ref.url

    def avif(self, width: Optional[int] = None, height: Optional[int] = None, quality: Optional[int] = None) -> str:
        return self.variant(TargetFormat.AVIF, width, height, quality)

    def webp(self, width: Optional[int] = None, height: Optional[int] = None, quality: Optional[int] = None) -> str:
        # with WEBP generation off only an explicit size or quality asks for one
        if quality is None and not width and not height and not self.service.settings().generate_webp:
            return self.url
        return self.variant(TargetFormat.WEBP, width, height, quality)

    def best(self) -> str:
        """AVIF when it can be had, else WEBP, else the source URL."""
        formats = [TargetFormat.AVIF]
        if self.service.settings().generate_webp:
            formats.append(TargetFormat.WEBP)
        for fmt in formats:
            result = self.service.run(self.ref, fmt)
            if result.succeeded:
                return result.url
        return self.source.url or self.url

    def variant(self, fmt: TargetFormat, width: Optional[int] = None, height: Optional[int] = None,
                quality: Optional[int] = None) -> str:
        if not self.url and not isinstance(self.ref, FileHandleRef):
            return ""
        source = self.source
        # registered variants are stored at the configured quality only
        if quality is None and source.identity:
            try:
                known = self.service.registry.lookup(source.identity, fmt.value, width, height)
            except SQLAlchemyError as e:
                logger.warning("Variant lookup failed for %s: %s", source.identity, e)
                known = None
            if known:
                return known

        target = self.ref
        if (width or height) and source.convertible:
            resized = scaled_copy(source.path, width, height)
            if resized is not None:
                item_id = int(source.identity) if source.identity and source.identity.isdigit() else None
                target = FileHandleRef(path=resized, url=sibling_url(source.url, source.path, resized), item_id=item_id)
        return self.service.run(target, fmt, quality=quality).url


def _accepts(accept_header: Optional[str], mime: str) -> bool:
    return bool(accept_header) and mime in accept_header.lower()


def best_format_url(src: Union[SourceRef, str, None], accept_header: Optional[str],
                    service: Optional[ConversionService] = None) -> str:
    """Existing AVIF or WEBP sibling the client accepts, else the source URL. Never converts."""
    ref = as_source_ref(src)
    if not ref.url and not isinstance(ref, FileHandleRef):
        return ""
    service = service or get_conversion_service()
    source = service.resolver.resolve(ref)
    if not source.convertible:
        return source.url
    settings = service.settings()
    for fmt in (TargetFormat.AVIF, TargetFormat.WEBP):
        if not _accepts(accept_header, f"image/{fmt.value}"):
            continue
        default = settings.default_quality(fmt.value)
        candidate = destination_path(source.path, fmt.value, default, default)
        if candidate.is_file():
            return sibling_url(source.url, source.path, candidate)
    return source.url
