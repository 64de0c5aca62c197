"""Jinja2 filters and globals for AVIF/WEBP image URLs."""
import logging
from typing import Optional

from jinja2 import Environment, pass_context
from jinja2.runtime import Context

from avifkit.accessors import ImageVariants, best_format_url
from avifkit.conversion.service import ConversionService, get_conversion_service

logger = logging.getLogger("avifkit.templating")


def _accept_from_context(context: Context) -> str:
    # Jinja2Templates puts the Starlette request in every template context
    request = context.get("request")
    if request is None:
        return ""
    return request.headers.get("accept", "")


def register_template_filters(env: Environment, service: Optional[ConversionService] = None) -> Environment:
    """
    Add to env:
      filters  toavif, towebp, avif_src, webp_src, smart
      globals  avif_src, webp_src
    """
    def _service() -> ConversionService:
        return service or get_conversion_service()

    def toavif(src, quality=None, force=False):
        return _service().convert_to_avif(src, quality, force)

    def towebp(src, quality=None, force=False):
        return _service().convert_to_webp(src, quality, force)

    def avif_src(src, width=None, height=None, quality=None):
        return ImageVariants(src, _service()).avif(width, height, quality)

    def webp_src(src, width=None, height=None, quality=None):
        return ImageVariants(src, _service()).webp(width, height, quality)

    @pass_context
    def smart(context, src, accept=None):
        return best_format_url(src, accept if accept is not None else _accept_from_context(context), _service())

    env.filters.update(
        toavif=toavif,
        towebp=towebp,
        avif_src=avif_src,
        webp_src=webp_src,
        smart=smart,
    )
    env.globals.update(avif_src=avif_src, webp_src=webp_src)
    logger.debug("Registered image filters on %r", env)
    return env
