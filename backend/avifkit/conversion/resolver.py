"""Map an image reference to a file path and canonical URL."""
import logging
from pathlib import Path
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from avifkit import config as app_config
from avifkit import media
from avifkit.conversion.models import FileHandleRef, SourceImage, SourceRef, UrlRef, as_source_ref

logger = logging.getLogger("avifkit.resolver")


def _strip_query(url: str) -> str:
    return url.split("?", 1)[0].split("#", 1)[0]


def _path_under_content_root(url: str) -> Optional[Path]:
    clean = _strip_query(url)
    for root, base_url in app_config.content_roots():
        if clean.startswith(base_url + "/"):
            relative = clean[len(base_url) + 1:]
            candidate = (root / relative).resolve()
            try:
                candidate.relative_to(root.resolve())
            except ValueError:
                logger.warning("URL escapes content root, ignoring: %s", url)
                return None
            return candidate
    return None


class SourceResolver:
    """Resolution never raises: an unresolvable source yields a URL-only SourceImage."""

    def resolve(self, src: Union[SourceRef, str, None]) -> SourceImage:
        ref = as_source_ref(src)
        if isinstance(ref, FileHandleRef):
            identity = str(ref.item_id) if ref.item_id is not None else self._identity_for(ref.url)
            return SourceImage(url=ref.url, path=Path(ref.path), identity=identity)
        return self._resolve_url(ref)

    def _resolve_url(self, ref: UrlRef) -> SourceImage:
        url = ref.url
        if not url:
            return SourceImage(url="")
        path = _path_under_content_root(url)
        if path is not None:
            return SourceImage(url=url, path=path, identity=self._identity_for(url))
        try:
            item = media.find_by_url(url)
        except SQLAlchemyError as e:
            logger.warning("Error resolving image %s: %s", url, e)
            item = None
        if item is not None:
            return SourceImage(url=url, path=item.file_path, identity=str(item.id))
        return SourceImage(url=url)

    @staticmethod
    def _identity_for(url: str) -> Optional[str]:
        try:
            item = media.find_by_url(url)
        except SQLAlchemyError as e:
            logger.warning("Could not look up owner of %s: %s", url, e)
            return None
        return str(item.id) if item else None
