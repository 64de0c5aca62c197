"""Conversion request/result models."""
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union


class TargetFormat(str, Enum):
    AVIF = "avif"
    WEBP = "webp"

    @classmethod
    def parse(cls, value: Union[str, "TargetFormat"]) -> "TargetFormat":
        """Anything that is not "webp" is treated as AVIF."""
        if isinstance(value, cls):
            return value
        return cls.WEBP if str(value).strip().lower() == "webp" else cls.AVIF


class Capability(str, Enum):
    NONE = "none"
    IN_PROCESS = "in_process"
    LIBRARY = "library"
    EXTERNAL = "external"


class ConversionOutcome(str, Enum):
    CONVERTED = "converted"
    CACHED = "cached"
    SOURCE_UNRESOLVABLE = "source_unresolvable"
    POLICY_REJECTED = "policy_rejected"
    LOCK_BUSY = "lock_busy"
    BACKEND_FAILURE = "backend_failure"
    VALIDATION_FAILED = "validation_failed"
    SIZE_POLICY_VIOLATION = "size_policy_violation"

    @property
    def succeeded(self) -> bool:
        return self in (ConversionOutcome.CONVERTED, ConversionOutcome.CACHED)


@dataclass(frozen=True)
class FileHandleRef:
    """An image handle that already knows its file and public URL."""

    path: Path
    url: str
    item_id: Optional[int] = None


@dataclass(frozen=True)
class UrlRef:
    url: str


SourceRef = Union[FileHandleRef, UrlRef]


def as_source_ref(src: Union[SourceRef, str, None]) -> SourceRef:
    if isinstance(src, (FileHandleRef, UrlRef)):
        return src
    return UrlRef(url=(src or "").strip())


@dataclass(frozen=True)
class SourceImage:
    url: str
    path: Optional[Path] = None
    identity: Optional[str] = None
    byte_size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def convertible(self) -> bool:
        return self.path is not None and self.path.is_file()


@dataclass(frozen=True)
class ConversionRequest:
    source: SourceImage
    target_format: TargetFormat
    quality: int
    force: bool = False


@dataclass(frozen=True)
class ConversionResult:
    url: str
    outcome: ConversionOutcome
    path: Optional[Path] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome.succeeded
