from .models import (
    Capability,
    ConversionOutcome,
    ConversionResult,
    FileHandleRef,
    SourceRef,
    TargetFormat,
    UrlRef,
)

__all__ = [
    "Capability",
    "ConversionOutcome",
    "ConversionResult",
    "FileHandleRef",
    "SourceRef",
    "TargetFormat",
    "UrlRef",
]
