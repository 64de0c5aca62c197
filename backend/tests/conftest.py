"""
Shared fixtures: temporary content roots, a throwaway SQLite database and
fake conversion backends, so tests never need ImageMagick or a real encoder.
"""

import dataclasses
import struct
import zlib
import sys
from pathlib import Path

import pytest
from PIL import Image

# Add backend to path for imports
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from avifkit import config as app_config
from avifkit.config import Settings, merge_settings
from avifkit.conversion import service as service_module
from avifkit.conversion.backends import BackendAdapter
from avifkit.conversion.capabilities import CapabilityDetector
from avifkit.conversion.models import Capability
from avifkit.conversion.service import ConversionService
from avifkit.db import configure_database, get_engine

UPLOAD_URL = "http://test.local/uploads"
THEME_URL = "http://test.local/theme"

# smallest payloads that pass the magic-byte checks
AVIF_BYTES = b"\x00\x00\x00\x1cftypavif" + b"\x00" * 116
WEBP_BYTES = b"RIFF\x78\x00\x00\x00WEBPVP8 " + b"\x00" * 112
VALID_OUTPUT = {"avif": AVIF_BYTES, "webp": WEBP_BYTES}


class FakeBackend(BackendAdapter):
    """Writes canned bytes instead of encoding. Records every call."""

    name = "fake"

    def __init__(self, capability=Capability.IN_PROCESS, supported=("avif", "webp"),
                 payload=None, result=True, error=None):
        self.capability = capability
        self.supported = set(supported)
        self.payload = payload
        self.result = result
        self.error = error
        self.probes = []
        self.calls = []

    def probe(self, fmt):
        self.probes.append(fmt)
        return fmt in self.supported

    def convert(self, source_path, dest_path, quality, fmt):
        self.calls.append((Path(source_path), Path(dest_path), quality, fmt))
        if self.error is not None:
            raise self.error
        data = self.payload if self.payload is not None else VALID_OUTPUT[fmt]
        Path(dest_path).write_bytes(data)
        return self.result


@pytest.fixture(autouse=True)
def content_roots(tmp_path, monkeypatch):
    """Upload and theme roots under tmp_path, served from test.local."""
    uploads = tmp_path / "uploads"
    theme = tmp_path / "theme"
    uploads.mkdir()
    theme.mkdir()
    monkeypatch.setattr(app_config, "UPLOAD_DIR", uploads)
    monkeypatch.setattr(app_config, "UPLOAD_URL", UPLOAD_URL)
    monkeypatch.setattr(app_config, "THEME_DIR", theme)
    monkeypatch.setattr(app_config, "THEME_URL", THEME_URL)
    for key in list(app_config._ENV_KEYS.values()):
        monkeypatch.delenv(key, raising=False)
    return uploads, theme


@pytest.fixture(autouse=True)
def database(tmp_path):
    engine = configure_database(f"sqlite:///{tmp_path / 'test.db'}")
    yield engine
    get_engine().dispose()


@pytest.fixture
def upload_dir(content_roots):
    return content_roots[0]


@pytest.fixture
def make_image(upload_dir):
    """Write a real raster image and return (path, public url)."""

    def _make(name="photo.jpg", size=(64, 48), color=(200, 100, 50), directory=None, fmt=None):
        directory = directory or upload_dir
        path = directory / name
        path.parent.mkdir(parents=True, exist_ok=True)
        mode = "RGBA" if path.suffix.lower() == ".png" else "RGB"
        fill = color + (255,) if mode == "RGBA" else color
        Image.new(mode, size, fill).save(path, format=fmt)
        rel = path.relative_to(directory).as_posix()
        base = UPLOAD_URL if directory == upload_dir else THEME_URL
        return path, f"{base}/{rel}"

    return _make


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def settings():
    return merge_settings({})


@pytest.fixture
def make_service(fake_backend, settings):
    """ConversionService wired to fake backends and fixed settings."""

    def _make(backends=None, settings_obj=None):
        if backends is None:
            backends = {Capability.IN_PROCESS: fake_backend}
        detector = CapabilityDetector(backends=backends)
        snapshot = settings_obj if settings_obj is not None else settings
        return ConversionService(detector=detector, settings_provider=lambda: snapshot)

    return _make


@pytest.fixture
def service(make_service):
    return make_service()


@pytest.fixture
def default_service(monkeypatch, service):
    """Install the test service as the process-wide singleton."""
    monkeypatch.setattr(service_module, "_conversion_service", service)
    return service


def settings_with(**overrides) -> Settings:
    return dataclasses.replace(merge_settings({}), **overrides)


def write_png_header(path: Path, width: int, height: int) -> Path:
    """A PNG that declares width x height but carries no pixel data."""

    def chunk(kind: bytes, data: bytes) -> bytes:
        return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", zlib.crc32(kind + data))

    ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    path.write_bytes(b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", ihdr) + chunk(b"IEND", b""))
    return path
