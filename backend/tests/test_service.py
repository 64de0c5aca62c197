"""
Tests for the conversion service: the full path from reference to variant URL,
every failure outcome, and the invariants on what is left on disk.
"""

import os
import time
from pathlib import Path
from unittest.mock import patch

from conftest import AVIF_BYTES, UPLOAD_URL, FakeBackend, settings_with, write_png_header

from avifkit.conversion.files import lock_path
from avifkit.conversion.locks import LockManager
from avifkit.conversion.models import (
    Capability,
    ConversionOutcome,
    FileHandleRef,
    TargetFormat,
    UrlRef,
)
from avifkit.media import add_media_item
from avifkit.registry import VariantRegistry


class TestFirstConversion:
    """A resolvable upload with a working backend yields a validated sibling file."""

    def test_converts_upload_url(self, service, make_image, fake_backend):
        path, url = make_image("photo.jpg")

        result = service.run(url, "avif")

        assert result.outcome is ConversionOutcome.CONVERTED
        assert result.url == f"{UPLOAD_URL}/photo.avif"
        assert path.with_suffix(".avif").is_file()
        assert not lock_path(path.with_suffix(".avif")).exists()
        assert fake_backend.calls[0][2] == 80

    def test_convert_returns_plain_url(self, service, make_image):
        _, url = make_image("photo.jpg")

        assert service.convert_to_webp(url) == f"{UPLOAD_URL}/photo.webp"

    def test_unknown_format_is_avif(self, service, make_image):
        _, url = make_image("photo.jpg")

        assert service.convert(url, "tiff").endswith("/photo.avif")

    def test_file_handle_is_used_verbatim(self, service, make_image, fake_backend):
        path, _ = make_image("photo.jpg")
        ref = FileHandleRef(path=path, url="https://cdn.example/x/photo.jpg")

        result = service.run(ref, TargetFormat.WEBP)

        assert result.url == "https://cdn.example/x/photo.webp"
        assert fake_backend.calls[0][0] == path

    def test_nested_directories(self, service, make_image):
        path, url = make_image("2024/05/photo.jpg")

        assert service.convert_to_avif(url) == f"{UPLOAD_URL}/2024/05/photo.avif"
        assert (path.parent / "photo.avif").is_file()


class TestCache:
    def test_second_call_is_a_cache_hit(self, service, make_image, fake_backend):
        _, url = make_image("photo.jpg")

        first = service.run(url, "avif")
        second = service.run(url, "avif")

        assert first.outcome is ConversionOutcome.CONVERTED
        assert second.outcome is ConversionOutcome.CACHED
        assert second.url == first.url
        assert len(fake_backend.calls) == 1

    def test_force_reconverts(self, service, make_image, fake_backend):
        _, url = make_image("photo.jpg")

        service.run(url, "avif")
        result = service.run(url, "avif", force=True)

        assert result.outcome is ConversionOutcome.CONVERTED
        assert len(fake_backend.calls) == 2

    def test_corrupt_cached_file_is_replaced(self, service, make_image, fake_backend):
        path, url = make_image("photo.jpg")
        path.with_suffix(".avif").write_bytes(b"garbage" * 20)

        result = service.run(url, "avif")

        assert result.outcome is ConversionOutcome.CONVERTED
        assert len(fake_backend.calls) == 1

    def test_cached_file_removed_by_another_worker(self, service, make_image, fake_backend):
        path, url = make_image("photo.jpg")
        dest = path.with_suffix(".avif")
        dest.write_bytes(AVIF_BYTES)
        real_stat = Path.stat
        vanished = []

        def stat(self, *args, **kwargs):
            if self == dest and not vanished:
                vanished.append(self)
                os.remove(self)
                raise FileNotFoundError(str(self))
            return real_stat(self, *args, **kwargs)

        with patch.object(Path, "stat", stat):
            result = service.run(url, "avif")

        assert vanished == [dest]
        assert result.outcome is ConversionOutcome.CONVERTED
        assert len(fake_backend.calls) == 1


class TestQuality:
    def test_custom_quality_gets_suffixed_file(self, service, make_image, fake_backend):
        path, url = make_image("photo.jpg")

        result = service.run(url, "avif", quality=65)

        assert result.url == f"{UPLOAD_URL}/photo-q65.avif"
        assert (path.parent / "photo-q65.avif").is_file()
        assert fake_backend.calls[0][2] == 65

    def test_quality_equal_to_default_has_no_suffix(self, service, make_image):
        _, url = make_image("photo.jpg")

        assert service.convert(url, "webp", quality=82).endswith("/photo.webp")

    def test_quality_is_clamped(self, service, make_image, fake_backend):
        _, url = make_image("photo.jpg")

        result = service.run(url, "avif", quality=500)

        assert result.url.endswith("/photo-q100.avif")
        assert fake_backend.calls[0][2] == 100

    def test_smart_quality(self, make_service, make_image, fake_backend):
        svc = make_service(settings_obj=settings_with(enable_smart_quality=True))
        _, url = make_image("photo.jpg", size=(1500, 900))

        result = svc.run(url, "avif")

        # 1500px falls in the 2000px rule, which matches the AVIF default
        assert fake_backend.calls[0][2] == 80
        assert result.url.endswith("/photo.avif")

    def test_smart_quality_small_image(self, make_service, make_image, fake_backend):
        svc = make_service(settings_obj=settings_with(enable_smart_quality=True))
        _, url = make_image("photo.jpg", size=(400, 300))

        result = svc.run(url, "webp")

        assert fake_backend.calls[0][2] == 90
        assert result.url.endswith("/photo-q90.webp")


class TestUnconvertible:
    """Anything that cannot be converted hands back the reference unchanged."""

    def test_no_capability_skips_all_io(self, make_service, make_image):
        svc = make_service(backends={Capability.IN_PROCESS: FakeBackend(supported=())})
        _, url = make_image("photo.jpg")

        with patch.object(svc.resolver, "resolve") as mock_resolve:
            result = svc.run(url, "avif")

        assert result.outcome is ConversionOutcome.POLICY_REJECTED
        assert result.url == url
        mock_resolve.assert_not_called()

    def test_remote_url(self, service, fake_backend):
        url = "https://elsewhere.example/img/cat.jpg"

        result = service.run(url, "avif")

        assert result.outcome is ConversionOutcome.SOURCE_UNRESOLVABLE
        assert result.url == url
        assert fake_backend.calls == []

    def test_missing_file_under_root(self, service):
        url = f"{UPLOAD_URL}/gone.jpg"

        assert service.run(url, "avif").outcome is ConversionOutcome.SOURCE_UNRESOLVABLE

    def test_empty_reference(self, service):
        assert service.convert("", "avif") == ""
        assert service.convert(None, "webp") == ""

    def test_oversized_pixel_count_is_rejected(self, service, upload_dir, fake_backend):
        write_png_header(upload_dir / "huge.png", 15000, 12000)
        url = f"{UPLOAD_URL}/huge.png"

        result = service.run(url, "avif")

        assert result.outcome is ConversionOutcome.POLICY_REJECTED
        assert result.url == url
        assert fake_backend.calls == []
        assert service.run(UrlRef(url="   "), "avif").url == ""

    def test_dimensions_over_limit(self, make_service, make_image, fake_backend):
        svc = make_service(settings_obj=settings_with(max_dimension=1000))
        _, url = make_image("wide.jpg", size=(1200, 10))

        result = svc.run(url, "avif")

        assert result.outcome is ConversionOutcome.POLICY_REJECTED
        assert result.url == url
        assert fake_backend.calls == []

    def test_file_over_size_limit(self, make_service, make_image, fake_backend):
        svc = make_service(settings_obj=settings_with(max_file_size_mb=0))
        _, url = make_image("photo.jpg")

        assert svc.run(url, "avif").outcome is ConversionOutcome.POLICY_REJECTED
        assert fake_backend.calls == []

    def test_unreadable_source(self, service, upload_dir, fake_backend):
        (upload_dir / "broken.jpg").write_bytes(b"\xff\xd8\xff" + b"\x00" * 200)

        result = service.run(f"{UPLOAD_URL}/broken.jpg", "avif")

        assert result.outcome is ConversionOutcome.POLICY_REJECTED
        assert fake_backend.calls == []


class TestFailures:
    """Failed attempts leave neither an output file nor a lock marker behind."""

    def _assert_clean(self, path):
        dest = path.with_suffix(".avif")
        assert not dest.exists()
        assert not lock_path(dest).exists()

    def test_backend_reports_failure(self, make_service, make_image):
        svc = make_service(backends={Capability.IN_PROCESS: FakeBackend(result=False)})
        path, url = make_image("photo.jpg")

        result = svc.run(url, "avif")

        assert result.outcome is ConversionOutcome.BACKEND_FAILURE
        assert result.url == url
        self._assert_clean(path)

    def test_backend_raises(self, make_service, make_image):
        svc = make_service(backends={Capability.IN_PROCESS: FakeBackend(error=RuntimeError("encoder crashed"))})
        path, url = make_image("photo.jpg")

        result = svc.run(url, "avif")

        assert result.outcome is ConversionOutcome.BACKEND_FAILURE
        self._assert_clean(path)

    def test_invalid_output_is_deleted(self, make_service, make_image):
        svc = make_service(backends={Capability.IN_PROCESS: FakeBackend(payload=b"\x00" * 90)})
        path, url = make_image("photo.jpg")

        result = svc.run(url, "avif")

        assert result.outcome is ConversionOutcome.VALIDATION_FAILED
        assert result.url == url
        self._assert_clean(path)

    def test_larger_output_is_discarded(self, make_service, make_image):
        big = b"\x00\x00\x00\x1cftypavif" + b"\x00" * 200_000
        svc = make_service(backends={Capability.IN_PROCESS: FakeBackend(payload=big)})
        path, url = make_image("photo.jpg")

        result = svc.run(url, "avif")

        assert result.outcome is ConversionOutcome.SIZE_POLICY_VIOLATION
        assert result.url == url
        self._assert_clean(path)

    def test_larger_output_kept_when_size_policy_off(self, make_service, make_image):
        big = b"\x00\x00\x00\x1cftypavif" + b"\x00" * 200_000
        svc = make_service(
            backends={Capability.IN_PROCESS: FakeBackend(payload=big)},
            settings_obj=settings_with(only_if_smaller=False),
        )
        path, url = make_image("photo.jpg")

        assert svc.run(url, "avif").outcome is ConversionOutcome.CONVERTED
        assert path.with_suffix(".avif").is_file()


class TestConcurrency:
    def test_busy_destination_returns_original(self, service, make_image, fake_backend):
        path, url = make_image("photo.jpg")
        holder = LockManager().acquire(path.with_suffix(".avif"))

        try:
            result = service.run(url, "avif")
        finally:
            holder.release()

        assert result.outcome is ConversionOutcome.LOCK_BUSY
        assert result.url == url
        assert fake_backend.calls == []

    def test_stale_lock_does_not_block(self, make_service, make_image, fake_backend):
        svc = make_service(settings_obj=settings_with(stale_lock_timeout=60))
        path, url = make_image("photo.jpg")
        dest = path.with_suffix(".avif")
        abandoned = LockManager().acquire(dest)
        old = time.time() - 3600
        os.utime(lock_path(dest), (old, old))

        try:
            result = svc.run(url, "avif")
        finally:
            abandoned.release()

        assert result.outcome is ConversionOutcome.CONVERTED


class TestRegistryRecording:
    def test_owned_conversion_is_recorded(self, service, make_image):
        path, url = make_image("photo.jpg")
        item = add_media_item(path, url, "image/jpeg")

        service.run(url, "avif")

        # canned bytes are not decodable, so the key falls back to "original"
        assert VariantRegistry().lookup(str(item.id), "avif") == f"{UPLOAD_URL}/photo.avif"

    def test_unowned_conversion_is_not_recorded(self, service, make_image):
        _, url = make_image("photo.jpg")

        with patch.object(service.registry, "record") as mock_record:
            service.run(url, "avif")

        mock_record.assert_not_called()

    def test_file_handle_item_id_is_identity(self, service, make_image):
        path, url = make_image("photo.jpg")

        service.run(FileHandleRef(path=path, url=url, item_id=42), "webp")

        assert VariantRegistry().lookup("42", "webp") == f"{UPLOAD_URL}/photo.webp"
