"""
Tests for derived file naming and magic-byte validation.
"""

from pathlib import Path

from conftest import AVIF_BYTES, UPLOAD_URL, WEBP_BYTES

from avifkit.conversion.files import (
    destination_path,
    is_valid_output,
    lock_path,
    path_to_url,
    read_dimensions,
    resized_path,
    sibling_url,
)


class TestNaming:
    def test_default_quality_has_no_suffix(self):
        assert destination_path(Path("/u/photo.jpg"), "avif", 80, 80) == Path("/u/photo.avif")

    def test_custom_quality_suffix(self):
        assert destination_path(Path("/u/photo.jpg"), "avif", 65, 80) == Path("/u/photo-q65.avif")
        assert destination_path(Path("/u/photo.png"), "webp", 90, 82) == Path("/u/photo-q90.webp")

    def test_resized_and_lock_paths(self):
        assert resized_path(Path("/u/photo.jpg"), 640, 480) == Path("/u/photo-640x480.jpg")
        assert lock_path(Path("/u/photo.avif")) == Path("/u/photo.avif.lock")

    def test_sibling_url_swaps_basename(self):
        url = sibling_url("https://cdn.x/a/photo.jpg", Path("/u/photo.jpg"), Path("/u/photo-q65.avif"))

        assert url == "https://cdn.x/a/photo-q65.avif"

    def test_path_to_url_under_upload_root(self, upload_dir):
        assert path_to_url(upload_dir / "2024" / "a.avif") == f"{UPLOAD_URL}/2024/a.avif"

    def test_path_to_url_outside_roots(self, tmp_path):
        outside = tmp_path / "elsewhere" / "a.avif"

        assert path_to_url(outside) == str(outside)


class TestValidation:
    """Output validation gate."""

    def test_valid_avif(self, tmp_path):
        p = tmp_path / "a.avif"
        p.write_bytes(AVIF_BYTES)

        assert is_valid_output(p, "avif")

    def test_valid_webp(self, tmp_path):
        p = tmp_path / "a.webp"
        p.write_bytes(WEBP_BYTES)

        assert is_valid_output(p, "webp")
        assert is_valid_output(p, "webp", strict=True)

    def test_too_short_is_invalid(self, tmp_path):
        p = tmp_path / "a.avif"
        p.write_bytes(AVIF_BYTES[:40])

        assert not is_valid_output(p, "avif")

    def test_wrong_brand_is_invalid(self, tmp_path):
        p = tmp_path / "a.avif"
        p.write_bytes(b"\x00\x00\x00\x1cftypheic" + b"\x00" * 100)

        assert not is_valid_output(p, "avif")

    def test_webp_without_riff_only_fails_strict(self, tmp_path):
        p = tmp_path / "a.webp"
        p.write_bytes(b"XXXX\x00\x00\x00\x00WEBPVP8 " + b"\x00" * 100)

        assert is_valid_output(p, "webp")
        assert not is_valid_output(p, "webp", strict=True)

    def test_missing_file(self, tmp_path):
        assert not is_valid_output(tmp_path / "nope.avif", "avif")


class TestDimensions:
    def test_reads_image_size(self, make_image):
        path, _ = make_image(size=(120, 80))

        assert read_dimensions(path) == (120, 80)

    def test_unreadable_is_none(self, tmp_path):
        p = tmp_path / "junk.jpg"
        p.write_bytes(b"not an image at all")

        assert read_dimensions(p) is None
