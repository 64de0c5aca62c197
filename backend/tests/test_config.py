"""
Tests for settings merging: defaults, clamping and tolerance of bad input.
"""

import math

from avifkit.config import (
    DEFAULT_BREAKPOINT_WIDTHS,
    SmartQualityRule,
    load_settings,
    merge_settings,
    parse_widths,
)


class TestMergeSettings:
    """merge_settings builds a clamped snapshot and never raises."""

    def test_defaults(self):
        s = merge_settings({})

        assert s.avif_quality == 80
        assert s.webp_quality == 82
        assert s.max_dimension == 4096
        assert s.max_file_size_mb == 50
        assert s.only_if_smaller is True
        assert s.stale_lock_timeout == 300
        assert s.enable_smart_quality is False
        assert s.breakpoint_widths == DEFAULT_BREAKPOINT_WIDTHS

    def test_none_is_defaults(self):
        assert merge_settings(None) == merge_settings({})

    def test_values_are_clamped(self):
        s = merge_settings({
            "avif_quality": 0,
            "webp_quality": 250,
            "max_dimension": 10,
            "max_file_size_mb": 100000,
            "stale_lock_timeout": 5,
        })

        assert s.avif_quality == 1
        assert s.webp_quality == 100
        assert s.max_dimension == 1000
        assert s.max_file_size_mb == 500
        assert s.stale_lock_timeout == 60

    def test_garbage_falls_back_to_default(self):
        s = merge_settings({"avif_quality": "lots", "max_dimension": None, "only_if_smaller": "maybe"})

        assert s.avif_quality == 80
        assert s.max_dimension == 4096
        assert s.only_if_smaller is True

    def test_string_numbers_and_bools(self):
        s = merge_settings({"webp_quality": "70", "only_if_smaller": "0", "enable_smart_quality": "yes"})

        assert s.webp_quality == 70
        assert s.only_if_smaller is False
        assert s.enable_smart_quality is True

    def test_max_file_size_bytes(self):
        assert merge_settings({"max_file_size_mb": 2}).max_file_size_bytes == 2 * 1024 * 1024


class TestSmartQuality:
    """Smart quality picks the first rule that covers the larger side."""

    def test_default_rules(self):
        s = merge_settings({"enable_smart_quality": True})

        assert s.smart_quality("avif", 800) == 85
        assert s.smart_quality("webp", 800) == 90
        assert s.smart_quality("avif", 1000) == 85
        assert s.smart_quality("avif", 1500) == 80
        assert s.smart_quality("webp", 3000) == 80

    def test_custom_rules_sorted_with_open_ended_tail(self):
        s = merge_settings({"smart_quality_rules": [(2000, 60, 65), (500, 90, 95)]})

        assert s.smart_quality_rules[0] == SmartQualityRule(500, 90, 95)
        assert s.smart_quality_rules[-1].max_dimension == math.inf
        assert s.smart_quality("avif", 400) == 90
        assert s.smart_quality("avif", 1200) == 60
        assert s.smart_quality("avif", 9000) == 60

    def test_bad_rules_use_defaults(self):
        s = merge_settings({"smart_quality_rules": "nonsense"})

        assert s.smart_quality("avif", 100) == 85


class TestWidthsAndEnvironment:
    def test_parse_widths(self):
        assert parse_widths("1024, 640,abc,,-5,640") == (1024, 640)

    def test_parse_widths_missing_vs_empty(self):
        assert parse_widths(None) == DEFAULT_BREAKPOINT_WIDTHS
        assert parse_widths("") == ()

    def test_load_settings_reads_environment(self, monkeypatch):
        monkeypatch.setenv("AVIFKIT_AVIF_QUALITY", "65")
        monkeypatch.setenv("AVIFKIT_ONLY_IF_SMALLER", "false")
        monkeypatch.setenv("AVIFKIT_BREAKPOINT_WIDTHS", "320,480")

        s = load_settings()

        assert s.avif_quality == 65
        assert s.only_if_smaller is False
        assert s.breakpoint_widths == (320, 480)
