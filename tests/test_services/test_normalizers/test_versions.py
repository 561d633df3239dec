"""Tests for version parsing, comparison and advisory range matching."""

from vulnrank.services.normalizers.versions import (
    compare_versions,
    parse_version_key,
    version_in_range,
)


class TestParseVersionKey:
    def test_v_prefix_stripped(self):
        assert parse_version_key("v1.2.3") == parse_version_key("1.2.3")

    def test_numeric_parts_compare_numerically(self):
        assert parse_version_key("1.10.0") > parse_version_key("1.9.9")

    def test_release_ranks_above_prerelease_label(self):
        assert parse_version_key("1.0.0") > parse_version_key("1.0.rc1")

    def test_empty_string(self):
        assert parse_version_key("") == ()


class TestCompareVersions:
    def test_pep440_versions(self):
        assert compare_versions("2.31.0", "2.4.0") > 0
        assert compare_versions("1.0.0", "1.0") == 0
        assert compare_versions("1.0rc1", "1.0") < 0

    def test_non_pep440_versions_fall_back(self):
        assert compare_versions("1.2.3-foo.bar", "1.2.4-foo.bar") < 0

    def test_mixed_formats_do_not_raise(self):
        assert compare_versions("2024.1-custom+build_x", "1.0.0") != 0


class TestVersionInRange:
    def test_inside_range(self):
        assert version_in_range("1.0.0", ">= 0.5.0, < 1.2.0") is True

    def test_outside_range(self):
        assert version_in_range("1.2.0", "< 1.2.0") is False
        assert version_in_range("0.4.0", ">= 0.5.0, < 1.2.0") is False

    def test_exact_match(self):
        assert version_in_range("1.0.0", "= 1.0.0") is True
        assert version_in_range("1.0.1", "= 1.0.0") is False

    def test_unparseable_range_returns_none(self):
        assert version_in_range("1.0.0", "unknown") is None
        assert version_in_range("1.0.0", None) is None
