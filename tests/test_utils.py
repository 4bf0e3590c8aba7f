"""Tests for virtdev.utils module."""

from __future__ import annotations

import pytest

from virtdev.exceptions import ValidationError
from virtdev.utils import (
    ensure_directory,
    format_size,
    get_env,
    log,
    parse_int,
    parse_size_string,
    read_head,
)


class TestLog:
    def test_info_level(self, capsys):
        log("INFO", "test message")
        captured = capsys.readouterr()
        assert "[INFO]" in captured.out
        assert "test message" in captured.out

    def test_debug_suppressed_by_default(self, capsys):
        log("DEBUG", "should not appear")
        captured = capsys.readouterr()
        assert captured.out == ""

    def test_debug_shown_when_verbose(self, capsys, monkeypatch):
        monkeypatch.setattr("virtdev.utils._LOG_VERBOSE", True)
        log("DEBUG", "visible")
        assert "[DEBUG]" in capsys.readouterr().out


class TestGetEnv:
    def test_returns_value(self, monkeypatch):
        monkeypatch.setenv("TEST_VAR", "hello")
        assert get_env("TEST_VAR") == "hello"

    def test_returns_default(self, monkeypatch):
        monkeypatch.delenv("TEST_VAR", raising=False)
        assert get_env("TEST_VAR", "fallback") == "fallback"


class TestParseInt:
    def test_valid_value(self):
        assert parse_int("cpus", "4") == 4

    def test_non_integer_raises(self):
        with pytest.raises(ValidationError, match="must be an integer"):
            parse_int("cpus", "four")

    def test_below_minimum_raises(self):
        with pytest.raises(ValidationError, match=">= 256"):
            parse_int("memory_mb", 128, min_val=256)

    def test_above_maximum_raises(self):
        with pytest.raises(ValidationError, match="<= 65535"):
            parse_int("ssh_base_port", 70000, max_val=65535)


class TestParseSizeString:
    def test_gigabytes(self):
        assert parse_size_string("8G") == 8 * 1024**3

    def test_optional_b_suffix(self):
        assert parse_size_string("16GB") == parse_size_string("16G")

    def test_case_insensitive(self):
        assert parse_size_string("512m") == 512 * 1024**2

    def test_fractional(self):
        assert parse_size_string("1.5K") == 1536

    def test_bare_number_is_bytes(self):
        assert parse_size_string("4096") == 4096

    @pytest.mark.parametrize("value", ["abc", "", "8X", "-1G", "G"])
    def test_invalid_raises_with_hint(self, value):
        with pytest.raises(ValidationError) as exc_info:
            parse_size_string(value)
        assert "Expected format" in str(exc_info.value)


class TestFormatSize:
    @pytest.mark.parametrize(
        "num_bytes,expected",
        [
            (0, "0 B"),
            (999, "999 B"),
            (1500, "1.5 kB"),
            (8_000_000_000, "8.0 GB"),
            (2 * 10**12, "2.0 TB"),
        ],
    )
    def test_decimal_units(self, num_bytes, expected):
        assert format_size(num_bytes) == expected


class TestFileHelpers:
    def test_read_head_short_file(self, tmp_path):
        path = tmp_path / "f"
        path.write_bytes(b"ab")
        assert read_head(path, 4) == b"ab"

    def test_ensure_directory_nested(self, tmp_path):
        target = tmp_path / "a" / "b"
        ensure_directory(target)
        ensure_directory(target)
        assert target.is_dir()
