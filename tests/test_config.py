"""
Tests for Parser Configuration
==============================

Tests for testfeed/config.py: defaults, environment overrides, and the
warning-and-default fallback for invalid values.

Run with:
    pytest tests/test_config.py -v
"""
import logging

import pytest
from pydantic import ValidationError

from testfeed.config import (
    DEFAULT_BACKTRACE_PREVIEW_LINES,
    DEFAULT_INDENT_WIDTH,
    DEFAULT_RAW_TAIL_LINES,
    DEFAULT_SENTINEL_PREFIX,
    ParserSettings,
    load_settings,
)


class TestParserSettings:
    """Tests for the ParserSettings model."""

    def test_defaults(self):
        """An empty model carries the documented defaults."""
        settings = ParserSettings()

        assert settings.sentinel_prefix == "RUNNER:"
        assert settings.raw_tail_lines == 50
        assert settings.backtrace_preview_lines == 5
        assert settings.indent_width == 2

    def test_blank_prefix_rejected(self):
        """A whitespace-only sentinel prefix is invalid."""
        with pytest.raises(ValidationError):
            ParserSettings(sentinel_prefix="   ")

    @pytest.mark.parametrize("field", ["raw_tail_lines", "backtrace_preview_lines", "indent_width"])
    def test_counts_must_be_positive(self, field):
        """Zero is not a usable line count or width."""
        with pytest.raises(ValidationError):
            ParserSettings(**{field: 0})

    def test_settings_are_frozen(self):
        """Settings cannot be changed after creation."""
        settings = ParserSettings()

        with pytest.raises(ValidationError):
            settings.indent_width = 4


class TestLoadSettings:
    """Tests for load_settings()."""

    def test_empty_environment_gives_defaults(self):
        """No variables means every default."""
        settings = load_settings({})

        assert settings.sentinel_prefix == DEFAULT_SENTINEL_PREFIX
        assert settings.raw_tail_lines == DEFAULT_RAW_TAIL_LINES
        assert settings.backtrace_preview_lines == DEFAULT_BACKTRACE_PREVIEW_LINES
        assert settings.indent_width == DEFAULT_INDENT_WIDTH

    def test_overrides(self):
        """TESTFEED_* variables override the defaults."""
        settings = load_settings({
            "TESTFEED_SENTINEL_PREFIX": "HARNESS:",
            "TESTFEED_RAW_TAIL_LINES": "20",
            "TESTFEED_BACKTRACE_PREVIEW_LINES": " 3 ",
            "TESTFEED_INDENT_WIDTH": "4",
        })

        assert settings.sentinel_prefix == "HARNESS:"
        assert settings.raw_tail_lines == 20
        assert settings.backtrace_preview_lines == 3
        assert settings.indent_width == 4

    def test_invalid_value_falls_back(self, caplog):
        """A bad value logs a warning and keeps the default."""
        with caplog.at_level(logging.WARNING, logger="testfeed.config"):
            settings = load_settings({
                "TESTFEED_RAW_TAIL_LINES": "lots",
                "TESTFEED_INDENT_WIDTH": "3",
            })

        assert settings.raw_tail_lines == DEFAULT_RAW_TAIL_LINES
        assert settings.indent_width == 3
        assert "TESTFEED_RAW_TAIL_LINES" in caplog.text
        assert "lots" in caplog.text

    def test_zero_falls_back(self, caplog):
        """Out-of-range numbers are treated like invalid ones."""
        with caplog.at_level(logging.WARNING, logger="testfeed.config"):
            settings = load_settings({"TESTFEED_BACKTRACE_PREVIEW_LINES": "0"})

        assert settings.backtrace_preview_lines == DEFAULT_BACKTRACE_PREVIEW_LINES
        assert "Using default" in caplog.text

    def test_blank_value_ignored(self, caplog):
        """An empty variable is the same as an unset one."""
        with caplog.at_level(logging.WARNING, logger="testfeed.config"):
            settings = load_settings({"TESTFEED_SENTINEL_PREFIX": "  "})

        assert settings.sentinel_prefix == DEFAULT_SENTINEL_PREFIX
        assert caplog.text == ""

    def test_reads_os_environ(self, monkeypatch):
        """Without an explicit mapping the process environment is used."""
        monkeypatch.setenv("TESTFEED_RAW_TAIL_LINES", "7")

        assert load_settings().raw_tail_lines == 7
