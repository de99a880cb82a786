"""
Parser Configuration
====================

Settings for the output parser and summary formatter, read from environment
variables with validated defaults.

Environment variables:
- TESTFEED_SENTINEL_PREFIX: Prefix of structured runner lines (default "RUNNER:")
- TESTFEED_RAW_TAIL_LINES: Raw lines shown when nothing was parsed (default 50)
- TESTFEED_BACKTRACE_PREVIEW_LINES: Backtrace lines shown per failure (default 5)
- TESTFEED_INDENT_WIDTH: Spaces per nesting level (default 2)

An invalid value logs a warning and falls back to the default.

Usage:
    from testfeed.config import load_settings

    settings = load_settings()
    print(settings.raw_tail_lines)
"""
from __future__ import annotations

import logging
import os

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

_logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

ENV_PREFIX = "TESTFEED_"

DEFAULT_SENTINEL_PREFIX = "RUNNER:"
DEFAULT_RAW_TAIL_LINES = 50
DEFAULT_BACKTRACE_PREVIEW_LINES = 5
DEFAULT_INDENT_WIDTH = 2


# =============================================================================
# Settings Model
# =============================================================================

class ParserSettings(BaseModel):
    """Validated parser and formatter settings."""

    model_config = ConfigDict(frozen=True)

    sentinel_prefix: str = Field(
        default=DEFAULT_SENTINEL_PREFIX,
        description="Prefix that marks a structured runner line",
    )
    raw_tail_lines: int = Field(
        default=DEFAULT_RAW_TAIL_LINES,
        ge=1,
        description="Raw output lines shown when parsing produced nothing",
    )
    backtrace_preview_lines: int = Field(
        default=DEFAULT_BACKTRACE_PREVIEW_LINES,
        ge=1,
        description="Backtrace lines shown per failure in the summary",
    )
    indent_width: int = Field(
        default=DEFAULT_INDENT_WIDTH,
        ge=1,
        description="Leading spaces per nesting level in summary tables",
    )

    @field_validator("sentinel_prefix")
    @classmethod
    def validate_sentinel_prefix(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("sentinel_prefix must not be blank")
        return v


# =============================================================================
# Environment Variable Reading
# =============================================================================

def load_settings(environ: dict[str, str] | None = None) -> ParserSettings:
    """
    Build ParserSettings from TESTFEED_* environment variables.

    Args:
        environ: Mapping to read instead of os.environ (for testing)

    Returns:
        ParserSettings with every invalid or missing value defaulted.
    """
    env = os.environ if environ is None else environ
    values: dict[str, str] = {}

    for name in ParserSettings.model_fields:
        raw = env.get(ENV_PREFIX + name.upper(), "").strip()
        if not raw:
            continue
        try:
            ParserSettings(**{name: raw})
        except ValidationError:
            _logger.warning(
                "Invalid value for %s: '%s'. Using default '%s'.",
                ENV_PREFIX + name.upper(),
                raw,
                ParserSettings.model_fields[name].default,
            )
            continue
        values[name] = raw

    return ParserSettings(**values)
