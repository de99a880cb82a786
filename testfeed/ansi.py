"""
ANSI Escape Stripping
=====================

Removes terminal color and control sequences from a single line of test
output before any pattern matching happens.

Handled sequences:
- CSI: ESC [ params final   (colors, cursor movement)
- OSC: ESC ] ... BEL or ST   (window titles, hyperlinks)
- Charset selection: ESC ( X
- Single-character escapes: ESC X
"""
from __future__ import annotations

import re

ANSI_PATTERN = re.compile(
    r"\x1b(?:"
    r"\[[?=>!]?[0-9;:]*[A-Za-z@~]"
    r"|\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\([A-Za-z0-9]"
    r"|[A-Za-z0-9=<>]"
    r")"
)


def strip_ansi(line: str) -> str:
    """Return ``line`` with every recognized escape sequence removed."""
    return ANSI_PATTERN.sub("", line)
