"""ANSI escape sequence helpers."""

from __future__ import annotations

import re

from prompt_toolkit.utils import get_cwidth

# Pattern to strip ANSI escape codes for visible length calculation
ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;?]*[A-Za-z~]")


def strip_ansi(text: str) -> str:
    """Strip ANSI escape codes from text."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


def visible_len(text: str) -> int:
    """Terminal cells occupied by text, ignoring ANSI escape codes."""
    return get_cwidth(strip_ansi(text))
