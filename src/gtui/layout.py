"""ANSI-aware line wrapping and scroll windowing for the chat panel.

Rendered message blocks arrive as strings with embedded SGR escape sequences.
Everything here measures *visible* cells only: escape sequences are zero-width
atoms that are never split across display lines. Every display line produced
is self-contained, i.e. styling that is active when a line is broken is closed
with a reset at the end of the line and reopened at the start of the next, so
any window of lines renders with the right colours.

All functions are pure; the chat panel recomputes its lines on every render.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence

from prompt_toolkit.utils import get_cwidth

from .ansi import strip_ansi, visible_len

__all__ = [
    "TRACK_BOTTOM",
    "build_lines",
    "max_scroll",
    "scroll_by",
    "strip_ansi",
    "visible_len",
    "window",
    "wrap",
    "wrap_text",
]

# Scroll offset sentinel: follow the last line as content grows.
TRACK_BOTTOM = None

_TOKEN_PATTERN = re.compile(r"(\x1b\[[0-9;?]*[A-Za-z~])|(\s+)|([^\s\x1b]+|\x1b)")
_SGR_RESET = "\x1b[0m"
_SGR_RESETS = frozenset({_SGR_RESET, "\x1b[m"})


def _track_sgr(active: list[str], code: str) -> None:
    if not code.endswith("m"):
        return
    if code in _SGR_RESETS:
        active.clear()
    else:
        active.append(code)


def _is_escape(token: str) -> bool:
    return token.startswith("\x1b[")


def _tokens_width(tokens: Iterable[str]) -> int:
    return sum(get_cwidth(t) for t in tokens if not _is_escape(t))


def _split_words(line: str) -> list[tuple[bool, list[str]]]:
    """Group a line into ``(is_space, tokens)`` runs.

    A word run holds its text plus any escape sequences touching it, so a
    style change inside a word never becomes a break opportunity.
    """
    groups: list[tuple[bool, list[str]]] = []
    for match in _TOKEN_PATTERN.finditer(line):
        escape, space, text = match.groups()
        if space is not None:
            groups.append((True, [space]))
            continue
        token = escape if escape is not None else text
        if groups and not groups[-1][0]:
            groups[-1][1].append(token)
        else:
            groups.append((False, [token]))
    return groups


class _LineWrapper:
    """Greedy word wrapper producing self-contained styled lines."""

    def __init__(self, max_width: int, active: list[str]) -> None:
        self.max_width = max(1, max_width)
        self.active = list(active)
        self.lines: list[str] = []
        self.current: list[str] = list(active)
        self.width = 0
        # whitespace seen since the last committed word
        self.pending: list[str] = []

    def _commit(self, token: str) -> None:
        self.current.append(token)
        if _is_escape(token):
            _track_sgr(self.active, token)
        else:
            self.width += get_cwidth(token)

    def _break(self) -> None:
        text = "".join(self.current)
        if self.active:
            text += _SGR_RESET
        self.lines.append(text)
        self.current = list(self.active)
        self.width = 0
        # whitespace at a break point is consumed
        self.pending = []

    def add_space(self, space: str) -> None:
        if self.width == 0 and self.lines:
            return
        self.pending.append(space)

    def add_word(self, tokens: list[str]) -> None:
        word_width = _tokens_width(tokens)
        pending_width = _tokens_width(self.pending)
        if self.width + pending_width + word_width <= self.max_width:
            for token in self.pending + tokens:
                self._commit(token)
            self.pending = []
            return
        if self.width > 0:
            self._break()
        elif pending_width >= self.max_width:
            self.pending = []
        else:
            # leading indentation that still leaves room on the first line
            for token in self.pending:
                self._commit(token)
            self.pending = []
        if self.width + word_width <= self.max_width:
            for token in tokens:
                self._commit(token)
            return
        for token in tokens:
            if _is_escape(token):
                self._commit(token)
                continue
            for char in token:
                char_width = get_cwidth(char)
                if self.width > 0 and self.width + char_width > self.max_width:
                    self._break()
                self._commit(char)

    def finish(self) -> tuple[list[str], list[str]]:
        for token in self.pending:
            if self.width + get_cwidth(token) <= self.max_width:
                self._commit(token)
        self.pending = []
        text = "".join(self.current)
        if self.active:
            text += _SGR_RESET
        self.lines.append(text)
        return self.lines, self.active


def _wrap_styled(line: str, max_width: int, active: list[str]) -> tuple[list[str], list[str]]:
    if not line:
        return [""], list(active)
    wrapper = _LineWrapper(max_width, active)
    for is_space, tokens in _split_words(line):
        if is_space:
            wrapper.add_space(tokens[0])
        else:
            wrapper.add_word(tokens)
    return wrapper.finish()


def wrap(line: str, max_width: int) -> list[str]:
    """Word-wrap a single line to ``max_width`` visible cells.

    Breaks on whitespace; words wider than ``max_width`` are hard-broken at
    the width boundary. Escape sequences never straddle two output lines.
    """
    return _wrap_styled(line, max_width, [])[0]


def wrap_text(text: str, max_width: int) -> list[str]:
    """Wrap a multi-line block, carrying open styles across its newlines."""
    lines: list[str] = []
    active: list[str] = []
    for raw in text.split("\n"):
        wrapped, active = _wrap_styled(raw, max_width, active)
        lines.extend(wrapped)
    return lines


def build_lines(blocks: Iterable[str], max_width: int) -> list[str]:
    """Flatten rendered message blocks into display lines, one blank line apart."""
    lines: list[str] = []
    for idx, block in enumerate(blocks):
        if idx:
            lines.append("")
        lines.extend(wrap_text(block, max_width))
    return lines


def max_scroll(total_lines: int, visible_height: int) -> int:
    return max(0, total_lines - max(1, visible_height))


def window(lines: Sequence[str], scroll_offset: int | None, visible_height: int) -> list[str]:
    """Return the visible slice of ``lines`` for a scroll position.

    ``scroll_offset`` is clamped to ``[0, max_scroll]``; ``TRACK_BOTTOM``
    always resolves to the last ``visible_height`` lines.
    """
    height = max(1, visible_height)
    top = max_scroll(len(lines), height)
    if scroll_offset is TRACK_BOTTOM:
        start = top
    else:
        start = min(max(0, scroll_offset), top)
    return list(lines[start : start + height])


def scroll_by(scroll_offset: int | None, delta: float, total_lines: int, visible_height: int) -> int | None:
    """Apply a scroll intent to an offset.

    ``delta`` of ``+inf``/``-inf`` jumps to the bottom/top. Reaching the last
    page switches back to ``TRACK_BOTTOM`` so new output is followed again.
    """
    if delta == float("inf"):
        return TRACK_BOTTOM
    if delta == float("-inf"):
        return 0
    top = max_scroll(total_lines, visible_height)
    current = top if scroll_offset is TRACK_BOTTOM else min(max(0, scroll_offset), top)
    target = max(0, current + int(delta))
    if target >= top:
        return TRACK_BOTTOM
    return target
