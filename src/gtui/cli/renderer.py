"""Rich-styled ANSI rendering of chat messages for the chat panel.

Each message is rendered to one multi-line string with embedded SGR codes;
wrapping to the panel width happens afterwards in ``gtui.layout``.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from rich.color import ColorSystem
from rich.style import Style

from ..models import Message, Role, Usage

# ---------------------------------------------------------------------------
# Color palette: explicit values for readability on dark terminals.
# Avoids Rich's [dim] (SGR 2 faint) which is nearly invisible on dark bg.
# ---------------------------------------------------------------------------

GOLD = "#C5A059"  # accents, streaming cursor
SLATE = "#94A3B8"  # labels ("You", "AI")
MUTED = "#8b8b8b"  # secondary text (code blocks, placeholders)
CHROME = "#6b7280"  # UI chrome (tool calls, hints)
ERROR_RED = "#CD6B6B"  # pale red for system notices
THINKING = "#a78bca"  # reasoning block
CODE = "#7dd3fc"  # inline code

STREAMING_CURSOR = "█"

_ROLE_LABELS: dict[Role, tuple[str, str]] = {
    Role.USER: ("You", f"bold {SLATE}"),
    Role.ASSISTANT: ("AI", f"bold {GOLD}"),
    Role.SYSTEM: ("System", f"bold {ERROR_RED}"),
}

_FENCE_RE = re.compile(r"```[^\n`]*\n?(.*?)```", re.DOTALL)
_INLINE_CODE_RE = re.compile(r"`([^`\n]+)`")
_BOLD_RE = re.compile(r"\*\*([^*\n]+)\*\*")
_ITALIC_RE = re.compile(r"(?<!\*)\*([^*\n]+)\*(?!\*)")


def paint(text: str, style: str) -> str:
    """Wrap text in the SGR codes for a Rich style definition."""
    if not text:
        return ""
    return Style.parse(style).render(text, color_system=ColorSystem.TRUECOLOR)


def _sanitize_for_terminal(text: str) -> str:
    """Strip escape sequences and control characters gro may have passed through."""
    # Strip ANSI CSI sequences (e.g. \x1b[31m)
    text = re.sub(r"\x1b\[[0-9;?]*[a-zA-Z~]", "", text)
    # Strip OSC sequences (e.g. \x1b]0;title\x07 or \x1b]0;title\x1b\\)
    text = re.sub(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)", "", text)
    text = text.replace("\r\n", "\n").expandtabs(4)
    # Strip remaining control characters (keep \n for layout)
    return re.sub(r"[\x00-\x09\x0b-\x1f\x7f]", "", text)


def _format_inline(text: str) -> str:
    text = _INLINE_CODE_RE.sub(lambda m: paint(m.group(1), CODE), text)
    text = _BOLD_RE.sub(lambda m: paint(m.group(1), "bold"), text)
    return _ITALIC_RE.sub(lambda m: paint(m.group(1), "italic"), text)


def format_markdown(text: str) -> str:
    """Lightweight markdown: fenced code, inline code, bold and italic.

    Fenced blocks are painted as-is; inline rules never apply inside them.
    """
    parts: list[str] = []
    pos = 0
    for match in _FENCE_RE.finditer(text):
        parts.append(_format_inline(text[pos : match.start()]))
        parts.append(paint(match.group(1).rstrip("\n"), MUTED))
        pos = match.end()
    parts.append(_format_inline(text[pos:]))
    return "".join(parts)


def _format_tokens(n: int) -> str:
    """Format token count: 1234 -> '1.2k', 128000 -> '128k'."""
    if n >= 1000:
        k = n / 1000
        if k >= 10:
            return f"{k:.0f}k"
        return f"{k:.1f}k"
    return str(n)


def format_usage(usage: Usage) -> str:
    return f"in:{_format_tokens(usage.input_tokens)} out:{_format_tokens(usage.output_tokens)}"


def render_message(msg: Message, show_thinking: bool = False, show_tools: bool = False) -> str:
    label, label_style = _ROLE_LABELS[msg.role]
    parts = [paint(label, label_style)]

    if show_thinking and msg.reasoning:
        thinking = [paint("  thinking", THINKING)]
        thinking.extend(paint("  " + line, THINKING) for line in _sanitize_for_terminal(msg.reasoning).split("\n"))
        thinking.append(paint("  /thinking", THINKING))
        parts.append("\n".join(thinking))

    if show_tools and msg.tool_calls:
        for call in msg.tool_calls:
            snippet = _sanitize_for_terminal(call.snippet).replace("\n", " ")
            if len(snippet) > 100:
                snippet = snippet[:97] + "..."
            line = f"  {paint(call.name, f'bold {CHROME}')} {paint(snippet, CHROME)}".rstrip()
            parts.append(line)

    content = _sanitize_for_terminal(msg.content)
    if msg.role is Role.ASSISTANT:
        content = format_markdown(content)
    elif msg.role is Role.SYSTEM:
        content = paint(content, ERROR_RED)
    cursor = paint(STREAMING_CURSOR, GOLD) if msg.streaming else ""
    parts.append(f"{content}{cursor}")

    return "\n".join(parts)


def render_messages(messages: Iterable[Message], show_thinking: bool = False, show_tools: bool = False) -> list[str]:
    blocks = [render_message(m, show_thinking, show_tools) for m in messages]
    if not blocks:
        return [paint("No messages yet. Type a message to begin.", MUTED)]
    return blocks
