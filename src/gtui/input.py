"""Vim-style modal key handling for the chat input.

Keys arrive as prompt_toolkit key names (``Keys`` members, or the character
itself for printable input). The state machine mutates its own edit buffer and
reports everything else to the application as ``Intent`` values.

Enter does not submit immediately. Terminals without bracketed paste deliver
a pasted block as characters interleaved with Enter presses, so Enter opens a
short debounce window instead: any key arriving inside the window turns the
Enter into an embedded newline and restarts the window, and the buffer is
submitted only once the window elapses in silence.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from prompt_toolkit.keys import Keys

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = 0.05  # 50ms; pasted input arrives faster than human typing
SCROLL_PAGE = 10


class Mode(str, Enum):
    NORMAL = "normal"
    INSERT = "insert"


class Panel(str, Enum):
    CHAT = "chat"
    SIDEBAR = "sidebar"


class IntentKind(str, Enum):
    SCROLL = "scroll"
    QUIT = "quit"
    TOGGLE_THINKING = "toggle_thinking"
    TOGGLE_TOOLS = "toggle_tools"
    SWITCH_PANEL = "switch_panel"
    SUBMIT = "submit"
    CANCEL_TURN = "cancel_turn"
    CLEAR_SESSION = "clear_session"


@dataclass(frozen=True)
class Intent:
    kind: IntentKind
    value: Any = None


def _key_name(key: str) -> str:
    return key.value if isinstance(key, Keys) else key


# Control chords scroll in both modes so scrolling never needs a mode switch.
_GLOBAL_SCROLL: dict[str, float] = {
    Keys.ControlJ.value: 1,
    Keys.ControlK.value: -1,
    Keys.ControlD.value: SCROLL_PAGE,
    Keys.ControlU.value: -SCROLL_PAGE,
    Keys.ControlT.value: float("-inf"),
    Keys.ControlG.value: float("inf"),
}

_NORMAL_COMMANDS: dict[str, Intent] = {
    "q": Intent(IntentKind.QUIT),
    "j": Intent(IntentKind.SCROLL, 1),
    "k": Intent(IntentKind.SCROLL, -1),
    "G": Intent(IntentKind.SCROLL, float("inf")),
    "g": Intent(IntentKind.SCROLL, float("-inf")),
    "t": Intent(IntentKind.TOGGLE_THINKING),
    "s": Intent(IntentKind.TOGGLE_TOOLS),
    "x": Intent(IntentKind.CANCEL_TURN),
    "C": Intent(IntentKind.CLEAR_SESSION),
}

_INSERT_KEYS = frozenset({"i", "a"})
_ENTER = Keys.Enter.value
_ESCAPE = Keys.Escape.value
_TAB = Keys.Tab.value
_BACKSPACE_KEYS = frozenset({Keys.Backspace.value, Keys.Delete.value})
_LEFT = Keys.Left.value
_RIGHT = Keys.Right.value


@dataclass
class EditBuffer:
    """Input text plus a cursor measured in code points."""

    text: str = ""
    cursor: int = 0

    def insert(self, s: str) -> None:
        self.text = self.text[: self.cursor] + s + self.text[self.cursor :]
        self.cursor += len(s)

    def backspace(self) -> None:
        if self.cursor == 0:
            return
        self.text = self.text[: self.cursor - 1] + self.text[self.cursor :]
        self.cursor -= 1

    def left(self) -> None:
        self.cursor = max(0, self.cursor - 1)

    def right(self) -> None:
        self.cursor = min(len(self.text), self.cursor + 1)

    def clear(self) -> None:
        self.text = ""
        self.cursor = 0


class VimInput:
    """Normal/Insert mode state machine with debounced submission."""

    def __init__(
        self,
        on_intent: Callable[[Intent], None],
        *,
        is_busy: Callable[[], bool] = lambda: False,
        debounce: float = DEFAULT_DEBOUNCE,
    ) -> None:
        self.mode = Mode.INSERT
        self.panel = Panel.CHAT
        self.buffer = EditBuffer()
        self._on_intent = on_intent
        self._is_busy = is_busy
        self._debounce = debounce
        self._submit_timer: asyncio.TimerHandle | None = None
        # an Enter inside the window that has not become a newline yet
        self._pending_newline = False

    @property
    def submit_pending(self) -> bool:
        return self._submit_timer is not None

    def handle_key(self, key: str, data: str = "") -> None:
        name = _key_name(key)
        delta = _GLOBAL_SCROLL.get(name)
        if delta is not None:
            self._on_intent(Intent(IntentKind.SCROLL, delta))
            return
        if self.mode is Mode.NORMAL:
            self._handle_normal(name)
        else:
            self._handle_insert(name, data)

    def paste(self, text: str) -> None:
        """Insert a bracketed paste verbatim; embedded newlines never submit."""
        if self.mode is not Mode.INSERT or not text:
            return
        self._materialize_newline()
        self.buffer.insert(text.replace("\r\n", "\n").replace("\r", "\n"))
        self._restart_window()

    def close(self) -> None:
        """Cancel the debounce timer (teardown)."""
        self._cancel_window()

    # -- normal mode --

    def _handle_normal(self, key: str) -> None:
        if key in _INSERT_KEYS:
            self.mode = Mode.INSERT
            return
        if key == _TAB:
            self.panel = Panel.SIDEBAR if self.panel is Panel.CHAT else Panel.CHAT
            self._on_intent(Intent(IntentKind.SWITCH_PANEL, self.panel))
            return
        intent = _NORMAL_COMMANDS.get(key)
        if intent is not None:
            self._on_intent(intent)

    # -- insert mode --

    def _handle_insert(self, key: str, data: str) -> None:
        if key == _ESCAPE:
            self._cancel_window()
            self.mode = Mode.NORMAL
            return
        if key == _ENTER:
            self._on_enter()
            return
        if key == _TAB:
            return

        buf = self.buffer
        if key in _BACKSPACE_KEYS:
            self._materialize_newline()
            buf.backspace()
        elif key == _LEFT:
            self._materialize_newline()
            buf.left()
        elif key == _RIGHT:
            self._materialize_newline()
            buf.right()
        else:
            text = data or key
            if len(key) != 1 or not text.isprintable():
                return
            self._materialize_newline()
            buf.insert(text)
        self._restart_window()

    def _on_enter(self) -> None:
        if self._submit_timer is not None:
            # another Enter inside the window: part of a burst
            self._materialize_newline()
            self._pending_newline = True
            self._restart_window()
            return
        if not self.buffer.text.strip() or self._is_busy():
            return
        self._pending_newline = True
        if self._debounce <= 0:
            self._fire_submit()
            return
        self._schedule()

    def _materialize_newline(self) -> None:
        if self._pending_newline:
            self._pending_newline = False
            self.buffer.insert("\n")

    def _restart_window(self) -> None:
        if self._submit_timer is None:
            return
        self._submit_timer.cancel()
        self._schedule()

    def _schedule(self) -> None:
        loop = asyncio.get_running_loop()
        self._submit_timer = loop.call_later(self._debounce, self._fire_submit)

    def _cancel_window(self) -> None:
        if self._submit_timer is not None:
            self._submit_timer.cancel()
            self._submit_timer = None
        self._pending_newline = False

    def _fire_submit(self) -> None:
        self._submit_timer = None
        self._pending_newline = False
        text = self.buffer.text.strip()
        if not text or self._is_busy():
            logger.debug("Submission swallowed (empty or busy)")
            return
        self.buffer.clear()
        self._on_intent(Intent(IntentKind.SUBMIT, text))
