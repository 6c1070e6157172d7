"""Full-screen chat UI wiring keys, the gro session and the chat panel together."""

from __future__ import annotations

import logging
from typing import Any

from prompt_toolkit.application import Application
from prompt_toolkit.formatted_text import ANSI, StyleAndTextTuples
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout.containers import HSplit, VSplit, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.layout.layout import Layout
from prompt_toolkit.styles import Style as PtStyle
from prompt_toolkit.widgets import Frame

from .. import __version__
from ..config import AppConfig
from ..input import Intent, IntentKind, Mode, Panel, VimInput
from ..layout import TRACK_BOTTOM, build_lines, scroll_by, window
from ..services.gro_session import GroSession, InvalidStateError, SessionState, SpawnFn
from ..services.message_store import MessageStore
from . import renderer
from .renderer import CHROME, ERROR_RED, GOLD, MUTED, SLATE

logger = logging.getLogger(__name__)

SIDEBAR_WIDTH = 24  # including borders
_INPUT_MAX_LINES = 6
_MIN_REDRAW_INTERVAL = 0.03  # coalesce token floods into ~30 fps
_ESCAPE_TIMEOUT = 0.1  # bare Escape vs. escape sequences (arrow keys, etc.)

# Keys prompt_toolkit binds by default; eager bindings take them over, and
# stop a bare Escape from waiting on longer escape-prefixed sequences.
_FORWARDED_KEYS = (
    Keys.Escape,
    Keys.Enter,
    Keys.Tab,
    Keys.Backspace,
    Keys.Delete,
    Keys.Left,
    Keys.Right,
    Keys.ControlJ,
    Keys.ControlK,
    Keys.ControlD,
    Keys.ControlU,
    Keys.ControlT,
    Keys.ControlG,
)

_STATE_LABELS = {
    SessionState.NOT_STARTED: "idle",
    SessionState.STARTING: "starting",
    SessionState.READY: "ready",
    SessionState.BUSY: "streaming",
    SessionState.FAILED: "failed",
}


class ChatApp:
    """One conversation with one gro process, rendered full-screen.

    The store and session are mutated only by their event handlers; every
    render is a pure read that re-wraps the whole log at the current size.
    """

    def __init__(self, config: AppConfig, *, spawn: SpawnFn | None = None) -> None:
        self.config = config
        self.store = MessageStore()
        self.session = GroSession(
            self.store,
            executable=config.gro.executable,
            model=config.gro.model,
            provider=config.gro.provider,
            prompt_marker=config.gro.prompt_marker,
            spawn=spawn,
            on_change=self.invalidate,
        )
        self.keys = VimInput(
            self.handle_intent,
            is_busy=lambda: self.session.busy,
            debounce=config.ui.paste_debounce,
        )
        self.scroll_offset: int | None = TRACK_BOTTOM
        self.show_thinking = config.ui.show_thinking
        self.show_tools = False
        self._app = self._build_app()
        self.store.subscribe(self.invalidate)

    # -- application --

    def _build_app(self) -> Application[None]:
        kb = KeyBindings()

        def _forward(event: Any) -> None:
            for key_press in event.key_sequence:
                self.keys.handle_key(key_press.key, key_press.data)

        kb.add(Keys.Any)(_forward)
        for key in _FORWARDED_KEYS:
            kb.add(key, eager=True)(_forward)

        @kb.add(Keys.BracketedPaste, eager=True)
        def _paste(event: Any) -> None:
            self.keys.paste(event.data)

        @kb.add("c-c", eager=True)
        def _interrupt(event: Any) -> None:
            event.app.exit()

        sidebar = Frame(
            Window(FormattedTextControl(self._sidebar_text), width=SIDEBAR_WIDTH - 2),
            title=lambda: self._panel_title("Session", Panel.SIDEBAR),
        )
        chat = Frame(
            Window(FormattedTextControl(self._chat_text), wrap_lines=False, left_margins=[], right_margins=[]),
            title=lambda: self._panel_title("Chat", Panel.CHAT),
        )
        input_bar = Frame(
            Window(FormattedTextControl(self._input_text), height=self._input_height, wrap_lines=True),
            title=self._input_title,
        )
        status_bar = Window(FormattedTextControl(self._status_text), height=1, style="class:status-bar")

        layout = Layout(HSplit([VSplit([sidebar, HSplit([chat, input_bar])]), status_bar]))
        style = PtStyle.from_dict(
            {
                "frame.border": CHROME,
                "frame.label": CHROME,
                "focused": f"bold {GOLD}",
                "muted": MUTED,
                "label": SLATE,
                "value": "bold",
                "mode.insert": "bold #22c55e",
                "mode.normal": "bold #eab308",
                "streaming": GOLD,
                "error": ERROR_RED,
                "cursor": "reverse",
                "brand": "bold #22d3ee",
            }
        )
        app: Application[None] = Application(
            layout=layout,
            key_bindings=kb,
            style=style,
            full_screen=True,
            min_redraw_interval=_MIN_REDRAW_INTERVAL,
        )
        app.ttimeoutlen = _ESCAPE_TIMEOUT
        return app

    def invalidate(self) -> None:
        app = getattr(self, "_app", None)
        if app is not None and app.is_running:
            app.invalidate()

    async def run_async(self) -> None:
        try:
            await self._app.run_async()
        finally:
            self.keys.close()
            await self.session.aclose()

    # -- intents --

    def handle_intent(self, intent: Intent) -> None:
        kind = intent.kind
        if kind is IntentKind.SCROLL:
            total, height = self._line_count()
            self.scroll_offset = scroll_by(self.scroll_offset, intent.value, total, height)
        elif kind is IntentKind.SUBMIT:
            self.submit(intent.value)
        elif kind is IntentKind.QUIT:
            self._app.exit()
        elif kind is IntentKind.TOGGLE_THINKING:
            self.show_thinking = not self.show_thinking
        elif kind is IntentKind.TOGGLE_TOOLS:
            self.show_tools = not self.show_tools
        elif kind is IntentKind.CANCEL_TURN:
            self.session.cancel()
        elif kind is IntentKind.CLEAR_SESSION:
            self.clear()
        self.invalidate()

    def submit(self, text: str) -> None:
        """Send a prompt, starting gro on first use or after it exited."""
        if self.session.busy:
            return
        self.session.start()
        try:
            self.session.submit(text)
        except InvalidStateError as e:
            logger.warning("Submit rejected: %s", e)
            self.store.add_system(f"Cannot send right now: {e}")
            return
        self.scroll_offset = TRACK_BOTTOM

    def clear(self) -> None:
        self.session.stop()
        self.store.clear()
        self.scroll_offset = TRACK_BOTTOM

    # -- rendering --

    def _terminal_size(self) -> tuple[int, int]:
        size = self._app.output.get_size()
        return size.columns, size.rows

    def _input_lines(self) -> int:
        return min(_INPUT_MAX_LINES, self.keys.buffer.text.count("\n") + 1)

    def _input_height(self) -> int:
        return self._input_lines()

    def chat_size(self) -> tuple[int, int]:
        """Width and height available for chat text inside its frame."""
        columns, rows = self._terminal_size()
        width = columns - SIDEBAR_WIDTH - 2
        # status bar, input frame (content + borders), chat frame borders
        height = rows - 1 - (self._input_lines() + 2) - 2
        return max(1, width), max(1, height)

    def _layout_lines(self, width: int) -> list[str]:
        blocks = renderer.render_messages(self.store.messages, self.show_thinking, self.show_tools)
        return build_lines(blocks, width)

    def _line_count(self) -> tuple[int, int]:
        width, height = self.chat_size()
        return len(self._layout_lines(width)), height

    def _chat_text(self) -> ANSI:
        width, height = self.chat_size()
        lines = window(self._layout_lines(width), self.scroll_offset, height)
        return ANSI("\n".join(lines))

    def _panel_title(self, name: str, panel: Panel) -> StyleAndTextTuples:
        style = "class:focused" if self.keys.panel is panel else "class:frame.label"
        title: StyleAndTextTuples = [(style, name)]
        if panel is Panel.CHAT:
            if self.show_thinking:
                title.append(("class:muted", " [CoT]"))
            if self.show_tools:
                title.append(("class:muted", " [tools]"))
        return title

    def _input_title(self) -> StyleAndTextTuples:
        if self.session.busy:
            return [("class:streaming", "streaming...")]
        return [("class:frame.label", "Message")]

    def _input_text(self) -> StyleAndTextTuples:
        mode = self.keys.mode
        badge: StyleAndTextTuples = [
            (f"class:mode.{mode.value}", f"[{mode.value.upper()}]"),
            ("", " "),
        ]
        buf = self.keys.buffer
        if not buf.text:
            if mode is Mode.INSERT:
                return badge + [("class:cursor", " "), ("class:muted", "Type a message...")]
            return badge
        if mode is not Mode.INSERT:
            return badge + [("", buf.text)]
        before = buf.text[: buf.cursor]
        at = buf.text[buf.cursor : buf.cursor + 1]
        after = buf.text[buf.cursor + 1 :]
        if at in ("", "\n"):
            return badge + [("", before), ("class:cursor", " "), ("", at + after)]
        return badge + [("", before), ("class:cursor", at), ("", after)]

    def _sidebar_text(self) -> StyleAndTextTuples:
        gro = self.config.gro
        state = self.session.state
        state_style = "class:error" if state is SessionState.FAILED else "class:value"
        return [
            ("class:label", "Model:\n"),
            ("class:value", f"{gro.model or 'default'}\n\n"),
            ("class:label", "Provider:\n"),
            ("class:value", f"{gro.provider or 'auto'}\n\n"),
            ("class:label", "gro:\n"),
            (state_style, f"{_STATE_LABELS[state]}\n\n"),
            ("class:muted", "Tab: switch panel\n"),
            ("class:muted", "q: quit (normal)\n"),
            ("class:muted", "j/k: scroll\n"),
            ("class:muted", "g/G: top/bottom\n"),
            ("class:muted", "t: toggle CoT\n"),
            ("class:muted", "s: toggle tools\n"),
            ("class:muted", "x: cancel turn\n"),
            ("class:muted", "C: clear session\n"),
            ("class:muted", "Ctrl-j/k/d/u: scroll"),
        ]

    def _status_text(self) -> StyleAndTextTuples:
        gro = self.config.gro
        mode = self.keys.mode
        left = f"{gro.provider or 'auto'}:{gro.model or 'default'}"
        right = f"msgs:{self.store.user_message_count}  {renderer.format_usage(self.store.usage)}  "
        columns, _ = self._terminal_size()
        used = len(mode.value) + 3 + len(left) + len(right) + len(f"gtui {__version__}")
        gap = " " * max(2, columns - used)
        return [
            (f"class:mode.{mode.value}", f" {mode.value.upper()}"),
            ("", "  "),
            ("class:muted", left),
            ("", gap),
            ("class:muted", right),
            ("class:brand", f"gtui {__version__}"),
        ]
