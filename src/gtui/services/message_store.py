"""In-memory conversation log mutated by the gro session and read by the renderer."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

from ..models import Message, Role, ToolCall, Usage

logger = logging.getLogger(__name__)


class MessageStore:
    """Append-only message log plus the latest usage report.

    At most one message is streaming at a time; only that message is mutated
    by the ``append_*``/``add_tool_call``/``set_content`` helpers.
    """

    def __init__(self) -> None:
        self._messages: list[Message] = []
        self._streaming_id: str | None = None
        self._usage = Usage()
        self._listeners: list[Callable[[], None]] = []

    # -- read side --

    @property
    def messages(self) -> Sequence[Message]:
        return tuple(self._messages)

    @property
    def usage(self) -> Usage:
        return self._usage

    @property
    def streaming_id(self) -> str | None:
        return self._streaming_id

    @property
    def streaming_message(self) -> Message | None:
        if self._streaming_id is None:
            return None
        for msg in reversed(self._messages):
            if msg.id == self._streaming_id:
                return msg
        return None

    @property
    def user_message_count(self) -> int:
        return sum(1 for m in self._messages if m.role == Role.USER)

    def subscribe(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def _changed(self) -> None:
        for callback in self._listeners:
            callback()

    # -- write side --

    def begin_turn(self, text: str) -> Message:
        """Append the user message and a streaming assistant placeholder."""
        if self._streaming_id is not None:
            logger.warning("Sealing message %s left streaming by a new turn", self._streaming_id)
            self._seal_current()
        self._messages.append(Message(role=Role.USER, content=text))
        placeholder = Message(role=Role.ASSISTANT, streaming=True)
        self._messages.append(placeholder)
        self._streaming_id = placeholder.id
        self._changed()
        return placeholder

    def append_content(self, text: str) -> None:
        msg = self.streaming_message
        if msg is None:
            return
        msg.content += text
        self._changed()

    def append_reasoning(self, text: str) -> None:
        msg = self.streaming_message
        if msg is None:
            return
        msg.reasoning = (msg.reasoning or "") + text
        self._changed()

    def add_tool_call(self, name: str, snippet: str) -> None:
        msg = self.streaming_message
        if msg is None:
            return
        msg.tool_calls.append(ToolCall(name=name, snippet=snippet))
        self._changed()

    def set_content(self, text: str) -> None:
        msg = self.streaming_message
        if msg is None:
            return
        msg.content = text
        self._changed()

    def seal(self, content: str | None = None, notice: str | None = None) -> Message | None:
        """Stop streaming the current message.

        ``content`` replaces the accumulated text. ``notice`` becomes the
        content of an empty message, or is appended after a blank line.
        """
        msg = self.streaming_message
        if msg is None:
            self._streaming_id = None
            return None
        if content is not None:
            msg.content = content
        if notice:
            msg.content = f"{msg.content}\n\n{notice}" if msg.content else notice
        self._seal_current()
        self._changed()
        return msg

    def _seal_current(self) -> None:
        msg = self.streaming_message
        if msg is not None:
            msg.streaming = False
        self._streaming_id = None

    def add_system(self, text: str) -> Message:
        msg = Message(role=Role.SYSTEM, content=text)
        self._messages.append(msg)
        self._changed()
        return msg

    def set_usage(self, usage: Usage) -> None:
        self._usage = usage
        self._changed()

    def clear(self) -> None:
        self._messages.clear()
        self._streaming_id = None
        self._usage = Usage()
        self._changed()
