"""Conversation data types shared by the session controller and the renderer."""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from enum import Enum

_id_counter = itertools.count()


def make_id() -> str:
    return f"msg-{int(time.time() * 1000)}-{next(_id_counter)}"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass
class ToolCall:
    name: str
    snippet: str


@dataclass
class Message:
    role: Role
    content: str = ""
    id: str = field(default_factory=make_id)
    reasoning: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)
    streaming: bool = False


@dataclass
class Usage:
    """Cumulative token counters as last reported by gro (not per-turn deltas)."""

    input_tokens: int = 0
    output_tokens: int = 0
    input_kb: float = 0.0
    output_kb: float = 0.0
