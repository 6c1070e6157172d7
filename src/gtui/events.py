"""Pydantic models for gro's ``--output-format stream-json`` records."""

from __future__ import annotations

import logging
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


class TokenEvent(BaseModel):
    type: Literal["token"]
    token: str


class ReasoningEvent(BaseModel):
    type: Literal["reasoning"]
    token: str


class ResultEvent(BaseModel):
    type: Literal["result"]
    result: str


class ToolCallEvent(BaseModel):
    type: Literal["tool_call"]
    name: str
    snippet: str = ""


class ApiUsageEvent(BaseModel):
    type: Literal["api_usage"]
    input_tokens: int
    output_tokens: int
    input_kb: float = 0.0
    output_kb: float = 0.0


class StateVectorEvent(BaseModel):
    type: Literal["state-vector"]
    state: dict[str, float] = Field(default_factory=dict)


GroEvent = Annotated[
    TokenEvent | ReasoningEvent | ResultEvent | ToolCallEvent | ApiUsageEvent | StateVectorEvent,
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[GroEvent] = TypeAdapter(GroEvent)


def parse_event(line: str) -> GroEvent | None:
    """Decode one stdout line, or return None for blank and malformed lines."""
    trimmed = line.strip()
    if not trimmed:
        return None
    try:
        return _event_adapter.validate_json(trimmed)
    except ValidationError:
        # gro also prints plain text on stdout at times; never fatal
        logger.debug("Dropping non-event line: %.200s", trimmed)
        return None
