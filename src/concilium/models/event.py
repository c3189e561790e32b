"""Canonical event data models shared by every agent backend."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    TEXT = "text"
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    STATUS = "status"
    RAW = "raw"


class TokenUsage(BaseModel):
    """Token counts for one report.

    ``total_cost`` is ``None`` when the backend did not report a cost.
    Zero means the call was free, which is a different fact.
    """

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    total_cost: Optional[float] = Field(default=None, ge=0)


class ParsedEvent(BaseModel):
    """One normalized unit of agent output.

    When ``token_usage_cumulative`` is set the attached usage is the running
    total for the agent and replaces anything seen before. Otherwise the
    usage is a delta to be summed.
    """

    event_type: EventType
    text: str
    raw_line: str
    token_usage: Optional[TokenUsage] = None
    token_usage_cumulative: bool = False
