"""Helpers shared by the per-backend event normalizers."""

from __future__ import annotations

import json
import math
import re
from typing import Any, Optional

from ..models.event import EventType, ParsedEvent, TokenUsage

ANSI_ESCAPE_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE_RE.sub("", text)


def truncate_label(text: str, max_len: int) -> str:
    """Collapse to one line and cut to ``max_len`` characters with an ellipsis."""
    one_line = " ".join(text.split("\n")).strip()
    if len(one_line) > max_len:
        return one_line[: max_len - 3] + "..."
    return one_line


def as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def as_number(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    if isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return 0.0
        return number if math.isfinite(number) else 0.0
    return 0.0


def as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def make_event(
    event_type: EventType,
    text: str,
    raw_line: str,
    token_usage: Optional[TokenUsage] = None,
    cumulative: bool = False,
) -> ParsedEvent:
    return ParsedEvent(
        event_type=event_type,
        text=text,
        raw_line=raw_line,
        token_usage=token_usage,
        token_usage_cumulative=cumulative,
    )


def build_usage(input_tokens: float, output_tokens: float, cost: float = 0) -> Optional[TokenUsage]:
    """Build a TokenUsage, or None when nothing was consumed.

    A zero or missing cost is reported as unknown.
    """
    input_count = int(input_tokens)
    output_count = int(output_tokens)
    if input_count <= 0 and output_count <= 0:
        return None
    return TokenUsage(
        input_tokens=max(input_count, 0),
        output_tokens=max(output_count, 0),
        total_cost=cost if cost > 0 else None,
    )


def parse_json_line(line: str) -> tuple[Optional[dict], list[ParsedEvent]]:
    """Split a raw output line into a JSON payload or fallback events.

    Returns ``(payload, [])`` for a JSON object, and ``(None, events)``
    otherwise, where ``events`` holds a single ``raw`` event for any
    non-blank text.
    """
    trimmed = line.strip()
    if not trimmed:
        return None, []

    try:
        payload = json.loads(trimmed)
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        return payload, []

    cleaned = strip_ansi(trimmed).strip()
    if not cleaned:
        return None, []
    return None, [make_event(EventType.RAW, cleaned, line)]
