"""Normalizer for OpenCode output.

OpenCode speaks two dialects. ``opencode run --format json`` prints the CLI
shape ``{"type": "tool_use", "part": {...}}``, while the server event stream
sends ``{"type": "message.part.updated", "properties": {"part": {...},
"delta": "..."}}``. Both are folded into the CLI event types before
dispatch. ``step_finish`` usage is per step and is summed by the caller.
"""

from __future__ import annotations

import re
from typing import Optional

from ..models.event import EventType, ParsedEvent
from .common import as_dict, as_number, as_str, build_usage, make_event, parse_json_line, strip_ansi, truncate_label

SHARE_LINK_RE = re.compile(r"^(https://opncd\.ai/share/[a-zA-Z0-9_-]+)$")

# server part type -> CLI event type
SDK_PART_TYPES = {
    "text": "text",
    "reasoning": "reasoning",
    "tool": "tool_use",
    "step-start": "step_start",
    "step-finish": "step_finish",
}


def parse_share_link(line: str, raw_line: str) -> Optional[ParsedEvent]:
    match = SHARE_LINK_RE.match(strip_ansi(line).strip())
    if not match:
        return None
    return make_event(EventType.STATUS, f"Share link: {match.group(1)}", raw_line)


def normalize_opencode_line(line: str) -> list[ParsedEvent]:
    payload, fallback = parse_json_line(line)
    if payload is not None:
        return normalize_opencode_event(payload, line)
    if fallback:
        share = parse_share_link(line, line)
        if share:
            return [share]
    return fallback


def to_cli_shape(event: dict) -> tuple[str, dict, Optional[str]]:
    """Return ``(event_type, part, delta)`` in the CLI vocabulary."""
    event_type = as_str(event.get("type"))
    part = as_dict(event.get("part"))
    delta: Optional[str] = None

    if event_type.startswith("message.part.") or event_type.startswith("message.step."):
        properties = as_dict(event.get("properties"))
        if properties.get("part"):
            part = as_dict(properties.get("part"))
        if isinstance(properties.get("delta"), str):
            delta = properties["delta"]
        part_type = as_str(part.get("type"))
        if part_type:
            event_type = SDK_PART_TYPES.get(part_type, part_type)
        elif event_type == "message.step.started":
            event_type = "step_start"
        elif event_type == "message.step.finished":
            event_type = "step_finish"

    return event_type, part, delta


def normalize_opencode_event(event: dict, raw_line: str) -> list[ParsedEvent]:
    event_type, part, delta = to_cli_shape(event)

    if event_type == "text":
        text = delta if delta is not None else as_str(part.get("text"))
        return [make_event(EventType.TEXT, text, raw_line)] if text else []

    if event_type == "reasoning":
        text = delta if delta is not None else as_str(part.get("text"))
        return [make_event(EventType.THINKING, text or "Reasoning...", raw_line)]

    if event_type == "tool_use":
        return [make_event(EventType.TOOL_CALL, _tool_label(part), raw_line)]

    if event_type == "step_start":
        return [make_event(EventType.STATUS, "Step started", raw_line)]

    if event_type == "step_finish":
        tokens = as_dict(part.get("tokens"))
        usage = build_usage(
            as_number(tokens.get("input")),
            as_number(tokens.get("output")) + as_number(tokens.get("reasoning")),
            as_number(part.get("cost")),
        )
        reason = as_str(part.get("finish_reason")) or as_str(part.get("reason"))
        text = f"Step completed ({reason})" if reason else "Step completed"
        return [make_event(EventType.STATUS, text, raw_line, usage)]

    if event_type == "error":
        error = event.get("error")
        message = (
            as_str(event.get("message"))
            or as_str(part.get("text"))
            or as_str(error)
            or as_str(as_dict(error).get("message"))
            or as_str(as_dict(as_dict(error).get("data")).get("message"))
        )
        return [make_event(EventType.RAW, f"Error: {message or 'unknown error'}", raw_line)]

    if event_type:
        text = as_str(part.get("text")) or as_str(event.get("message"))
        if text:
            return [make_event(EventType.TEXT, text, raw_line)]
        return [make_event(EventType.STATUS, f"[{event_type}]", raw_line)]

    return []


def _tool_label(part: dict) -> str:
    tool_name = as_str(part.get("tool"))
    state = as_dict(part.get("state"))
    title = as_str(state.get("title"))
    status = as_str(state.get("status"))

    if title:
        label = truncate_label(title, 80)
    elif tool_name:
        label = f"Tool: {tool_name}"
    else:
        label = "Tool use"

    tool_input = as_dict(state.get("input"))
    command = as_str(tool_input.get("command"))
    file_path = as_str(tool_input.get("file_path")) or as_str(tool_input.get("path"))
    pattern = as_str(tool_input.get("pattern"))
    if command:
        label += f" -> {truncate_label(command, 70)}"
    elif file_path:
        label += f" -> {truncate_label(file_path, 70)}"
    elif pattern:
        label += f" -> {truncate_label(pattern, 70)}"

    if status and status not in ("running", "pending"):
        label += f" ({status})"
    return label
