"""Normalizer for ``codex exec --json`` thread events.

``turn.completed`` carries the running usage total for the thread, so it
is tagged cumulative. Items are reported as started, updated and
completed; only a completed agent message becomes text.
"""

from __future__ import annotations

import json

from ..models.event import EventType, ParsedEvent
from .common import as_dict, as_list, as_number, as_str, build_usage, make_event, parse_json_line, truncate_label


def normalize_codex_line(line: str) -> list[ParsedEvent]:
    payload, fallback = parse_json_line(line)
    if payload is None:
        return fallback
    return normalize_codex_event(payload, line)


def normalize_codex_event(event: dict, raw_line: str) -> list[ParsedEvent]:
    event_type = as_str(event.get("type"))

    if event_type in ("thread.started", "thread.completed"):
        return []
    if event_type == "turn.started":
        return [make_event(EventType.STATUS, "Turn started", raw_line)]
    if event_type == "turn.completed":
        usage = as_dict(event.get("usage"))
        token_usage = build_usage(as_number(usage.get("input_tokens")), as_number(usage.get("output_tokens")))
        return [make_event(EventType.STATUS, "Turn completed", raw_line, token_usage, cumulative=True)]
    if event_type == "turn.failed":
        message = as_str(as_dict(event.get("error")).get("message"))
        return [make_event(EventType.RAW, f"Failed: {message or 'unknown error'}", raw_line)]
    if event_type == "error":
        message = as_str(event.get("message"))
        return [make_event(EventType.RAW, f"Error: {message or 'unknown error'}", raw_line)]
    if event_type.startswith("item."):
        phase = event_type[len("item."):]
        return _normalize_item(as_dict(event.get("item")), phase, raw_line)
    return []


def _join_text(parts: list, key: str = "text") -> str:
    return "\n".join(as_str(as_dict(part).get(key)) for part in parts).strip()


def _normalize_item(item: dict, phase: str, raw_line: str) -> list[ParsedEvent]:
    item_type = as_str(item.get("type"))
    completed = phase == "completed"

    if item_type == "agent_message":
        text = as_str(item.get("text"))
        if completed and text:
            return [make_event(EventType.TEXT, text, raw_line)]
        return [make_event(EventType.STATUS, "Generating response...", raw_line)]

    if item_type == "message":
        text = _join_text(as_list(item.get("content")))
        if completed and text:
            return [make_event(EventType.TEXT, text, raw_line)]
        return [make_event(EventType.STATUS, "Generating response...", raw_line)]

    if item_type == "reasoning":
        text = as_str(item.get("text")) or _join_text(as_list(item.get("summary")))
        return [make_event(EventType.THINKING, text or "Reasoning...", raw_line)]

    if item_type == "command_execution":
        command = as_str(item.get("command"))
        label = truncate_label(command, 80) if command else "command"
        if phase == "started":
            return [make_event(EventType.TOOL_CALL, f"Running: {label}", raw_line)]
        text = f"Ran: {label}"
        exit_code = item.get("exit_code")
        if completed and isinstance(exit_code, int):
            text += " ✓" if exit_code == 0 else f" (exit {exit_code})"
        return [make_event(EventType.TOOL_CALL, text, raw_line)]

    if item_type == "function_call":
        name = as_str(item.get("name"))
        label = f"Tool: {name}" if name else "Tool call"
        target = _function_call_target(as_str(item.get("arguments")))
        if target:
            label += f" -> {truncate_label(target, 60)}"
        return [make_event(EventType.TOOL_CALL, label, raw_line)]

    if item_type == "function_call_output":
        if completed:
            return [make_event(EventType.STATUS, "Tool completed", raw_line)]
        return []

    if item_type == "web_search":
        query = truncate_label(as_str(item.get("query")), 70)
        return [make_event(EventType.TOOL_CALL, f"Web search: {query}", raw_line)]

    if item_type == "mcp_tool_call":
        label = f"Tool: {as_str(item.get('tool'))}"
        server = as_str(item.get("server"))
        if server:
            label += f" ({server})"
        status = as_str(item.get("status"))
        if completed and status and status != "completed":
            label += f" ({status})"
        return [make_event(EventType.TOOL_CALL, label, raw_line)]

    if item_type == "file_change":
        changes = as_list(item.get("changes"))
        status = as_str(item.get("status"))
        return [make_event(EventType.TOOL_CALL, f"File changes: {len(changes)} file(s) ({status})", raw_line)]

    if item_type == "todo_list":
        items = as_list(item.get("items"))
        return [make_event(EventType.STATUS, f"Plan: {len(items)} items", raw_line)]

    if item_type == "error":
        message = as_str(item.get("message"))
        return [make_event(EventType.RAW, f"Error: {message or 'unknown error'}", raw_line)]

    return []


def _function_call_target(arguments: str) -> str:
    if not arguments:
        return ""
    try:
        parsed = json.loads(arguments)
    except ValueError:
        return ""
    parsed = as_dict(parsed)
    return as_str(parsed.get("command")) or as_str(parsed.get("cmd")) or as_str(parsed.get("path"))
