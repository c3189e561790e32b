"""Normalizer for ``claude --output-format stream-json`` output.

The stream carries assistant turns with their content blocks and a final
``result`` event holding the complete answer. Only the ``result`` event
becomes text, so the answer is never emitted twice. Tool calls, thinking
and turn status from the assistant turns are still surfaced.
"""

from __future__ import annotations

from typing import Optional

from ..models.event import EventType, ParsedEvent, TokenUsage
from .common import as_dict, as_list, as_number, as_str, build_usage, make_event, parse_json_line, truncate_label


def extract_claude_usage(obj: dict) -> Optional[TokenUsage]:
    """Read ``usage`` from a message or result; cache tokens count as input."""
    usage = as_dict(obj.get("usage"))
    input_tokens = (
        as_number(usage.get("input_tokens"))
        + as_number(usage.get("cache_creation_input_tokens"))
        + as_number(usage.get("cache_read_input_tokens"))
    )
    output_tokens = as_number(usage.get("output_tokens"))
    return build_usage(input_tokens, output_tokens, as_number(obj.get("total_cost_usd")))


def normalize_claude_line(line: str) -> list[ParsedEvent]:
    payload, fallback = parse_json_line(line)
    if payload is None:
        return fallback
    return normalize_claude_event(payload, line)


def normalize_claude_event(event: dict, raw_line: str) -> list[ParsedEvent]:
    event_type = as_str(event.get("type"))

    if event_type == "stream_event":
        return _normalize_stream_event(as_dict(event.get("event")), raw_line)

    if event_type == "assistant":
        return _normalize_assistant(event, raw_line)

    if event_type == "result":
        usage = extract_claude_usage(event)
        result_text = as_str(event.get("result"))
        if result_text:
            return [make_event(EventType.TEXT, result_text, raw_line, usage, cumulative=True)]
        failed = as_str(event.get("subtype")) == "error" or bool(event.get("is_error"))
        text = "Run failed" if failed else "Run completed"
        return [make_event(EventType.STATUS, text, raw_line, usage, cumulative=True)]

    # system init, user tool results and anything unknown
    return []


def _tool_label(block: dict) -> str:
    name = as_str(block.get("name"))
    label = f"Tool: {name}" if name else "Tool use"
    tool_input = as_dict(block.get("input"))
    command = as_str(tool_input.get("command"))
    file_path = as_str(tool_input.get("file_path")) or as_str(tool_input.get("path"))
    if command:
        label += f" -> {truncate_label(command, 60)}"
    elif file_path:
        label += f" -> {truncate_label(file_path, 60)}"
    return label


def _normalize_assistant(event: dict, raw_line: str) -> list[ParsedEvent]:
    message = as_dict(event.get("message"))
    content = message.get("content")
    if not isinstance(content, list):
        return []

    stop_reason = as_str(message.get("stop_reason"))
    usage = extract_claude_usage(message) if stop_reason else None

    events: list[ParsedEvent] = []
    for block in as_list(content):
        block = as_dict(block)
        block_type = as_str(block.get("type"))
        if block_type == "tool_use":
            events.append(make_event(EventType.TOOL_CALL, _tool_label(block), raw_line))
        elif block_type == "thinking":
            thinking = as_str(block.get("thinking"))
            events.append(make_event(EventType.THINKING, thinking or "Thinking...", raw_line))
        # text blocks are delivered once, by the result event

    if stop_reason == "tool_use":
        events.append(make_event(EventType.STATUS, "Executing tools...", raw_line, usage))
    elif stop_reason:
        events.append(make_event(EventType.STATUS, f"Turn completed ({stop_reason})", raw_line, usage))
    elif not events:
        events.append(make_event(EventType.STATUS, "Processing...", raw_line))

    return events


def _normalize_stream_event(inner: dict, raw_line: str) -> list[ParsedEvent]:
    inner_type = as_str(inner.get("type"))

    if inner_type == "content_block_start":
        block = as_dict(inner.get("content_block"))
        block_type = as_str(block.get("type"))
        if block_type == "tool_use":
            name = as_str(block.get("name"))
            return [make_event(EventType.TOOL_CALL, f"Tool: {name}" if name else "Tool use", raw_line)]
        if block_type == "thinking":
            return [make_event(EventType.THINKING, "Thinking...", raw_line)]
        return []

    if inner_type == "content_block_delta":
        delta = as_dict(inner.get("delta"))
        delta_type = as_str(delta.get("type"))
        # Only reached with --include-partial-messages, which ClaudeProvider
        # omits: the final result event already carries the whole text.
        if delta_type == "text_delta":
            text = as_str(delta.get("text"))
            return [make_event(EventType.TEXT, text, raw_line)] if text else []
        if delta_type == "thinking_delta":
            thinking = as_str(delta.get("thinking"))
            return [make_event(EventType.THINKING, thinking, raw_line)] if thinking else []
        return []

    if inner_type == "message_delta":
        stop_reason = as_str(as_dict(inner.get("delta")).get("stop_reason"))
        if stop_reason == "tool_use":
            return [make_event(EventType.STATUS, "Executing tools...", raw_line)]
        if stop_reason:
            return [make_event(EventType.STATUS, f"Response complete ({stop_reason})", raw_line)]

    return []
