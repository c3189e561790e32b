"""Minimal server-sent-events reader over an httpx streaming response."""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


async def iter_sse_json(response: httpx.Response) -> AsyncIterator[dict]:
    """Yield each ``data:`` payload that decodes to a JSON object.

    Multi-line data fields are joined with newlines. ``[DONE]`` markers and
    undecodable payloads are skipped.
    """
    data_lines: list[str] = []
    async for line in response.aiter_lines():
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip(" "))
            continue
        if line.strip() or not data_lines:
            # event:, id:, retry: and comment lines carry nothing we use
            continue

        payload = "\n".join(data_lines)
        data_lines = []
        parsed = _decode(payload)
        if parsed is not None:
            yield parsed

    if data_lines:
        parsed = _decode("\n".join(data_lines))
        if parsed is not None:
            yield parsed


def _decode(payload: str):
    if not payload or payload.strip() == DONE_SENTINEL:
        return None
    try:
        parsed = json.loads(payload)
    except ValueError:
        logger.debug("Skipping malformed SSE payload: %.200s", payload)
        return None
    return parsed if isinstance(parsed, dict) else None
