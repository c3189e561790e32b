"""Per-backend normalizers mapping raw agent output to canonical events.

Each normalizer is a pure function of one output line. Add a backend by
registering its line normalizer in ``NORMALIZERS``.
"""

from __future__ import annotations

from typing import Callable

from ..models.event import ParsedEvent
from .claude import normalize_claude_event, normalize_claude_line
from .codex import normalize_codex_event, normalize_codex_line
from .common import parse_json_line
from .opencode import normalize_opencode_event, normalize_opencode_line

LineNormalizer = Callable[[str], list[ParsedEvent]]

NORMALIZERS: dict[str, LineNormalizer] = {
    "claude": normalize_claude_line,
    "codex": normalize_codex_line,
    "opencode": normalize_opencode_line,
}


def normalize_line(agent_id: str, line: str) -> list[ParsedEvent]:
    """Normalize one line of output from the given backend.

    Unknown backends only get the plain-text fallback.
    """
    normalizer = NORMALIZERS.get(agent_id)
    if normalizer is None:
        _, fallback = parse_json_line(line)
        return fallback
    return normalizer(line)


__all__ = [
    "NORMALIZERS",
    "normalize_claude_event",
    "normalize_claude_line",
    "normalize_codex_event",
    "normalize_codex_line",
    "normalize_line",
    "normalize_opencode_event",
    "normalize_opencode_line",
]
