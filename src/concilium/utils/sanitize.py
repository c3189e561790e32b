"""Error message sanitization to prevent credential leakage."""

from __future__ import annotations

import os
import re

_KEY_PATTERNS = [
    # OpenRouter, Anthropic and OpenAI style keys
    (re.compile(r"sk-(?:or|ant)-[a-zA-Z0-9_-]+"), "[REDACTED_KEY]"),
    (re.compile(r"sk-[a-zA-Z0-9_-]{20,}"), "[REDACTED_KEY]"),
    (re.compile(r"Bearer\s+\S+"), "Bearer [REDACTED]"),
    (re.compile(r"Authorization:\s*\S+", re.IGNORECASE), "Authorization: [REDACTED]"),
    (re.compile(r"x-api-key:\s*\S+", re.IGNORECASE), "x-api-key: [REDACTED]"),
]


def sanitize_error(message: str) -> str:
    """Sanitize error messages to prevent API key and path leakage."""
    if not message:
        return message

    sanitized = message
    for pattern, replacement in _KEY_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)

    home = os.environ.get("HOME") or os.environ.get("USERPROFILE") or ""
    if home and home != "/":
        sanitized = sanitized.replace(home, "~")

    return sanitized
