"""LLM gateway data models."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from .council import CouncilTokenUsage


class CompletionResult(BaseModel):
    success: bool
    content: Optional[str] = None
    usage: Optional[CouncilTokenUsage] = None
    error: Optional[str] = None
