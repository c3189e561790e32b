"""Agent data models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from .event import ParsedEvent


class ProviderKind(str, Enum):
    CLAUDE = "claude"
    CODEX = "codex"
    OPENCODE = "opencode"


class AgentStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self not in (AgentStatus.QUEUED, AgentStatus.RUNNING)


class AgentInstance(BaseModel):
    """A configured agent slot, as stored in user config."""

    instance_id: str
    provider: ProviderKind
    model: str = ""
    enabled: bool = True


class AgentConfig(BaseModel):
    id: ProviderKind
    instance_id: Optional[str] = None
    name: str
    model: Optional[str] = None
    cwd: str
    enabled: bool = True
    env: dict[str, str] = {}

    @property
    def agent_key(self) -> str:
        return self.instance_id or self.id.value


class AgentResult(BaseModel):
    id: ProviderKind
    agent_key: str
    name: str
    status: AgentStatus = AgentStatus.QUEUED
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    normalized_plan: str = ""
    errors: list[str] = []
    command: list[str] = []
    events: list[ParsedEvent] = []

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()


class ImageAttachment(BaseModel):
    """An image passed to agents that accept them; ``base64`` wins over ``path``."""

    mime_type: str = "image/png"
    path: Optional[str] = None
    base64: Optional[str] = None


class AgentModelInfo(BaseModel):
    provider: ProviderKind
    models: list[str] = []
    default_model: str = ""
    supports_discovery: bool = False
