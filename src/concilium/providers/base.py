"""Agent provider abstraction.

Every backend implements ``AgentProvider``. Process-backed and
session-backed providers differ only in how they obtain output and how
they are stopped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, runtime_checkable

from ..core.controller import AbortSignal, StoppableHandle
from ..core.errors import ConfigError
from ..models.agent import AgentConfig, AgentResult, AgentStatus, ImageAttachment, ProviderKind
from ..models.event import EventType, ParsedEvent

logger = logging.getLogger(__name__)

NO_PLAN_PLACEHOLDER = "No normalized plan could be extracted from output."
RAW_FALLBACK_LINES = 80

StatusCallback = Callable[[str, AgentStatus], None]
EventCallback = Callable[[str, ParsedEvent], None]


@dataclass
class RunnerCallbacks:
    on_status: Optional[StatusCallback] = None
    on_event: Optional[EventCallback] = None


@dataclass
class ExecutionRequest:
    agent: AgentConfig
    prompt: str
    callbacks: RunnerCallbacks = field(default_factory=RunnerCallbacks)
    images: list[ImageAttachment] = field(default_factory=list)
    abort_signal: AbortSignal = field(default_factory=AbortSignal)
    # called with the process handle once a child is spawned
    register_handle: Optional[Callable[[StoppableHandle], None]] = None


@runtime_checkable
class AgentProvider(Protocol):
    """Protocol that all agent providers must implement."""

    id: ProviderKind
    name: str

    async def discover_models(self) -> list[str]: ...

    async def execute(self, request: ExecutionRequest) -> AgentResult: ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_plan(events: list[ParsedEvent], raw_lines: Optional[list[str]] = None) -> str:
    """Reduce an agent's output to its final plan text.

    Text events are joined in order. Without any, the last raw lines that
    do not look like JSON are used, and failing that a fixed placeholder.
    """
    text = "".join(e.text for e in events if e.event_type == EventType.TEXT).strip()
    if text:
        return text

    if raw_lines is None:
        raw_lines = [e.text for e in events if e.event_type == EventType.RAW]
    candidates = [
        line.strip()
        for line in raw_lines
        if line.strip() and not line.strip().startswith(("{", "["))
    ]
    if candidates:
        return "\n".join(candidates[-RAW_FALLBACK_LINES:])

    return NO_PLAN_PLACEHOLDER


class BaseAgentProvider:
    """Base class with the bookkeeping shared by all providers."""

    id: ProviderKind
    name: str = "base"

    async def discover_models(self) -> list[str]:
        return []

    async def execute(self, request: ExecutionRequest) -> AgentResult:
        raise NotImplementedError

    def start_result(self, request: ExecutionRequest, command: list[str]) -> AgentResult:
        agent = request.agent
        result = AgentResult(
            id=agent.id,
            agent_key=agent.agent_key,
            name=agent.name,
            status=AgentStatus.RUNNING,
            started_at=utc_now(),
            command=command,
        )
        self.notify_status(request, AgentStatus.RUNNING)
        logger.info("Starting %s (%s)", agent.name, agent.agent_key)
        return result

    def emit(self, request: ExecutionRequest, result: AgentResult, events: list[ParsedEvent]) -> None:
        on_event = request.callbacks.on_event
        for event in events:
            result.events.append(event)
            if on_event:
                on_event(result.agent_key, event)

    def notify_status(self, request: ExecutionRequest, status: AgentStatus) -> None:
        if request.callbacks.on_status:
            request.callbacks.on_status(request.agent.agent_key, status)

    def finish_result(
        self,
        request: ExecutionRequest,
        result: AgentResult,
        status: AgentStatus,
        raw_lines: Optional[list[str]] = None,
    ) -> AgentResult:
        """Stamp the terminal status and plan; the result is frozen afterwards."""
        finished = result.model_copy(
            update={
                "status": status,
                "ended_at": utc_now(),
                "normalized_plan": normalize_plan(result.events, raw_lines),
            }
        )
        self.notify_status(request, status)
        logger.info(
            "%s finished with status %s (%d chars)",
            result.name,
            status.value,
            len(finished.normalized_plan),
        )
        return finished


def get_agent_provider(kind: str, config: Optional[dict] = None) -> AgentProvider:
    """Factory function to create the provider for one agent kind."""
    config = config or {}
    provider_config = dict(config.get("providers", {}).get(kind, {}))

    if kind == ProviderKind.CLAUDE.value:
        from .claude import ClaudeProvider
        return ClaudeProvider(provider_config)
    elif kind == ProviderKind.CODEX.value:
        from .codex import CodexProvider
        return CodexProvider(provider_config)
    elif kind == ProviderKind.OPENCODE.value:
        from .opencode import OpenCodeProvider
        return OpenCodeProvider(provider_config)
    else:
        raise ConfigError(f"Unknown agent provider: {kind}")


def build_provider_registry(config: Optional[dict] = None) -> dict[str, AgentProvider]:
    return {kind.value: get_agent_provider(kind.value, config) for kind in ProviderKind}
