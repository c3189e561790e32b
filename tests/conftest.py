"""Shared fixtures for Concilium tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import pytest

from concilium.models.agent import AgentConfig, AgentResult, AgentStatus, ProviderKind
from concilium.models.council import (
    CouncilConfig,
    CouncilTokenUsage,
    LlmResponse,
    ModelInfo,
    ModelPricing,
    Stage1Result,
)
from concilium.models.event import EventType, ParsedEvent, TokenUsage
from concilium.models.run import RunMetadata, RunRecord
from concilium.providers.base import BaseAgentProvider, ExecutionRequest


class FakeAgentProvider(BaseAgentProvider):
    """Provider that replays canned text, or waits until aborted."""

    def __init__(
        self,
        kind: ProviderKind = ProviderKind.CLAUDE,
        text: str = "plan",
        status: AgentStatus = AgentStatus.SUCCESS,
        hang: bool = False,
        raises: Optional[Exception] = None,
    ):
        self.id = kind
        self.name = f"fake-{kind.value}"
        self.text = text
        self.status = status
        self.hang = hang
        self.raises = raises
        self.requests: list[ExecutionRequest] = []

    async def execute(self, request: ExecutionRequest) -> AgentResult:
        self.requests.append(request)
        if self.raises is not None:
            raise self.raises
        result = self.start_result(request, ["fake"])
        if self.hang:
            await request.abort_signal.wait()
            return self.finish_result(request, result, AgentStatus.ABORTED)
        self.emit(request, result, [ParsedEvent(event_type=EventType.TEXT, text=self.text, raw_line="")])
        return self.finish_result(request, result, self.status)


class FakeGateway:
    """In-memory stand-in for the OpenRouter gateway."""

    def __init__(
        self,
        rankings: Optional[dict[str, Optional[str]]] = None,
        synthesis: Optional[str] = "final answer",
        models: Optional[list[ModelInfo]] = None,
    ):
        self.rankings = rankings or {}
        self.synthesis = synthesis
        self.models = models or []
        self.queries: list[tuple[str, list[dict], Optional[float]]] = []
        self.streamed_messages: list[list[dict]] = []

    async def query(self, model, messages, timeout=None):
        self.queries.append((model, messages, timeout))
        if self.synthesis is None:
            return None
        usage = CouncilTokenUsage(prompt_tokens=1000, completion_tokens=500, total_tokens=1500)
        return LlmResponse(content=self.synthesis, usage=usage)

    async def query_models_parallel_streaming(
        self, models, messages, on_start=None, on_chunk=None, on_complete=None
    ):
        self.streamed_messages.append(messages)
        results = {}
        for model in models:
            if on_start:
                on_start(model)
            text = self.rankings.get(model)
            if text is None:
                results[model] = None
                if on_complete:
                    on_complete(model, False, None)
                continue
            if on_chunk:
                on_chunk(model, text)
            usage = CouncilTokenUsage(prompt_tokens=100, completion_tokens=50, total_tokens=150)
            results[model] = LlmResponse(content=text, usage=usage)
            if on_complete:
                on_complete(model, True, usage)
        return results

    def get_cached_or_fallback_models(self):
        return self.models


@pytest.fixture
def make_agent(tmp_path) -> Callable[..., AgentConfig]:
    def _make(kind: ProviderKind = ProviderKind.CLAUDE, instance_id: Optional[str] = None, **kwargs) -> AgentConfig:
        return AgentConfig(
            id=kind,
            instance_id=instance_id,
            name=kwargs.pop("name", f"{kind.value} agent"),
            cwd=str(tmp_path),
            **kwargs,
        )

    return _make


@pytest.fixture
def council_config() -> CouncilConfig:
    return CouncilConfig(
        api_key="sk-or-test",
        api_url="https://openrouter.test/api/v1/chat/completions",
        council_models=["judge/one", "judge/two"],
        chairman_model="chair/model",
    )


@pytest.fixture
def stage1_results() -> list[Stage1Result]:
    return [
        Stage1Result(model="claude · opus", response="Plan from claude"),
        Stage1Result(model="codex · gpt-5.2-codex", response="Plan from codex"),
    ]


@pytest.fixture
def priced_models() -> list[ModelInfo]:
    return [
        ModelInfo(id="judge/one", name="Judge One", pricing=ModelPricing(prompt=2.0, completion=10.0)),
        ModelInfo(id="chair/model", name="Chair", pricing=ModelPricing(prompt=1.0, completion=4.0)),
        ModelInfo(id="free/model", name="Free", pricing=ModelPricing(prompt=0, completion=0)),
    ]


@pytest.fixture
def sample_record() -> RunRecord:
    started = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)
    usage_events = [
        ParsedEvent(
            event_type=EventType.STATUS,
            text="Turn completed",
            raw_line="{}",
            token_usage=TokenUsage(input_tokens=10, output_tokens=5),
        ),
        ParsedEvent(event_type=EventType.TEXT, text="Plan A", raw_line="{}"),
        ParsedEvent(
            event_type=EventType.STATUS,
            text="Run completed",
            raw_line="{}",
            token_usage=TokenUsage(input_tokens=120, output_tokens=40, total_cost=0.02),
            token_usage_cumulative=True,
        ),
    ]
    return RunRecord(
        id="run-1",
        created_at=started,
        prompt="Add a cache layer",
        cwd="/tmp/project",
        selected_agents=["claude", "codex"],
        agents=[
            AgentResult(
                id=ProviderKind.CLAUDE,
                agent_key="claude",
                name="claude · opus",
                status=AgentStatus.SUCCESS,
                started_at=started,
                ended_at=started + timedelta(seconds=12),
                normalized_plan="Plan A",
                events=usage_events,
            ),
            AgentResult(
                id=ProviderKind.CODEX,
                agent_key="codex",
                name="codex",
                status=AgentStatus.ERROR,
                started_at=started,
                ended_at=started + timedelta(seconds=3),
                normalized_plan="Process error: not found",
            ),
        ],
        stage1=[Stage1Result(model="claude · opus", response="Plan A")],
        metadata=RunMetadata(notes=["Fewer than 2 successful Stage 1 plans; Stage 2 ranking skipped."]),
    )


@pytest.fixture
def fake_provider() -> type[FakeAgentProvider]:
    return FakeAgentProvider


@pytest.fixture
def fake_gateway() -> type[FakeGateway]:
    return FakeGateway
