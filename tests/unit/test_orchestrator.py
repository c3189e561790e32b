"""Tests for the deliberation service."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from concilium.core.errors import ConciliumError, PipelineError, RunCancelledError
from concilium.core.orchestrator import (
    STAGE_SUMMARIES,
    DeliberationEvents,
    DeliberationInput,
    DeliberationService,
    build_model_snapshots,
    speed_tier,
)
from concilium.models.agent import AgentInstance, AgentStatus, ProviderKind
from concilium.models.run import SpeedTier

RANKING = "FINAL RANKING:\n1. Response B\n2. Response A"


class RecordingEvents(DeliberationEvents):
    def __init__(self):
        self.stages: list[int] = []
        self.statuses: list[tuple[str, AgentStatus]] = []
        self.errors: list[str] = []
        self.completed = []

    def on_stage_change(self, stage, summary):
        assert summary == STAGE_SUMMARIES[stage]
        self.stages.append(stage)

    def on_agent_status(self, agent_key, status, name):
        self.statuses.append((agent_key, status))

    def on_complete(self, record):
        self.completed.append(record)

    def on_error(self, message):
        self.errors.append(message)


class MemoryRepository:
    def __init__(self):
        self.saved = []

    def save(self, record):
        self.saved.append(record)


def council(api_key: str = "sk-or-test") -> dict:
    return {
        "council": {
            "api_key": api_key,
            "api_url": "https://openrouter.test/api/v1/chat/completions",
            "council_models": ["judge/one"],
            "chairman_model": "chair/model",
        }
    }


def instances(*pairs: tuple[str, ProviderKind]) -> list[AgentInstance]:
    return [AgentInstance(instance_id=key, provider=kind) for key, kind in pairs]


@pytest.fixture
def two_agents(tmp_path) -> DeliberationInput:
    return DeliberationInput(
        prompt="Add caching",
        cwd=str(tmp_path),
        agent_instances=instances(("claude", ProviderKind.CLAUDE), ("codex", ProviderKind.CODEX)),
    )


class TestDeliberationService:
    @pytest.mark.asyncio
    async def test_full_run(self, two_agents, fake_provider, fake_gateway):
        events = RecordingEvents()
        repository = MemoryRepository()
        gateway = fake_gateway(rankings={"judge/one": RANKING})
        service = DeliberationService(
            council(),
            providers={
                "claude": fake_provider(ProviderKind.CLAUDE, text="claude plan"),
                "codex": fake_provider(ProviderKind.CODEX, text="codex plan"),
            },
            gateway=gateway,
            repository=repository,
            events=events,
        )

        record = await service.run(two_agents)

        assert [s.response for s in record.stage1] == ["claude plan", "codex plan"]
        assert record.stage3.response == "final answer"
        assert record.metadata.aggregate_rankings[0].model == "codex"
        assert record.selected_agents == ["claude", "codex"]
        assert events.stages == [1, 2, 3]
        assert events.completed == [record]
        assert events.errors == []
        assert repository.saved == [record]
        assert len(record.metadata.model_snapshots) == 2

    @pytest.mark.asyncio
    async def test_same_provider_twice_ranked_separately(self, tmp_path, fake_provider, fake_gateway):
        service = DeliberationService(
            council(),
            providers={"codex": fake_provider(ProviderKind.CODEX, text="codex plan")},
            gateway=fake_gateway(rankings={"judge/one": RANKING}),
        )
        record = await service.run(
            DeliberationInput(
                prompt="Add caching",
                cwd=str(tmp_path),
                agent_instances=instances(("codex", ProviderKind.CODEX), ("codex-2", ProviderKind.CODEX)),
            )
        )
        assert [s.model for s in record.stage1] == ["codex", "codex (codex-2)"]
        rankings = {r.model: r.average_rank for r in record.metadata.aggregate_rankings}
        assert rankings == {"codex (codex-2)": 1.0, "codex": 2.0}

    @pytest.mark.asyncio
    async def test_all_agents_failing_raises(self, two_agents, fake_provider, fake_gateway):
        events = RecordingEvents()
        repository = MemoryRepository()
        service = DeliberationService(
            council(),
            providers={
                "claude": fake_provider(ProviderKind.CLAUDE, status=AgentStatus.ERROR),
                "codex": fake_provider(ProviderKind.CODEX, raises=RuntimeError("down")),
            },
            gateway=fake_gateway(),
            repository=repository,
            events=events,
        )
        with pytest.raises(PipelineError) as exc_info:
            await service.run(two_agents)
        assert exc_info.value.code == "NO_RESPONSES"
        assert events.errors == [str(exc_info.value)]
        assert repository.saved == []

    @pytest.mark.asyncio
    async def test_single_success_skips_ranking(self, two_agents, fake_provider, fake_gateway):
        gateway = fake_gateway()
        service = DeliberationService(
            council(),
            providers={
                "claude": fake_provider(ProviderKind.CLAUDE, text="only plan"),
                "codex": fake_provider(ProviderKind.CODEX, status=AgentStatus.ERROR),
            },
            gateway=gateway,
        )
        record = await service.run(two_agents)
        assert record.stage2 == []
        assert record.stage3.response == "only plan"
        assert gateway.streamed_messages == []
        assert record.agents[1].status == AgentStatus.ERROR

    @pytest.mark.asyncio
    async def test_stage1_only(self, two_agents, fake_provider, fake_gateway):
        events = RecordingEvents()
        gateway = fake_gateway(rankings={"judge/one": RANKING})
        two_agents.stage1_only = True
        service = DeliberationService(
            council(),
            providers={
                "claude": fake_provider(ProviderKind.CLAUDE),
                "codex": fake_provider(ProviderKind.CODEX),
            },
            gateway=gateway,
            events=events,
        )
        record = await service.run(two_agents)
        assert record.stage3 is None
        assert record.metadata.notes == ["Stage 2 and Stage 3 skipped (stage 1 only)."]
        assert events.stages == [1]
        assert gateway.streamed_messages == []

    @pytest.mark.asyncio
    async def test_missing_api_key_keeps_stage1(self, two_agents, fake_provider, fake_gateway):
        service = DeliberationService(
            council(api_key=""),
            providers={
                "claude": fake_provider(ProviderKind.CLAUDE),
                "codex": fake_provider(ProviderKind.CODEX),
            },
            gateway=fake_gateway(),
        )
        record = await service.run(two_agents)
        assert len(record.stage1) == 2
        assert record.stage3.model == "chairman-unavailable"

    @pytest.mark.asyncio
    async def test_cancel_during_stage1(self, two_agents, fake_provider, fake_gateway):
        events = RecordingEvents()
        claude = fake_provider(ProviderKind.CLAUDE, hang=True)
        codex = fake_provider(ProviderKind.CODEX, hang=True)
        service = DeliberationService(
            council(),
            providers={"claude": claude, "codex": codex},
            gateway=fake_gateway(),
            events=events,
        )
        run_id = service.start(two_agents)
        for _ in range(50):
            if claude.requests and codex.requests:
                break
            await asyncio.sleep(0.01)

        service.cancel(run_id)
        with pytest.raises(RunCancelledError):
            await asyncio.wait_for(service.wait(run_id), timeout=2)
        assert ("claude", AgentStatus.CANCELLED) in events.statuses
        assert events.errors == ["Run cancelled after Stage 1"]

    @pytest.mark.asyncio
    async def test_cancel_single_agent(self, two_agents, fake_provider, fake_gateway):
        claude = fake_provider(ProviderKind.CLAUDE, hang=True)
        codex = fake_provider(ProviderKind.CODEX, text="codex plan")
        service = DeliberationService(
            council(),
            providers={"claude": claude, "codex": codex},
            gateway=fake_gateway(),
        )
        run_id = service.start(two_agents)
        for _ in range(50):
            if claude.requests:
                break
            await asyncio.sleep(0.01)

        assert service.cancel_agent(run_id, "claude") is True
        record = await asyncio.wait_for(service.wait(run_id), timeout=2)
        assert record.agents[0].status == AgentStatus.ABORTED
        assert [s.response for s in record.stage1] == ["codex plan"]
        assert service.cancel_agent(run_id, "claude") is False

    @pytest.mark.asyncio
    async def test_finished_runs_are_released(self, two_agents, fake_provider, fake_gateway):
        events = RecordingEvents()
        service = DeliberationService(
            council(),
            providers={
                "claude": fake_provider(ProviderKind.CLAUDE, text="claude plan"),
                "codex": fake_provider(ProviderKind.CODEX, status=AgentStatus.ERROR),
            },
            gateway=fake_gateway(),
            events=events,
        )
        done_id = service.start(two_agents)
        failed_id = service.start(
            DeliberationInput(
                prompt="Add caching",
                cwd=two_agents.cwd,
                agent_instances=instances(("codex", ProviderKind.CODEX)),
            )
        )

        for _ in range(200):
            if not service._tasks:
                break
            await asyncio.sleep(0.01)

        assert service._tasks == {}
        assert service._controllers == {}
        assert len(events.completed) == 1
        assert len(events.errors) == 1
        for run_id in (done_id, failed_id):
            with pytest.raises(ConciliumError) as exc_info:
                await service.wait(run_id)
            assert exc_info.value.code == "RUN_NOT_FOUND"

    def test_cancel_unknown_run_is_noop(self, fake_gateway):
        service = DeliberationService(council(), providers={}, gateway=fake_gateway())
        service.cancel("missing")
        assert service.cancel_agent("missing", "claude") is False


class TestSnapshots:
    def test_speed_tiers(self):
        assert speed_tier(1_000) == SpeedTier.FAST
        assert speed_tier(15_000) == SpeedTier.BALANCED
        assert speed_tier(60_000) == SpeedTier.SLOW

    def test_only_successful_agents(self, sample_record, priced_models):
        snapshots = build_model_snapshots(sample_record.agents, {}, priced_models)
        assert len(snapshots) == 1
        snapshot = snapshots[0]
        assert snapshot.model_id == "claude · opus"
        assert snapshot.provider == "claude"
        assert snapshot.latency_ms == 12_000
        assert snapshot.cost_per_1k_tokens is None

    def test_pricing_lookup(self, sample_record, priced_models):
        agent = sample_record.agents[0]
        agent.ended_at = agent.started_at + timedelta(seconds=90)
        snapshots = build_model_snapshots([agent], {"claude": "chair/model"}, priced_models)
        assert snapshots[0].cost_per_1k_tokens == pytest.approx(0.0025)
        assert snapshots[0].speed_tier == SpeedTier.SLOW
