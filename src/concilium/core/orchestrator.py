"""Deliberation orchestrator.

Drives one run through the three stages: agents compete, jurors rank the
anonymized answers, and the chairman synthesizes a final answer.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Mapping, Optional

from pydantic import BaseModel
from rich.console import Console

from ..models.agent import AgentInstance, AgentResult, AgentStatus, ImageAttachment
from ..models.council import CouncilTokenUsage, ModelInfo, Stage1Result
from ..models.event import ParsedEvent
from ..models.run import ModelPerformanceSnapshot, RunMetadata, RunRecord, SpeedTier
from ..providers.base import AgentProvider, RunnerCallbacks, build_provider_registry, utc_now
from ..utils.sanitize import sanitize_error
from .config import build_agent_configs, build_council_config
from .controller import RunController
from .errors import ConciliumError, PipelineError, RunCancelledError
from .executor import run_agents_parallel
from .pipeline import CouncilCallbacks, LlmGateway, run_council_stages
from .storage import RunRepository
from .usage import lookup_pricing

logger = logging.getLogger(__name__)

console = Console()

STAGE_SUMMARIES = {
    1: "Competing - agents are generating responses",
    2: "Judging - peer review in progress",
    3: "Synthesizing - chairman producing final answer",
}
NO_RESPONSES = "All agents failed or were aborted. No responses to judge."
FAST_TIER_MS = 15_000
BALANCED_TIER_MS = 60_000


class DeliberationInput(BaseModel):
    prompt: str
    cwd: str
    agent_instances: list[AgentInstance] = []
    images: list[ImageAttachment] = []
    stage1_only: bool = False


class DeliberationEvents:
    """Progress callbacks for one run. Every hook defaults to a no-op."""

    def on_stage_change(self, stage: int, summary: str) -> None:
        pass

    def on_agent_status(self, agent_key: str, status: AgentStatus, name: str) -> None:
        pass

    def on_agent_event(self, agent_key: str, event: ParsedEvent) -> None:
        pass

    def on_juror_status(self, model: str, status: str) -> None:
        pass

    def on_juror_chunk(self, model: str, chunk: str) -> None:
        pass

    def on_juror_complete(self, model: str, success: bool, usage: Optional[CouncilTokenUsage]) -> None:
        pass

    def on_synthesis_start(self) -> None:
        pass

    def on_complete(self, record: RunRecord) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass


class NullEvents(DeliberationEvents):
    pass


class ConsoleEvents(DeliberationEvents):
    """Prints run progress to a rich console."""

    STATUS_STYLES = {
        AgentStatus.SUCCESS: "[green]OK[/green]",
        AgentStatus.ERROR: "[red]FAILED[/red]",
        AgentStatus.CANCELLED: "[yellow]CANCELLED[/yellow]",
        AgentStatus.ABORTED: "[yellow]ABORTED[/yellow]",
        AgentStatus.RUNNING: "[cyan]RUNNING[/cyan]",
        AgentStatus.QUEUED: "[dim]QUEUED[/dim]",
    }

    def __init__(self, out: Optional[Console] = None):
        self.console = out or console

    def on_stage_change(self, stage: int, summary: str) -> None:
        self.console.print(f"\n  [bold cyan]Stage {stage}[/bold cyan]: {summary}")

    def on_agent_status(self, agent_key: str, status: AgentStatus, name: str) -> None:
        label = self.STATUS_STYLES.get(status, status.value)
        self.console.print(f"  {label} {name or agent_key}")

    def on_juror_status(self, model: str, status: str) -> None:
        self.console.print(f"  [cyan]{status.upper()}[/cyan] {model}")

    def on_juror_complete(self, model: str, success: bool, usage: Optional[CouncilTokenUsage]) -> None:
        if not success:
            self.console.print(f"  [red]FAILED[/red] {model}")
            return
        tokens = f" ({usage.total_tokens} tokens)" if usage else ""
        self.console.print(f"  [green]OK[/green] {model}{tokens}")

    def on_synthesis_start(self) -> None:
        self.console.print("  [cyan]Chairman producing final answer...[/cyan]")

    def on_error(self, message: str) -> None:
        self.console.print(f"  [red]ERROR[/red] {message}")


def speed_tier(latency_ms: int) -> SpeedTier:
    if latency_ms < FAST_TIER_MS:
        return SpeedTier.FAST
    if latency_ms < BALANCED_TIER_MS:
        return SpeedTier.BALANCED
    return SpeedTier.SLOW


def build_model_snapshots(
    agent_results: list[AgentResult],
    agent_models: Mapping[str, str],
    priced_models: list[ModelInfo],
) -> list[ModelPerformanceSnapshot]:
    """Latency and price snapshot for every agent that succeeded."""
    snapshots: list[ModelPerformanceSnapshot] = []
    for agent in agent_results:
        if agent.status != AgentStatus.SUCCESS:
            continue
        duration = agent.duration_seconds
        latency_ms = int(duration * 1000) if duration is not None else 0
        model_id = agent_models.get(agent.agent_key, "")
        pricing = lookup_pricing(model_id, priced_models) if model_id else None
        snapshots.append(
            ModelPerformanceSnapshot(
                model_id=agent.name,
                provider=agent.id.value,
                cost_per_1k_tokens=(pricing.prompt + pricing.completion) / 2 / 1000 if pricing else None,
                latency_ms=latency_ms,
                speed_tier=speed_tier(latency_ms),
            )
        )
    return snapshots


class DeliberationService:
    """Runs deliberations and tracks the live ones for cancellation."""

    def __init__(
        self,
        config: dict,
        providers: Optional[Mapping[str, AgentProvider]] = None,
        gateway: Optional[LlmGateway] = None,
        repository: Optional[RunRepository] = None,
        events: Optional[DeliberationEvents] = None,
    ):
        self.config = config
        self.providers = providers if providers is not None else build_provider_registry(config)
        self.gateway = gateway if gateway is not None else self._default_gateway(config)
        self.repository = repository
        self.events = events or NullEvents()
        self._controllers: dict[str, RunController] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @staticmethod
    def _default_gateway(config: dict) -> LlmGateway:
        from ..providers.openrouter import OpenRouterGateway

        council = config.get("council") or {}
        council_config = build_council_config(config)
        return OpenRouterGateway(
            api_key=council_config.api_key,
            api_url=council_config.api_url,
            retry_attempts=int(council.get("retry_attempts", 3)),
            retry_delay_seconds=float(council.get("retry_delay_seconds", 5)),
            timeout_seconds=float(council.get("timeout_seconds", 120)),
        )

    def start(self, run_input: DeliberationInput) -> str:
        """Schedule a run on the current loop and return its id immediately.

        The task is dropped from the service once it finishes, so a run that
        is only followed through ``events`` leaves nothing behind.
        """
        run_id = str(uuid.uuid4())
        controller = RunController()
        self._controllers[run_id] = controller
        task = asyncio.get_running_loop().create_task(self._run(run_id, controller, run_input))
        self._tasks[run_id] = task
        task.add_done_callback(lambda done: self._forget(run_id, done))
        logger.info("Started run %s", run_id)
        return run_id

    def _forget(self, run_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(run_id, None)
        # failures were already reported through on_error
        if not task.cancelled():
            task.exception()

    async def wait(self, run_id: str) -> RunRecord:
        task = self._tasks.get(run_id)
        if task is None:
            raise ConciliumError(f"Run {run_id} is not in progress", code="RUN_NOT_FOUND")
        return await task

    async def run(self, run_input: DeliberationInput) -> RunRecord:
        return await self.wait(self.start(run_input))

    def cancel(self, run_id: str) -> None:
        controller = self._controllers.pop(run_id, None)
        if controller is not None:
            logger.info("Cancelling run %s", run_id)
            controller.cancel()

    def cancel_agent(self, run_id: str, agent_key: str) -> bool:
        controller = self._controllers.get(run_id)
        if controller is None:
            return False
        return controller.cancel_agent(agent_key)

    def cancel_all(self) -> None:
        controllers = list(self._controllers.values())
        self._controllers.clear()
        for controller in controllers:
            controller.cancel()

    async def _run(self, run_id: str, controller: RunController, run_input: DeliberationInput) -> RunRecord:
        try:
            return await self._deliberate(run_id, controller, run_input)
        except Exception as e:
            message = sanitize_error(str(e)) or type(e).__name__
            if isinstance(e, RunCancelledError):
                logger.info("Run %s cancelled: %s", run_id, message)
            else:
                logger.error("Pipeline error for run %s: %s", run_id, message)
            self.events.on_error(message)
            raise
        finally:
            self._controllers.pop(run_id, None)

    async def _deliberate(
        self, run_id: str, controller: RunController, run_input: DeliberationInput
    ) -> RunRecord:
        events = self.events
        council_config = build_council_config(self.config)
        agent_configs = build_agent_configs(run_input.agent_instances, run_input.cwd)
        names = {cfg.agent_key: cfg.name for cfg in agent_configs}

        # Stage 1
        logger.info("Run %s: stage 1 with %d agents", run_id, len(agent_configs))
        events.on_stage_change(1, STAGE_SUMMARIES[1])

        callbacks = RunnerCallbacks(
            on_status=lambda key, status: events.on_agent_status(key, status, names.get(key, key)),
            on_event=events.on_agent_event,
        )
        agent_results = await run_agents_parallel(
            agent_configs,
            run_input.prompt,
            self.providers,
            controller,
            callbacks,
            run_input.images,
        )

        if controller.is_cancelled:
            raise RunCancelledError("Run cancelled after Stage 1")

        stage1 = [
            Stage1Result(model=result.name, response=result.normalized_plan)
            for result in agent_results
            if result.status == AgentStatus.SUCCESS and result.normalized_plan
        ]
        if not stage1:
            raise PipelineError(NO_RESPONSES, code="NO_RESPONSES")

        # Stages 2 and 3
        if run_input.stage1_only:
            stage2, stage3 = [], None
            metadata = RunMetadata(notes=["Stage 2 and Stage 3 skipped (stage 1 only)."])
        else:
            events.on_stage_change(2, STAGE_SUMMARIES[2])

            def on_synthesis_start() -> None:
                events.on_stage_change(3, STAGE_SUMMARIES[3])
                events.on_synthesis_start()

            stage2, stage3, metadata = await run_council_stages(
                council_config,
                run_input.prompt,
                stage1,
                self.gateway,
                CouncilCallbacks(
                    on_juror_start=lambda model: events.on_juror_status(model, "evaluating"),
                    on_juror_chunk=events.on_juror_chunk,
                    on_juror_complete=events.on_juror_complete,
                    on_synthesis_start=on_synthesis_start,
                ),
            )

            if controller.is_cancelled:
                raise RunCancelledError("Run cancelled after Stage 2/3")

        agent_models = {cfg.agent_key: cfg.model for cfg in agent_configs if cfg.model}
        metadata.model_snapshots = build_model_snapshots(
            agent_results, agent_models, self.gateway.get_cached_or_fallback_models()
        )

        record = RunRecord(
            id=run_id,
            created_at=utc_now(),
            prompt=run_input.prompt,
            cwd=run_input.cwd,
            selected_agents=[cfg.id.value for cfg in agent_configs],
            agents=agent_results,
            stage1=stage1,
            stage2=stage2,
            stage3=stage3,
            metadata=metadata,
        )

        if self.repository is not None:
            self.repository.save(record)
        logger.info("Run %s complete", run_id)
        events.on_complete(record)
        return record
