"""Stage 1 fan-out: run every enabled agent concurrently."""

from __future__ import annotations

import asyncio
import logging
from typing import Mapping, Optional

from ..models.agent import AgentConfig, AgentResult, AgentStatus, ImageAttachment
from ..providers.base import AgentProvider, ExecutionRequest, RunnerCallbacks, utc_now
from ..utils.sanitize import sanitize_error
from .controller import AbortHandle, AbortSignal, RunController, StoppableHandle
from .errors import ConfigError

logger = logging.getLogger(__name__)


def _error_result(agent: AgentConfig, message: str) -> AgentResult:
    now = utc_now()
    return AgentResult(
        id=agent.id,
        agent_key=agent.agent_key,
        name=agent.name,
        status=AgentStatus.ERROR,
        started_at=now,
        ended_at=now,
        normalized_plan=f"Error: {message}",
        errors=[message],
    )


async def run_single_agent(
    agent: AgentConfig,
    prompt: str,
    providers: Mapping[str, AgentProvider],
    controller: RunController,
    callbacks: Optional[RunnerCallbacks] = None,
    images: Optional[list[ImageAttachment]] = None,
) -> AgentResult:
    """Run one agent under the controller and classify its terminal status."""
    callbacks = callbacks or RunnerCallbacks()
    agent_key = agent.agent_key
    provider = providers.get(agent.id.value)
    if provider is None:
        logger.error("No provider registered for %s", agent.id.value)
        if callbacks.on_status:
            callbacks.on_status(agent_key, AgentStatus.ERROR)
        return _error_result(agent, f"No provider registered for agent kind: {agent.id.value}")

    abort_signal = AbortSignal()
    controller.register(agent_key, AbortHandle(abort_signal))
    if controller.is_cancelled:
        abort_signal.abort()

    def register_handle(handle: StoppableHandle) -> None:
        controller.register(agent_key, handle)
        if controller.is_cancelled:
            handle.stop()

    request = ExecutionRequest(
        agent=agent,
        prompt=prompt,
        callbacks=callbacks,
        images=list(images or []),
        abort_signal=abort_signal,
        register_handle=register_handle,
    )

    try:
        result = await provider.execute(request)
    except Exception as e:
        message = sanitize_error(str(e)) or type(e).__name__
        logger.exception("Agent %s raised", agent_key)
        if callbacks.on_status:
            callbacks.on_status(agent_key, AgentStatus.ERROR)
        result = _error_result(agent, message)
    finally:
        controller.unregister(agent_key)

    if controller.is_cancelled and result.status != AgentStatus.CANCELLED:
        result = result.model_copy(update={"status": AgentStatus.CANCELLED})
        if callbacks.on_status:
            callbacks.on_status(agent_key, AgentStatus.CANCELLED)
    return result


async def run_agents_parallel(
    agents: list[AgentConfig],
    prompt: str,
    providers: Mapping[str, AgentProvider],
    controller: RunController,
    callbacks: Optional[RunnerCallbacks] = None,
    images: Optional[list[ImageAttachment]] = None,
) -> list[AgentResult]:
    """Run all enabled agents and wait for every one of them to settle.

    Results come back in the order of ``agents``. One agent failing never
    stops the others.
    """
    enabled = [agent for agent in agents if agent.enabled]
    keys = [agent.agent_key for agent in enabled]
    if len(set(keys)) != len(keys):
        raise ConfigError(f"Agent keys must be unique within a run: {keys}")

    callbacks = callbacks or RunnerCallbacks()
    if callbacks.on_status:
        for key in keys:
            callbacks.on_status(key, AgentStatus.QUEUED)

    logger.info("Running %d agents in parallel", len(enabled))
    outcomes = await asyncio.gather(
        *(
            run_single_agent(agent, prompt, providers, controller, callbacks, images)
            for agent in enabled
        ),
        return_exceptions=True,
    )

    results: list[AgentResult] = []
    for agent, outcome in zip(enabled, outcomes):
        if isinstance(outcome, BaseException):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            results.append(_error_result(agent, str(outcome)))
        else:
            results.append(outcome)

    success_count = sum(1 for r in results if r.status == AgentStatus.SUCCESS)
    logger.info("Stage 1 complete: %d/%d agents succeeded", success_count, len(results))
    return results
