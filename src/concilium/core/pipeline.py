"""Stage 2 (juror ranking) and Stage 3 (chairman synthesis)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

from ..models.council import (
    CouncilConfig,
    CouncilTokenUsage,
    LlmResponse,
    ModelInfo,
    Stage1Result,
    Stage2Result,
    Stage3Result,
)
from ..models.run import RunMetadata
from ..providers.base import utc_now
from .prompts import build_ranking_prompt, build_synthesis_prompt
from .ranking import calculate_aggregate_rankings, parse_ranking_from_text
from .usage import estimate_cost

logger = logging.getLogger(__name__)

CHAIRMAN_TIMEOUT_SECONDS = 180.0
CHAIRMAN_UNAVAILABLE = "chairman-unavailable"
SYNTHESIS_FAILED = "Error: Unable to generate final synthesis from chairman model."


class LlmGateway(Protocol):
    async def query(
        self, model: str, messages: list[dict], timeout: Optional[float] = None
    ) -> Optional[LlmResponse]: ...

    async def query_models_parallel_streaming(
        self,
        models: list[str],
        messages: list[dict],
        on_start: Optional[Callable[[str], None]] = None,
        on_chunk: Optional[Callable[[str, str], None]] = None,
        on_complete: Optional[Callable[[str, bool, Optional[CouncilTokenUsage]], None]] = None,
    ) -> dict[str, Optional[LlmResponse]]: ...

    def get_cached_or_fallback_models(self) -> list[ModelInfo]: ...


@dataclass
class CouncilCallbacks:
    on_juror_start: Optional[Callable[[str], None]] = None
    on_juror_chunk: Optional[Callable[[str, str], None]] = None
    on_juror_complete: Optional[Callable[[str, bool, Optional[CouncilTokenUsage]], None]] = None
    on_synthesis_start: Optional[Callable[[], None]] = None


async def run_council_stages(
    config: CouncilConfig,
    user_prompt: str,
    stage1_results: list[Stage1Result],
    gateway: LlmGateway,
    callbacks: Optional[CouncilCallbacks] = None,
) -> tuple[list[Stage2Result], Stage3Result, RunMetadata]:
    """Run juror ranking and chairman synthesis over the Stage 1 answers.

    Never raises for model failures. Each gate that cannot proceed records a
    note in the returned metadata and hands back the best answer available.
    """
    callbacks = callbacks or CouncilCallbacks()
    notes: list[str] = []

    logger.info("Council stages starting with %d Stage 1 results", len(stage1_results))

    if not config.api_key:
        logger.error("OPENROUTER_API_KEY is missing")
        notes.append("OPENROUTER_API_KEY is missing, Stage 2 and Stage 3 were skipped.")
        stage3 = Stage3Result(
            model=CHAIRMAN_UNAVAILABLE,
            response=(
                "Stage 2/3 are unavailable because OPENROUTER_API_KEY is not configured. "
                "Showing Stage 1 output only."
            ),
        )
        return [], stage3, RunMetadata(notes=notes)

    if len(stage1_results) < 2:
        logger.warning("Fewer than 2 Stage 1 results, skipping ranking")
        notes.append("Fewer than 2 successful Stage 1 plans; Stage 2 ranking skipped.")
        response = (
            stage1_results[0].response
            if stage1_results
            else "Insufficient Stage 1 outputs to perform ranking and synthesis."
        )
        return [], Stage3Result(model=config.chairman_model, response=response), RunMetadata(notes=notes)

    ranking_prompt, label_to_model = build_ranking_prompt(user_prompt, stage1_results)
    ranking_messages = [{"role": "user", "content": ranking_prompt}]
    logger.debug("Label mapping: %s", label_to_model)

    started: dict[str, datetime] = {}
    ended: dict[str, datetime] = {}

    def on_start(model: str) -> None:
        started[model] = utc_now()
        if callbacks.on_juror_start:
            callbacks.on_juror_start(model)

    def on_complete(model: str, success: bool, usage: Optional[CouncilTokenUsage]) -> None:
        ended[model] = utc_now()
        if callbacks.on_juror_complete:
            callbacks.on_juror_complete(model, success, usage)

    responses = await gateway.query_models_parallel_streaming(
        config.council_models,
        ranking_messages,
        on_start=on_start,
        on_chunk=callbacks.on_juror_chunk,
        on_complete=on_complete,
    )

    priced_models = gateway.get_cached_or_fallback_models()

    stage2: list[Stage2Result] = []
    for model, response in responses.items():
        if response is None:
            logger.error("Ranking model failed: %s", model)
            notes.append(f"Ranking model failed: {model}")
            continue
        parsed = parse_ranking_from_text(response.content)
        logger.debug("%s ranking parsed: %s", model, parsed)
        stage2.append(
            Stage2Result(
                model=model,
                ranking=response.content,
                parsed_ranking=parsed,
                usage=response.usage,
                started_at=started.get(model),
                ended_at=ended.get(model),
                estimated_cost=estimate_cost(model, response.usage, priced_models),
            )
        )

    logger.info("%d successful rankings out of %d models", len(stage2), len(config.council_models))

    aggregate = calculate_aggregate_rankings(stage2, label_to_model)

    if not stage2:
        logger.error("All Stage 2 ranking calls failed")
        notes.append("All Stage 2 ranking calls failed; chairman synthesis skipped.")
        degraded = (
            "All Stage 2 ranking calls failed. Showing first Stage 1 plan as degraded fallback:\n\n"
            + stage1_results[0].response
        )
        metadata = RunMetadata(label_to_model=label_to_model, aggregate_rankings=aggregate, notes=notes)
        return stage2, Stage3Result(model=config.chairman_model, response=degraded), metadata

    if callbacks.on_synthesis_start:
        callbacks.on_synthesis_start()

    synthesis_prompt = build_synthesis_prompt(user_prompt, stage1_results, stage2)
    logger.debug("Synthesis prompt length: %d chars", len(synthesis_prompt))

    chairman_started = utc_now()
    synthesis = await gateway.query(
        config.chairman_model,
        [{"role": "user", "content": synthesis_prompt}],
        timeout=CHAIRMAN_TIMEOUT_SECONDS,
    )
    chairman_ended = utc_now()

    if synthesis is None:
        logger.error("Chairman synthesis failed")
    else:
        logger.info("Chairman synthesis complete, %d chars", len(synthesis.content))

    usage = synthesis.usage if synthesis else None
    stage3 = Stage3Result(
        model=config.chairman_model,
        response=synthesis.content if synthesis else SYNTHESIS_FAILED,
        usage=usage,
        started_at=chairman_started,
        ended_at=chairman_ended,
        estimated_cost=estimate_cost(config.chairman_model, usage, priced_models),
    )

    metadata = RunMetadata(label_to_model=label_to_model, aggregate_rankings=aggregate, notes=notes)
    return stage2, stage3, metadata
