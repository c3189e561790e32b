"""Token usage merging and cost estimation."""

from __future__ import annotations

from typing import Iterable, Optional

from ..models.council import CouncilTokenUsage, ModelInfo, ModelPricing
from ..models.event import ParsedEvent, TokenUsage


def merge_token_usage(events: Iterable[ParsedEvent]) -> Optional[TokenUsage]:
    """Fold the usage reports of one agent's events into a running total.

    A cumulative report replaces everything before it; a delta is added.
    Cost stays unknown until some report carries one. Returns None when no
    event reported usage.
    """
    input_tokens = 0
    output_tokens = 0
    total_cost: Optional[float] = None
    seen = False

    for event in events:
        usage = event.token_usage
        if usage is None:
            continue
        seen = True
        if event.token_usage_cumulative:
            input_tokens = usage.input_tokens
            output_tokens = usage.output_tokens
            total_cost = usage.total_cost
        else:
            input_tokens += usage.input_tokens
            output_tokens += usage.output_tokens
            if usage.total_cost is not None:
                total_cost = (total_cost or 0.0) + usage.total_cost

    if not seen:
        return None
    return TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens, total_cost=total_cost)


def lookup_pricing(model_id: str, models: Iterable[ModelInfo]) -> Optional[ModelPricing]:
    """Find pricing by exact id, falling back to a suffix match either way.

    The suffix match tolerates provider prefixes such as ``openai/gpt-4o``
    versus ``gpt-4o``.
    """
    models = list(models)
    for model in models:
        if model.id == model_id:
            return model.pricing
    for model in models:
        if model.id.endswith(f"/{model_id}") or model_id.endswith(f"/{model.id}"):
            return model.pricing
    return None


def estimate_cost(
    model_id: str,
    usage: Optional[CouncilTokenUsage],
    models: Iterable[ModelInfo],
) -> Optional[float]:
    """Estimate the USD cost of one model call.

    None means the cost is unknown (no usage or no pricing). 0.0 means the
    model is priced as free.
    """
    if usage is None:
        return None
    pricing = lookup_pricing(model_id, models)
    if pricing is None:
        return None
    return (
        usage.prompt_tokens * pricing.prompt + usage.completion_tokens * pricing.completion
    ) / 1_000_000
