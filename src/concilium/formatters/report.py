"""Run report rendering in markdown, plain text and JSON."""

from __future__ import annotations

import json
from typing import Optional

from ..core.usage import merge_token_usage
from ..models.run import RunRecord

NO_SYNTHESIS = "No synthesis available."
FORMATS = ("markdown", "plain", "json")


def total_council_cost(record: RunRecord) -> Optional[float]:
    """Sum the juror and chairman cost estimates, None when none are known."""
    costs = [r.estimated_cost for r in record.stage2 if r.estimated_cost is not None]
    if record.stage3 and record.stage3.estimated_cost is not None:
        costs.append(record.stage3.estimated_cost)
    if not costs:
        return None
    return sum(costs)


def final_answer(record: RunRecord) -> str:
    if record.stage3 and record.stage3.response:
        return record.stage3.response
    return NO_SYNTHESIS


def generate_markdown_report(record: RunRecord) -> str:
    lines: list[str] = []
    lines.append("# Concilium Deliberation")
    lines.append("")
    lines.append(f"**Prompt:** {record.prompt}")
    lines.append(f"**Date:** {record.created_at.strftime('%Y-%m-%d %H:%M:%S')}")
    lines.append(f"**Run:** {record.id}")
    lines.append("")

    # Agent breakdown
    lines.append("## Agents")
    lines.append("")
    lines.append("| Agent | Status | Duration | Tokens (in/out) | Cost |")
    lines.append("|-------|--------|----------|-----------------|------|")
    for agent in record.agents:
        duration = agent.duration_seconds
        dur = f"{round(duration, 1)}s" if duration is not None else "-"
        usage = merge_token_usage(agent.events)
        tokens = f"{usage.input_tokens}/{usage.output_tokens}" if usage else "-"
        cost = f"${usage.total_cost:.4f}" if usage and usage.total_cost is not None else "-"
        lines.append(f"| {agent.name} | {agent.status.value} | {dur} | {tokens} | {cost} |")
    lines.append("")

    if record.metadata.aggregate_rankings:
        lines.append("## Rankings")
        lines.append("")
        for ranking in record.metadata.aggregate_rankings:
            lines.append(
                f"- **{ranking.model}**: {ranking.average_rank:.2f} avg rank "
                f"({ranking.rankings_count} votes)"
            )
        lines.append("")

    if record.metadata.notes:
        lines.append("## Notes")
        lines.append("")
        for note in record.metadata.notes:
            lines.append(f"- {note}")
        lines.append("")

    if record.stage3 is None:
        # Stage 1 only: show each plan
        lines.append("## Agent Plans")
        lines.append("")
        for result in record.stage1:
            lines.append(f"### {result.model}")
            lines.append("")
            lines.append(result.response)
            lines.append("")
    else:
        lines.append("## Synthesis")
        lines.append("")
        lines.append(final_answer(record))
        lines.append("")

    cost = total_council_cost(record)
    if cost is not None:
        lines.append("---")
        lines.append(f"*Estimated council cost: ${cost:.4f}*")

    return "\n".join(lines)


def generate_plain_report(record: RunRecord) -> str:
    if record.stage3 is None and record.stage1:
        return "\n\n".join(f"{r.model}:\n{r.response}" for r in record.stage1)
    return final_answer(record)


def generate_json_report(record: RunRecord) -> str:
    return record.model_dump_json(indent=2)


def render_report(record: RunRecord, output_format: str = "markdown") -> str:
    if output_format == "json":
        return generate_json_report(record)
    if output_format == "plain":
        return generate_plain_report(record)
    return generate_markdown_report(record)


def render_error(message: str, output_format: str = "markdown") -> str:
    if output_format == "json":
        return json.dumps({"error": message})
    if output_format == "plain":
        return f"Error: {message}"
    return f"## Error\n\n{message}"
