"""Ranking extraction from juror text and rank aggregation."""

from __future__ import annotations

import re
from typing import Mapping

from ..models.council import AggregateRanking, Stage2Result

FINAL_RANKING_RE = re.compile(r"FINAL RANKING:", re.IGNORECASE)
NUMBERED_ENTRY_RE = re.compile(r"\d+\.\s*Response\s+([A-Z])\b", re.IGNORECASE)
LABEL_RE = re.compile(r"\bResponse\s+([A-Z])\b", re.IGNORECASE)


def _labels(letters: list[str]) -> list[str]:
    labels: list[str] = []
    for letter in letters:
        label = f"Response {letter.upper()}"
        if label not in labels:
            labels.append(label)
    return labels


def parse_ranking_from_text(ranking_text: str) -> list[str]:
    """Extract the ordered labels from a juror's free-text review.

    Prefers the numbered list after a ``FINAL RANKING:`` header, then any
    label mentioned after the header, then any label in the whole text.
    Never raises; an unparseable review yields an empty list.
    """
    if not ranking_text:
        return []

    header = FINAL_RANKING_RE.search(ranking_text)
    if header:
        section = ranking_text[header.end():]
        numbered = NUMBERED_ENTRY_RE.findall(section)
        if numbered:
            return _labels(numbered)
        return _labels(LABEL_RE.findall(section))

    return _labels(LABEL_RE.findall(ranking_text))


def calculate_aggregate_rankings(
    stage2_results: list[Stage2Result],
    label_to_model: Mapping[str, str],
) -> list[AggregateRanking]:
    """Average each model's 1-based position across juror rankings.

    Models no juror mentioned are left out. Lower average rank is better.
    """
    positions: dict[str, list[int]] = {}
    for result in stage2_results:
        parsed = result.parsed_ranking or parse_ranking_from_text(result.ranking)
        for index, label in enumerate(parsed):
            model = label_to_model.get(label)
            if model is None:
                continue
            positions.setdefault(model, []).append(index + 1)

    aggregate = [
        AggregateRanking(
            model=model,
            average_rank=round(sum(ranks) / len(ranks), 2),
            rankings_count=len(ranks),
        )
        for model, ranks in positions.items()
        if ranks
    ]
    aggregate.sort(key=lambda r: r.average_rank)
    return aggregate
