"""JSON file run repository."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Protocol

from pydantic import ValidationError

from ..models.agent import AgentResult, AgentStatus
from ..models.event import EventType, ParsedEvent
from ..models.run import RunRecord, RunSummary
from .errors import ConciliumError
from .usage import merge_token_usage

logger = logging.getLogger(__name__)

PROMPT_PREVIEW_CHARS = 70


class RunRepository(Protocol):
    def save(self, record: RunRecord) -> Path: ...

    def load(self, run_id: str) -> RunRecord: ...

    def list(self) -> list[RunSummary]: ...

    def load_all(self) -> list[RunRecord]: ...


def extract_final_token_usage(events: list[ParsedEvent]) -> Optional[ParsedEvent]:
    """Collapse an agent's events into one cumulative usage event."""
    usage = merge_token_usage(events)
    if usage is None:
        return None
    if usage.input_tokens == 0 and usage.output_tokens == 0 and usage.total_cost is None:
        return None
    return ParsedEvent(
        event_type=EventType.STATUS,
        text="",
        raw_line="",
        token_usage=usage,
        token_usage_cumulative=True,
    )


def summarize_status(agents: list[AgentResult]) -> str:
    if all(a.status == AgentStatus.SUCCESS for a in agents):
        return "success"
    if any(a.status == AgentStatus.RUNNING for a in agents):
        return "running"
    if any(a.status == AgentStatus.ERROR for a in agents):
        return "partial_error"
    return "mixed"


class JsonRunRepository:
    """Stores each run as ``<data_dir>/runs/<id>.json``."""

    def __init__(self, data_dir: Path | str):
        self.data_dir = Path(data_dir).expanduser()

    @property
    def runs_dir(self) -> Path:
        return self.data_dir / "runs"

    def _ensure_runs_dir(self) -> Path:
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        return self.runs_dir

    def _run_files(self) -> list[Path]:
        if not self.runs_dir.is_dir():
            return []
        return sorted(self.runs_dir.glob("*.json"))

    def save(self, record: RunRecord) -> Path:
        path = self._ensure_runs_dir() / f"{record.id}.json"
        path.write_text(record.model_dump_json(), encoding="utf-8")
        logger.info("Saved run %s to %s", record.id, path)
        return path

    def load(self, run_id: str) -> RunRecord:
        path = self.runs_dir / f"{run_id}.json"
        try:
            return RunRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise ConciliumError(f"Run not found: {run_id}", code="RUN_NOT_FOUND") from None
        except ValidationError as e:
            raise ConciliumError(f"Run {run_id} is unreadable: {e}", code="RUN_INVALID") from e

    def _read(self, path: Path) -> Optional[RunRecord]:
        try:
            return RunRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Skipping unreadable run file %s: %s", path.name, e)
            return None

    def load_all(self) -> list[RunRecord]:
        """Load every run, newest first, with agent events reduced to usage."""
        records: list[RunRecord] = []
        for path in self._run_files():
            record = self._read(path)
            if record is None:
                continue
            agents = []
            for agent in record.agents:
                usage_event = extract_final_token_usage(agent.events)
                agents.append(agent.model_copy(update={"events": [usage_event] if usage_event else []}))
            records.append(record.model_copy(update={"agents": agents}))

        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    def list(self) -> list[RunSummary]:
        summaries: list[RunSummary] = []
        for path in self._run_files():
            record = self._read(path)
            if record is None:
                continue
            summaries.append(
                RunSummary(
                    id=record.id,
                    created_at=record.created_at,
                    prompt_preview=record.prompt[:PROMPT_PREVIEW_CHARS],
                    status=summarize_status(record.agents),
                )
            )

        summaries.sort(key=lambda s: s.created_at, reverse=True)
        return summaries
