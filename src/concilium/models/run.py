"""Run record data models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from .agent import AgentResult
from .council import AggregateRanking, Stage1Result, Stage2Result, Stage3Result


class SpeedTier(str, Enum):
    FAST = "fast"
    BALANCED = "balanced"
    SLOW = "slow"


class ModelPerformanceSnapshot(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    provider: str
    cost_per_1k_tokens: Optional[float] = None
    latency_ms: int = 0
    speed_tier: SpeedTier = SpeedTier.BALANCED


class RunMetadata(BaseModel):
    label_to_model: dict[str, str] = {}
    aggregate_rankings: list[AggregateRanking] = []
    notes: list[str] = []
    model_snapshots: list[ModelPerformanceSnapshot] = []


class RunRecord(BaseModel):
    id: str
    created_at: datetime
    prompt: str
    cwd: str
    selected_agents: list[str] = []
    agents: list[AgentResult] = []
    stage1: list[Stage1Result] = []
    stage2: list[Stage2Result] = []
    stage3: Optional[Stage3Result] = None
    metadata: RunMetadata = RunMetadata()


class RunSummary(BaseModel):
    id: str
    created_at: datetime
    prompt_preview: str
    status: str
