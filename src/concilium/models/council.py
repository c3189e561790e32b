"""Council (judge and chairman) data models."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class Stage1Result(BaseModel):
    model: str
    response: str


class CouncilTokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class Stage2Result(BaseModel):
    model: str
    ranking: str
    parsed_ranking: list[str] = []
    usage: Optional[CouncilTokenUsage] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    estimated_cost: Optional[float] = None


class Stage3Result(BaseModel):
    model: str
    response: str
    usage: Optional[CouncilTokenUsage] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    estimated_cost: Optional[float] = None


class AggregateRanking(BaseModel):
    model: str
    average_rank: float
    rankings_count: int


class CouncilConfig(BaseModel):
    api_key: str = ""
    api_url: str
    council_models: list[str] = []
    chairman_model: str


class ModelPricing(BaseModel):
    """USD per million tokens."""

    prompt: float = 0
    completion: float = 0


class ModelInfo(BaseModel):
    id: str
    name: str = ""
    context_length: int = 0
    pricing: ModelPricing = ModelPricing()


class LlmResponse(BaseModel):
    content: str
    usage: Optional[CouncilTokenUsage] = None
