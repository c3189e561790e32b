"""Model discovery across agent providers."""

from __future__ import annotations

import logging
from typing import Mapping

from ..models.agent import AgentModelInfo, ProviderKind
from ..providers.base import AgentProvider

logger = logging.getLogger(__name__)

DEFAULT_AGENT_MODELS: dict[str, str] = {
    ProviderKind.CODEX.value: "gpt-5.2-codex",
    ProviderKind.CLAUDE.value: "claude-opus-4-6",
    ProviderKind.OPENCODE.value: "",
}

# Only OpenCode asks its backend; the others return a static list
DISCOVERABLE = {ProviderKind.OPENCODE.value}


class ModelDiscoveryService:
    def __init__(self, providers: Mapping[str, AgentProvider]):
        self.providers = providers

    async def discover_all(self) -> list[AgentModelInfo]:
        results: list[AgentModelInfo] = []
        for kind, provider in self.providers.items():
            try:
                models = await provider.discover_models()
            except Exception as e:
                logger.warning("Model discovery failed for %s: %s", kind, e)
                models = []
            results.append(
                AgentModelInfo(
                    provider=ProviderKind(kind),
                    models=models,
                    default_model=DEFAULT_AGENT_MODELS.get(kind) or (models[0] if models else ""),
                    supports_discovery=kind in DISCOVERABLE,
                )
            )
        return results
