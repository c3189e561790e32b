"""OpenAI Codex CLI provider."""

from __future__ import annotations

from ..models.agent import AgentConfig, ProviderKind
from .process import ProcessAgentProvider

CODEX_MODELS = [
    "gpt-5.2-codex",
    "gpt-5.3-codex",
    "gpt-5.1-codex-max",
    "gpt-5.1-codex",
    "gpt-5-codex",
    "gpt-5-codex-mini",
    "o3-codex",
]


class CodexProvider(ProcessAgentProvider):
    id = ProviderKind.CODEX
    name = "Codex"
    default_executable = "codex"

    def build_command(self, agent: AgentConfig, prompt: str) -> list[str]:
        command = [
            self.executable,
            "exec",
            "--json",
            "--sandbox",
            "read-only",
            "--skip-git-repo-check",
            "--cd",
            agent.cwd,
        ]
        if agent.model and agent.model.strip():
            command += ["--model", agent.model.strip()]
        command += ["--", prompt]
        return command

    async def discover_models(self) -> list[str]:
        return list(CODEX_MODELS)
