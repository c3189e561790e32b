"""Claude Code CLI provider."""

from __future__ import annotations

from ..models.agent import AgentConfig, ProviderKind
from .process import ProcessAgentProvider

CLAUDE_MODELS = [
    "sonnet",
    "opus",
    "haiku",
    "claude-sonnet-4-5-20250929",
    "claude-opus-4-6",
    "claude-haiku-4-5-20251001",
]

# tools that could modify the working tree
DISALLOWED_TOOLS = ["Write", "Edit", "NotebookEdit"]


class ClaudeProvider(ProcessAgentProvider):
    id = ProviderKind.CLAUDE
    name = "Claude Code"
    default_executable = "claude"

    def build_command(self, agent: AgentConfig, prompt: str) -> list[str]:
        # plan mode plus the deny list keeps the agent read-only. Partial
        # messages stay off: with them the plan arrives as text_delta events
        # and again in the result event.
        command = [
            self.executable,
            "--verbose",
            "--print",
            "--output-format",
            "stream-json",
            "--permission-mode",
            "plan",
            "--no-session-persistence",
            "--disallowedTools",
            *DISALLOWED_TOOLS,
        ]
        if agent.model and agent.model.strip():
            command += ["--model", agent.model.strip()]
        command += ["--", prompt]
        return command

    async def discover_models(self) -> list[str]:
        return list(CLAUDE_MODELS)
