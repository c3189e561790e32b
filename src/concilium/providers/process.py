"""Process-backed agent providers.

The agent CLI runs as a child in its own session, so it leads a process
group that can be signalled as a whole. stdout and stderr are read line
by line and fed through the backend's normalizer.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Optional

from ..core.controller import KILL_GRACE_SECONDS, ProcessHandle
from ..core.prompts import wrap_prompt_for_research
from ..models.agent import AgentConfig, AgentResult, AgentStatus
from ..models.event import EventType, ParsedEvent
from ..normalizers import normalize_line
from .base import BaseAgentProvider, ExecutionRequest

logger = logging.getLogger(__name__)

# stream-json result lines can carry a whole plan
STREAM_LIMIT = 16 * 1024 * 1024


class ProcessAgentProvider(BaseAgentProvider):
    """Base class for providers that drive a CLI subprocess."""

    default_executable: str = ""

    def __init__(self, provider_config: Optional[dict] = None):
        self.config = provider_config or {}
        self.executable = self.config.get("command") or self.default_executable
        self.kill_grace_seconds = float(self.config.get("kill_grace_seconds", KILL_GRACE_SECONDS))

    def build_command(self, agent: AgentConfig, prompt: str) -> list[str]:
        raise NotImplementedError

    def build_env(self, agent: AgentConfig) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self.config.get("env") or {})
        env.update(agent.env)
        env.setdefault("NO_COLOR", "1")
        return env

    def normalize(self, line: str) -> list[ParsedEvent]:
        return normalize_line(self.id.value, line)

    async def execute(self, request: ExecutionRequest) -> AgentResult:
        agent = request.agent
        command = self.build_command(agent, wrap_prompt_for_research(request.prompt))
        result = self.start_result(request, command)
        logger.debug("Command for %s: %s", agent.agent_key, " ".join(command[:-1]))

        if request.abort_signal.aborted:
            return self.finish_result(request, result, AgentStatus.ABORTED)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=agent.cwd,
                env=self.build_env(agent),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            logger.error("Failed to spawn %s: %s", agent.name, e)
            result.errors.append(str(e))
            failed = self.finish_result(request, result, AgentStatus.ERROR)
            return failed.model_copy(update={"normalized_plan": f"Process error: {e}"})

        handle = ProcessHandle(
            process.pid,
            is_alive=lambda: process.returncode is None,
            grace_seconds=self.kill_grace_seconds,
        )
        if request.register_handle:
            request.register_handle(handle)
        request.abort_signal.add_callback(handle.stop)

        raw_lines: list[str] = []
        try:
            await asyncio.gather(
                self._read_stream(process.stdout, request, result, raw_lines),
                self._read_stream(process.stderr, request, result, raw_lines),
            )
            returncode = await process.wait()
        finally:
            handle.cancel_escalation()

        if request.abort_signal.aborted or handle.stopped or returncode < 0:
            logger.warning("%s aborted (exit %s)", agent.name, returncode)
            status = AgentStatus.ABORTED
        elif returncode == 0:
            status = AgentStatus.SUCCESS
        else:
            logger.error("%s exited with code %s", agent.name, returncode)
            result.errors.append(f"Process exited with code {returncode}")
            status = AgentStatus.ERROR

        return self.finish_result(request, result, status, raw_lines)

    async def _read_stream(
        self,
        stream: Optional[asyncio.StreamReader],
        request: ExecutionRequest,
        result: AgentResult,
        raw_lines: list[str],
    ) -> None:
        if stream is None:
            return
        while True:
            try:
                chunk = await stream.readline()
            except ValueError:
                # line longer than STREAM_LIMIT; drop what is buffered
                logger.warning("Oversized output line from %s skipped", result.agent_key)
                continue
            if not chunk:
                break
            line = chunk.decode("utf-8", errors="replace").rstrip("\r\n")
            raw_lines.append(line)
            events = self.normalize(line)
            for event in events:
                if event.event_type == EventType.RAW and "error" in line.lower():
                    result.errors.append(line)
            self.emit(request, result, events)
