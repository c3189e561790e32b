"""OpenCode provider, driven through the OpenCode HTTP server.

Either an external server (``server_url``) or an embedded ``opencode serve``
child shared by the whole process is used. Each run creates a session,
subscribes to the server event stream, sends the prompt and consumes
events until the session goes idle, the run is aborted, or nothing has
arrived for the inactivity timeout.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Optional

import httpx

from ..core.controller import ProcessHandle
from ..core.errors import AgentError
from ..core.prompts import READ_ONLY_SYSTEM_PROMPT, wrap_prompt_for_research
from ..models.agent import AgentResult, AgentStatus, ProviderKind
from ..models.event import EventType, TokenUsage
from ..normalizers.common import as_dict, as_list, as_number, as_str, make_event
from ..normalizers.opencode import normalize_opencode_event
from ..utils.sanitize import sanitize_error
from ..utils.sse import iter_sse_json
from .base import BaseAgentProvider, ExecutionRequest

logger = logging.getLogger(__name__)

INACTIVITY_TIMEOUT_SECONDS = 120.0
SERVER_STARTUP_TIMEOUT_SECONDS = 30.0
SERVER_LISTENING_RE = re.compile(r"opencode server listening on (https?://\S+)")

# Tool ids the server reports but that are missing here are denied.
READONLY_TOOLS: dict[str, bool] = {
    "read": True,
    "glob": True,
    "grep": True,
    "list": True,
    "webfetch": True,
    "websearch": True,
    "todoread": True,
    "skill": True,
    "write": False,
    "edit": False,
    "bash": False,
    "task": False,
    "todowrite": False,
    "notebook_edit": False,
}

READONLY_PERMISSION: dict = {
    "edit": "deny",
    "write": "deny",
    "bash": {
        "*": "deny",
        "ls *": "allow",
        "cat *": "allow",
        "find *": "allow",
        "grep *": "allow",
        "pwd": "allow",
        "head *": "allow",
        "tail *": "allow",
        "echo *": "allow",
    },
}


def parse_model_spec(model: Optional[str]) -> Optional[dict]:
    """Split ``provider/model`` into the server's model selector."""
    if not model or not model.strip():
        return None
    provider_id, sep, model_id = model.strip().partition("/")
    if not sep or not provider_id or not model_id:
        return None
    return {"providerID": provider_id, "modelID": model_id}


def build_tools_map(tool_ids: Optional[list]) -> dict[str, bool]:
    if not tool_ids:
        return dict(READONLY_TOOLS)
    return {str(tool_id): READONLY_TOOLS.get(str(tool_id), False) for tool_id in tool_ids}


class OpenCodeServerManager:
    """Process-wide embedded ``opencode serve`` instance.

    The first caller starts the server; concurrent callers await the same
    initialization. A failed start is forgotten so a later call can retry.
    """

    def __init__(
        self,
        executable: str = "opencode",
        hostname: str = "127.0.0.1",
        port: int = 0,
        startup_timeout: float = SERVER_STARTUP_TIMEOUT_SECONDS,
    ):
        self.executable = executable
        self.hostname = hostname
        self.port = port
        self.startup_timeout = startup_timeout
        self.url: Optional[str] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._init_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def ensure(self) -> str:
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._start())
        task = self._init_task
        try:
            return await asyncio.shield(task)
        except Exception:
            if self._init_task is task:
                self._init_task = None
            raise

    async def _start(self) -> str:
        logger.info("Starting embedded OpenCode server")
        env = dict(os.environ)
        env["OPENCODE_PERMISSION"] = json.dumps(READONLY_PERMISSION)
        process = await asyncio.create_subprocess_exec(
            self.executable,
            "serve",
            f"--hostname={self.hostname}",
            f"--port={self.port}",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
            env=env,
        )
        try:
            url = await asyncio.wait_for(self._read_url(process), self.startup_timeout)
        except BaseException:
            await self._terminate(process)
            raise

        self._process = process
        self.url = url
        self._drain_task = asyncio.ensure_future(self._drain(process))
        logger.info("Embedded OpenCode server started at %s", url)
        return url

    @staticmethod
    async def _read_url(process: asyncio.subprocess.Process) -> str:
        assert process.stdout is not None
        while True:
            line = await process.stdout.readline()
            if not line:
                raise AgentError("OpenCode server exited before it was ready")
            text = line.decode("utf-8", errors="replace").strip()
            match = SERVER_LISTENING_RE.search(text)
            if match:
                return match.group(1).rstrip("/")
            logger.debug("opencode serve: %s", text)

    @staticmethod
    async def _drain(process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        while True:
            line = await process.stdout.readline()
            if not line:
                return
            logger.debug("opencode serve: %s", line.decode("utf-8", errors="replace").rstrip())

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        handle = ProcessHandle(process.pid, is_alive=lambda: process.returncode is None)
        handle.stop()
        try:
            await process.wait()
        finally:
            handle.cancel_escalation()

    async def shutdown(self) -> None:
        if self._drain_task is not None:
            self._drain_task.cancel()
            self._drain_task = None
        if self._process is not None:
            logger.info("Shutting down embedded OpenCode server")
            await self._terminate(self._process)
            self._process = None
        self._init_task = None
        self.url = None


_server_manager: Optional[OpenCodeServerManager] = None


def get_server_manager(config: Optional[dict] = None) -> OpenCodeServerManager:
    """Return the process-wide server manager, creating it on first use."""
    global _server_manager
    if _server_manager is None:
        config = config or {}
        _server_manager = OpenCodeServerManager(
            executable=config.get("command") or "opencode",
            hostname=config.get("hostname", "127.0.0.1"),
            port=int(config.get("port", 0)),
            startup_timeout=float(config.get("startup_timeout", SERVER_STARTUP_TIMEOUT_SECONDS)),
        )
    return _server_manager


async def shutdown_embedded_server() -> None:
    global _server_manager
    if _server_manager is not None:
        await _server_manager.shutdown()
        _server_manager = None


@dataclass
class _SessionState:
    session_id: str
    assistant_message_ids: set[str] = field(default_factory=set)
    part_text: dict[str, str] = field(default_factory=dict)

    def new_text(self, part_id: str, full_text: str, delta: Optional[str]) -> str:
        """Return only the text not yet emitted for this part."""
        seen = self.part_text.get(part_id, "")
        if delta is not None:
            self.part_text[part_id] = seen + delta
            return delta
        self.part_text[part_id] = full_text
        if full_text.startswith(seen):
            return full_text[len(seen):]
        return full_text


class OpenCodeProvider(BaseAgentProvider):
    id = ProviderKind.OPENCODE
    name = "OpenCode"

    def __init__(
        self,
        provider_config: Optional[dict] = None,
        server_manager: Optional[OpenCodeServerManager] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = provider_config or {}
        self.server_url: Optional[str] = self.config.get("server_url") or None
        self.inactivity_timeout = float(
            self.config.get("inactivity_timeout", INACTIVITY_TIMEOUT_SECONDS)
        )
        self._server_manager = server_manager
        self._transport = transport

    @property
    def server_manager(self) -> OpenCodeServerManager:
        if self._server_manager is None:
            self._server_manager = get_server_manager(self.config)
        return self._server_manager

    async def base_url(self) -> str:
        if self.server_url:
            return self.server_url.rstrip("/")
        return await self.server_manager.ensure()

    def _client(self, base_url: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=base_url, timeout=30.0, transport=self._transport)

    async def discover_models(self) -> list[str]:
        try:
            async with self._client(await self.base_url()) as client:
                response = await client.get("/config/providers")
                response.raise_for_status()
                data = response.json()
        except Exception as e:
            logger.warning("OpenCode model discovery failed: %s", sanitize_error(str(e)))
            return []

        models: list[str] = []
        for provider in as_list(as_dict(data).get("providers")):
            provider = as_dict(provider)
            provider_id = as_str(provider.get("id"))
            for model_id in as_dict(provider.get("models")):
                models.append(f"{provider_id}/{model_id}")
        logger.info("OpenCode model discovery found %d models", len(models))
        return sorted(models)

    async def execute(self, request: ExecutionRequest) -> AgentResult:
        agent = request.agent
        result = self.start_result(request, ["opencode-server", agent.model or ""])

        if request.abort_signal.aborted:
            return self.finish_result(request, result, AgentStatus.ABORTED)

        try:
            async with self._client(await self.base_url()) as client:
                await self._run_session(client, request, result)
        except Exception as e:
            message = sanitize_error(str(e)) or type(e).__name__
            logger.error("%s failed: %s", agent.name, message)
            result.errors.append(message)
            failed = self.finish_result(request, result, AgentStatus.ERROR)
            return failed.model_copy(update={"normalized_plan": f"Error: {message}"})

        status = AgentStatus.ABORTED if request.abort_signal.aborted else AgentStatus.SUCCESS
        return self.finish_result(request, result, status)

    async def _run_session(
        self, client: httpx.AsyncClient, request: ExecutionRequest, result: AgentResult
    ) -> None:
        agent = request.agent
        params = {"directory": agent.cwd}

        response = await client.post(
            "/session", json={"title": f"Concilium: {agent.name}"}, params=params
        )
        response.raise_for_status()
        session_id = as_str(as_dict(response.json()).get("id"))
        if not session_id:
            raise AgentError("Failed to create OpenCode session")
        logger.info("Created OpenCode session %s for %s", session_id, agent.name)

        body: dict = {
            "parts": self._build_parts(request, result),
            "tools": await self._tools_map(client),
            "system": READ_ONLY_SYSTEM_PROMPT,
        }
        model_spec = parse_model_spec(agent.model)
        if model_spec:
            body["model"] = model_spec

        state = _SessionState(session_id=session_id)
        # subscribe before prompting so no early event is missed
        async with client.stream(
            "GET", "/event", params=params, timeout=httpx.Timeout(30.0, read=None)
        ) as stream:
            stream.raise_for_status()
            prompt_response = await client.post(
                f"/session/{session_id}/prompt_async", json=body, params=params
            )
            prompt_response.raise_for_status()
            await self._consume(iter_sse_json(stream), request, result, state)

        if request.abort_signal.aborted:
            await self._abort_session(client, session_id, params)
            return

        usage = await self._session_usage(client, session_id, params)
        if usage is not None:
            self.emit(
                request,
                result,
                [make_event(EventType.STATUS, "Completed", "", usage, cumulative=True)],
            )

    def _build_parts(self, request: ExecutionRequest, result: AgentResult) -> list[dict]:
        parts: list[dict] = [{"type": "text", "text": wrap_prompt_for_research(request.prompt)}]
        for image in request.images:
            try:
                if image.base64:
                    data = image.base64
                elif image.path:
                    data = base64.b64encode(Path(image.path).read_bytes()).decode("ascii")
                else:
                    continue
            except OSError as e:
                logger.error("Failed to process image %s: %s", image.path, e)
                result.errors.append(f"Failed to process image: {e}")
                continue
            part: dict = {
                "type": "file",
                "mime": image.mime_type,
                "url": f"data:{image.mime_type};base64,{data}",
            }
            if image.path:
                part["filename"] = Path(image.path).name
            parts.append(part)
        return parts

    async def _tools_map(self, client: httpx.AsyncClient) -> dict[str, bool]:
        try:
            response = await client.get("/experimental/tool/ids")
            response.raise_for_status()
            tool_ids = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Could not list OpenCode tools, using static allowlist: %s", e)
            return build_tools_map(None)
        return build_tools_map(tool_ids if isinstance(tool_ids, list) else None)

    async def _consume(
        self,
        events: AsyncIterator[dict],
        request: ExecutionRequest,
        result: AgentResult,
        state: _SessionState,
    ) -> None:
        abort_task = asyncio.ensure_future(request.abort_signal.wait())
        try:
            while True:
                next_task = asyncio.ensure_future(_next_event(events))
                done, _ = await asyncio.wait(
                    {next_task, abort_task},
                    timeout=self.inactivity_timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if next_task not in done:
                    next_task.cancel()
                    await asyncio.gather(next_task, return_exceptions=True)
                    if abort_task in done:
                        logger.info("OpenCode session %s aborted", state.session_id)
                    else:
                        logger.warning(
                            "No OpenCode events for %ss on %s, treating as finished",
                            self.inactivity_timeout,
                            result.agent_key,
                        )
                    return

                event = next_task.result()
                if event is None:
                    return
                if self._handle_event(event, request, result, state):
                    logger.info("OpenCode session %s is idle", state.session_id)
                    return
        finally:
            abort_task.cancel()
            await asyncio.gather(abort_task, return_exceptions=True)

    def _handle_event(
        self,
        event: dict,
        request: ExecutionRequest,
        result: AgentResult,
        state: _SessionState,
    ) -> bool:
        """Dispatch one server event. Returns True once the session is idle."""
        event_type = as_str(event.get("type"))
        properties = as_dict(event.get("properties"))

        if event_type == "message.part.updated":
            part = as_dict(properties.get("part"))
            part_session = as_str(part.get("sessionID"))
            if part_session and part_session != state.session_id:
                return False

            message_id = as_str(part.get("messageID"))
            part_type = as_str(part.get("type"))
            if message_id and part_type != "text":
                state.assistant_message_ids.add(message_id)

            if part_type == "text":
                # echo of our own prompt
                if message_id and message_id not in state.assistant_message_ids:
                    return False
                delta = properties.get("delta") if isinstance(properties.get("delta"), str) else None
                part_id = as_str(part.get("id")) or message_id
                new_text = state.new_text(part_id, as_str(part.get("text")), delta)
                if not new_text:
                    return False
                event = {**event, "properties": {**properties, "delta": new_text}}

            self.emit(request, result, normalize_opencode_event(event, json.dumps(event)))
            return False

        if event_type == "message.updated":
            info = as_dict(properties.get("info"))
            if as_str(info.get("sessionID")) == state.session_id and as_str(info.get("role")) == "assistant":
                state.assistant_message_ids.add(as_str(info.get("id")))
            return False

        if event_type == "session.idle":
            return as_str(properties.get("sessionID")) == state.session_id

        if as_str(properties.get("sessionID")) != state.session_id:
            return False

        if event_type == "session.status":
            status = as_dict(properties.get("status"))
            if as_str(status.get("type")) == "retry":
                message = as_str(status.get("message")) or "unknown error"
                self.emit(
                    request,
                    result,
                    [make_event(EventType.STATUS, f"Retrying: {message}", json.dumps(event))],
                )
        elif event_type == "session.error":
            error = as_dict(properties.get("error"))
            message = (
                as_str(as_dict(error.get("data")).get("message"))
                or as_str(error.get("name"))
                or "unknown error"
            )
            result.errors.append(message)
            self.emit(request, result, [make_event(EventType.RAW, f"Error: {message}", json.dumps(event))])
        return False

    async def _session_usage(
        self, client: httpx.AsyncClient, session_id: str, params: dict
    ) -> Optional[TokenUsage]:
        """Total the assistant messages of the session."""
        try:
            response = await client.get(f"/session/{session_id}/message", params=params)
            response.raise_for_status()
            messages = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Could not read OpenCode session usage: %s", e)
            return None

        input_tokens = 0
        output_tokens = 0
        cost = 0.0
        found = False
        for message in as_list(messages):
            info = as_dict(as_dict(message).get("info"))
            if as_str(info.get("role")) != "assistant":
                continue
            found = True
            tokens = as_dict(info.get("tokens"))
            input_tokens += int(as_number(tokens.get("input")))
            output_tokens += int(as_number(tokens.get("output")) + as_number(tokens.get("reasoning")))
            cost += as_number(info.get("cost"))

        if not found:
            return None
        return TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_cost=cost if cost > 0 else None,
        )

    async def _abort_session(self, client: httpx.AsyncClient, session_id: str, params: dict) -> None:
        try:
            await client.post(f"/session/{session_id}/abort", params=params)
        except httpx.HTTPError as e:
            logger.debug("Abort request for session %s failed: %s", session_id, e)


async def _next_event(events: AsyncIterator[dict]) -> Optional[dict]:
    try:
        return await events.__anext__()
    except StopAsyncIteration:
        return None
