"""OpenRouter chat-completions gateway used by jurors and the chairman.

Includes the model list cache that backs cost estimation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

import httpx

from ..models.council import CouncilTokenUsage, LlmResponse, ModelInfo, ModelPricing
from ..models.provider import CompletionResult
from ..normalizers.common import as_dict, as_list, as_number, as_str
from ..utils.sanitize import sanitize_error
from ..utils.sse import iter_sse_json

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://openrouter.ai/api/v1/chat/completions"
MODELS_URL = "https://openrouter.ai/api/v1/models"
DEFAULT_TIMEOUT_SECONDS = 120.0
CHUNK_BATCH_SECONDS = 0.05
MODEL_CACHE_TTL_SECONDS = 3600.0

Messages = list[dict]
StartCallback = Callable[[str], None]
ChunkCallback = Callable[[str, str], None]
CompleteCallback = Callable[[str, bool, Optional[CouncilTokenUsage]], None]


def _fallback(model_id: str, name: str, context_length: int, prompt: float, completion: float) -> ModelInfo:
    return ModelInfo(
        id=model_id,
        name=name,
        context_length=context_length,
        pricing=ModelPricing(prompt=prompt, completion=completion),
    )


# USD per million tokens, used when the live list cannot be fetched
FALLBACK_MODELS: list[ModelInfo] = [
    _fallback("openai/gpt-4o", "GPT-4o", 128000, 2.5, 10),
    _fallback("openai/gpt-4o-mini", "GPT-4o Mini", 128000, 0.15, 0.6),
    _fallback("anthropic/claude-3.5-sonnet", "Claude 3.5 Sonnet", 200000, 3, 15),
    _fallback("anthropic/claude-3.5-haiku", "Claude 3.5 Haiku", 200000, 0.8, 4),
    _fallback("anthropic/claude-3-opus", "Claude 3 Opus", 200000, 15, 75),
    _fallback("google/gemini-1.5-pro", "Gemini 1.5 Pro", 2000000, 3.5, 10.5),
    _fallback("google/gemini-1.5-flash", "Gemini 1.5 Flash", 1000000, 0.35, 0.53),
    _fallback("meta-llama/llama-3.1-405b-instruct", "Llama 3.1 405B", 131072, 2.7, 2.7),
    _fallback("meta-llama/llama-3.1-70b-instruct", "Llama 3.1 70B", 131072, 0.52, 0.75),
    _fallback("mistralai/mistral-large", "Mistral Large", 128000, 3, 9),
    _fallback("deepseek/deepseek-chat", "DeepSeek V2.5", 64000, 0.14, 0.28),
    _fallback("qwen/qwen-2.5-72b-instruct", "Qwen 2.5 72B", 128000, 0.35, 0.35),
    _fallback("x-ai/grok-beta", "Grok Beta", 128000, 5, 15),
    _fallback("cohere/command-r-plus", "Command R+", 128000, 3, 15),
    _fallback("microsoft/phi-4", "Phi 4", 16000, 0.07, 0.14),
    _fallback("amazon/nova-pro", "Nova Pro", 300000, 0.8, 3.2),
    _fallback("amazon/nova-lite", "Nova Lite", 300000, 0.06, 0.24),
]


class ModelCache:
    """Time-limited cache of the live OpenRouter model list."""

    def __init__(self, ttl_seconds: float = MODEL_CACHE_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self._models: Optional[list[ModelInfo]] = None
        self._stored_at = 0.0

    def get(self) -> Optional[list[ModelInfo]]:
        if self._models is not None and time.monotonic() - self._stored_at < self.ttl_seconds:
            return self._models
        return None

    def set(self, models: list[ModelInfo]) -> None:
        self._models = models
        self._stored_at = time.monotonic()

    def clear(self) -> None:
        self._models = None
        self._stored_at = 0.0


_model_cache = ModelCache()


def parse_usage(data: dict) -> Optional[CouncilTokenUsage]:
    usage = data.get("usage")
    if not isinstance(usage, dict):
        return None
    return CouncilTokenUsage(
        prompt_tokens=int(as_number(usage.get("prompt_tokens"))),
        completion_tokens=int(as_number(usage.get("completion_tokens"))),
        total_tokens=int(as_number(usage.get("total_tokens"))),
    )


def parse_model_list(data: dict) -> list[ModelInfo]:
    """Convert the ``/models`` payload; OpenRouter prices per token."""
    models: list[ModelInfo] = []
    for entry in as_list(data.get("data")):
        entry = as_dict(entry)
        model_id = as_str(entry.get("id"))
        if not model_id:
            continue
        pricing = as_dict(entry.get("pricing"))
        models.append(
            ModelInfo(
                id=model_id,
                name=as_str(entry.get("name")) or model_id,
                context_length=int(as_number(entry.get("context_length"))) or 4096,
                pricing=ModelPricing(
                    prompt=as_number(pricing.get("prompt")) * 1_000_000,
                    completion=as_number(pricing.get("completion")) * 1_000_000,
                ),
            )
        )
    models.sort(key=lambda m: m.name.lower())
    return models


def _is_retryable(error_msg: str) -> tuple[bool, bool]:
    """Return ``(retryable, rate_limited)`` for a gateway error string."""
    is_rate_limit = error_msg.startswith("429")
    is_retryable = (
        is_rate_limit
        or any(
            code in error_msg
            for code in ("500", "502", "503", "504", "timeout", "timed out")
        )
    ) and not any(error_msg.startswith(code) for code in ("400", "401", "403", "404"))
    return is_retryable, is_rate_limit


class OpenRouterGateway:
    """Chat completions over OpenRouter, plain or streamed."""

    name = "openrouter"

    def __init__(
        self,
        api_key: str,
        api_url: str = DEFAULT_API_URL,
        models_url: str = MODELS_URL,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 5,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        cache: Optional[ModelCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.models_url = models_url
        self.max_attempts = retry_attempts
        self.retry_delay = retry_delay_seconds
        self.timeout = timeout_seconds
        self.cache = cache if cache is not None else _model_cache
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": "https://github.com/concilium",
            "X-Title": "Concilium",
        }

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def complete(self, model: str, messages: Messages, timeout: Optional[float] = None) -> CompletionResult:
        if not self.api_key:
            return CompletionResult(success=False, error="OpenRouter API key is not configured")

        timeout = timeout or self.timeout
        body = {"model": model, "messages": messages}

        try:
            async with self._client(timeout) as client:
                response = await client.post(self.api_url, json=body, headers=self._headers())
                response.raise_for_status()
                data = as_dict(response.json())

            choices = as_list(data.get("choices"))
            content = ""
            if choices:
                content = as_str(as_dict(as_dict(choices[0]).get("message")).get("content"))
            else:
                logger.warning("No choices in response for %s", model)

            return CompletionResult(success=True, content=content, usage=parse_usage(data))
        except httpx.HTTPStatusError as e:
            error_body = ""
            try:
                error_body = e.response.text
            except Exception:
                pass
            return CompletionResult(
                success=False,
                error=f"{e.response.status_code} | {error_body[:500]}",
            )
        except httpx.TimeoutException as e:
            return CompletionResult(success=False, error=f"timeout: {e}")
        except Exception as e:
            return CompletionResult(success=False, error=str(e))

    async def complete_with_retry(
        self, model: str, messages: Messages, timeout: Optional[float] = None
    ) -> CompletionResult:
        """Wrap complete() with retry logic including rate-limit handling."""
        rate_limit_max = max(self.max_attempts, 5)
        last_result: Optional[CompletionResult] = None

        for attempt in range(1, rate_limit_max + 1):
            result = await self.complete(model, messages, timeout)
            last_result = result

            if result.success:
                return result

            error_msg = result.error or ""
            is_retryable, is_rate_limit = _is_retryable(error_msg)

            effective_max = rate_limit_max if is_rate_limit else self.max_attempts
            if not is_retryable or attempt >= effective_max:
                result.error = sanitize_error(error_msg)
                return result

            # Rate limits: 30s base. Others: standard backoff.
            base_delay = 30 if is_rate_limit else self.retry_delay
            wait_time = base_delay * min(attempt, 3)
            logger.info("Retrying %s in %ss (attempt %d): %s", model, wait_time, attempt, sanitize_error(error_msg))
            await asyncio.sleep(wait_time)

        return last_result or CompletionResult(success=False, error="Max retries exceeded")

    async def query(self, model: str, messages: Messages, timeout: Optional[float] = None) -> Optional[LlmResponse]:
        """Non-streaming completion. Returns None on failure."""
        result = await self.complete_with_retry(model, messages, timeout)
        if not result.success:
            logger.error("Query to %s failed: %s", model, result.error)
            return None
        logger.info("Query to %s returned %d chars", model, len(result.content or ""))
        return LlmResponse(content=result.content or "", usage=result.usage)

    async def query_streaming(
        self,
        model: str,
        messages: Messages,
        on_chunk: Optional[Callable[[str], None]] = None,
        timeout: Optional[float] = None,
    ) -> Optional[LlmResponse]:
        """Streamed completion. Chunks reach ``on_chunk`` in ~50 ms batches.

        Returns None on failure.
        """
        if not self.api_key:
            logger.error("OpenRouter API key is not configured")
            return None

        timeout = timeout or self.timeout
        try:
            return await asyncio.wait_for(self._stream(model, messages, on_chunk, timeout), timeout)
        except httpx.HTTPStatusError as e:
            logger.error("Streaming query to %s failed: HTTP %s", model, e.response.status_code)
        except asyncio.TimeoutError:
            logger.error("Streaming query to %s timed out after %ss", model, timeout)
        except Exception as e:
            logger.error("Streaming query to %s failed: %s", model, sanitize_error(str(e)))
        return None

    async def _stream(
        self,
        model: str,
        messages: Messages,
        on_chunk: Optional[Callable[[str], None]],
        timeout: float,
    ) -> LlmResponse:
        body = {
            "model": model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        loop = asyncio.get_running_loop()
        parts: list[str] = []
        pending: list[str] = []
        timer: Optional[asyncio.TimerHandle] = None
        usage: Optional[CouncilTokenUsage] = None

        def flush() -> None:
            nonlocal timer
            timer = None
            if pending and on_chunk:
                on_chunk("".join(pending))
            pending.clear()

        try:
            async with self._client(timeout) as client:
                async with client.stream("POST", self.api_url, json=body, headers=self._headers()) as response:
                    if response.is_error:
                        await response.aread()
                    response.raise_for_status()
                    async for payload in iter_sse_json(response):
                        usage = parse_usage(payload) or usage
                        choices = as_list(payload.get("choices"))
                        if not choices:
                            continue
                        delta = as_str(as_dict(as_dict(choices[0]).get("delta")).get("content"))
                        if not delta:
                            continue
                        parts.append(delta)
                        pending.append(delta)
                        if timer is None:
                            timer = loop.call_later(CHUNK_BATCH_SECONDS, flush)
        finally:
            if timer is not None:
                timer.cancel()
            flush()

        content = "".join(parts)
        logger.info("Streaming query to %s returned %d chars", model, len(content))
        return LlmResponse(content=content, usage=usage)

    async def query_models_parallel_streaming(
        self,
        models: list[str],
        messages: Messages,
        on_start: Optional[StartCallback] = None,
        on_chunk: Optional[ChunkCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
    ) -> dict[str, Optional[LlmResponse]]:
        """Stream the same messages to every model concurrently."""

        async def run(model: str) -> Optional[LlmResponse]:
            if on_start:
                on_start(model)
            chunk_cb = (lambda chunk: on_chunk(model, chunk)) if on_chunk else None
            response = await self.query_streaming(model, messages, chunk_cb)
            if on_complete:
                on_complete(model, response is not None, response.usage if response else None)
            return response

        outcomes = await asyncio.gather(*(run(model) for model in models), return_exceptions=True)

        results: dict[str, Optional[LlmResponse]] = {}
        for model, outcome in zip(models, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error("Juror %s raised: %s", model, outcome)
                results[model] = None
            else:
                results[model] = outcome

        success_count = sum(1 for r in results.values() if r is not None)
        logger.info(
            "Parallel streaming complete: %d success, %d failed",
            success_count,
            len(results) - success_count,
        )
        return results

    async def fetch_models(self) -> list[ModelInfo]:
        """Fetch the live model list, cached for an hour, or the fallback list."""
        cached = self.cache.get()
        if cached is not None:
            return cached

        try:
            async with self._client(30.0) as client:
                response = await client.get(self.models_url, headers=self._headers())
                response.raise_for_status()
                models = parse_model_list(as_dict(response.json()))
        except Exception as e:
            logger.warning("Failed to fetch OpenRouter models, using fallback: %s", sanitize_error(str(e)))
            return list(FALLBACK_MODELS)

        self.cache.set(models)
        return models

    def get_cached_or_fallback_models(self) -> list[ModelInfo]:
        cached = self.cache.get()
        return cached if cached is not None else list(FALLBACK_MODELS)

    def clear_model_cache(self) -> None:
        self.cache.clear()


def format_pricing(prompt: float, completion: float) -> str:
    """Format per-million pricing for display, e.g. ``$2.50 / $10.00``."""

    def fmt(value: float) -> str:
        if value == 0:
            return "Free"
        return f"${value:.2f}"

    if prompt == 0 and completion == 0:
        return "Free"
    return f"{fmt(prompt)} / {fmt(completion)}"
