"""Tests for the OpenRouter gateway."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from concilium.models.provider import CompletionResult
from concilium.providers.openrouter import (
    FALLBACK_MODELS,
    ModelCache,
    OpenRouterGateway,
    format_pricing,
    parse_model_list,
    parse_usage,
)

API_URL = "https://openrouter.test/api/v1/chat/completions"
MODELS_URL = "https://openrouter.test/api/v1/models"

MESSAGES = [{"role": "user", "content": "rank these"}]


def stream_body(*chunks: str, usage: dict | None = None) -> bytes:
    lines = []
    for chunk in chunks:
        lines.append(f"data: {json.dumps({'choices': [{'delta': {'content': chunk}}]})}\n\n")
    if usage is not None:
        lines.append(f"data: {json.dumps({'choices': [], 'usage': usage})}\n\n")
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def gateway(handler, api_key: str = "sk-or-test", **kwargs) -> OpenRouterGateway:
    return OpenRouterGateway(
        api_key=api_key,
        api_url=API_URL,
        models_url=MODELS_URL,
        retry_delay_seconds=0,
        cache=kwargs.pop("cache", ModelCache()),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestParsing:
    def test_parse_usage(self):
        usage = parse_usage({"usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}})
        assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (10, 5, 15)
        assert parse_usage({}) is None

    def test_parse_model_list_converts_per_token_prices(self):
        models = parse_model_list(
            {
                "data": [
                    {
                        "id": "z/model",
                        "name": "Zeta",
                        "context_length": 8000,
                        "pricing": {"prompt": "0.000002", "completion": "0.00001"},
                    },
                    {"id": "a/model", "pricing": {}},
                    {"name": "no id"},
                ]
            }
        )
        assert [m.id for m in models] == ["a/model", "z/model"]
        assert models[0].name == "a/model"
        assert models[0].context_length == 4096
        assert models[1].pricing.prompt == pytest.approx(2.0)
        assert models[1].pricing.completion == pytest.approx(10.0)

    def test_format_pricing(self):
        assert format_pricing(2.5, 10) == "$2.50 / $10.00"
        assert format_pricing(0, 0) == "Free"
        assert format_pricing(0, 1) == "Free / $1.00"


class TestComplete:
    @pytest.mark.asyncio
    async def test_success(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "choices": [{"message": {"content": "FINAL RANKING:\n1. Response A"}}],
                    "usage": {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7},
                },
            )

        result = await gateway(handler).complete("judge/one", MESSAGES)
        assert result.success
        assert result.content.startswith("FINAL RANKING")
        assert result.usage.total_tokens == 7
        assert seen[0].headers["Authorization"] == "Bearer sk-or-test"
        assert seen[0].headers["X-Title"] == "Concilium"
        assert json.loads(seen[0].content)["model"] == "judge/one"

    @pytest.mark.asyncio
    async def test_http_error(self):
        result = await gateway(lambda r: httpx.Response(503, text="overloaded")).complete("m", MESSAGES)
        assert not result.success
        assert result.error == "503 | overloaded"

    @pytest.mark.asyncio
    async def test_missing_key(self):
        result = await gateway(lambda r: httpx.Response(200), api_key="").complete("m", MESSAGES)
        assert not result.success
        assert "API key" in result.error


class TestRetry:
    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        gw = gateway(lambda r: httpx.Response(200))
        outcomes = [
            CompletionResult(success=False, error="502 | bad gateway"),
            CompletionResult(success=True, content="ok"),
        ]
        with patch.object(gw, "complete", new=AsyncMock(side_effect=outcomes)) as complete:
            result = await gw.complete_with_retry("m", MESSAGES)
        assert result.success
        assert complete.call_count == 2

    @pytest.mark.asyncio
    async def test_auth_errors_not_retried(self):
        gw = gateway(lambda r: httpx.Response(200))
        failure = CompletionResult(success=False, error="401 | invalid key sk-or-v1-abcdef")
        with patch.object(gw, "complete", new=AsyncMock(return_value=failure)) as complete:
            result = await gw.complete_with_retry("m", MESSAGES)
        assert complete.call_count == 1
        assert "sk-or-v1-abcdef" not in result.error

    @pytest.mark.asyncio
    async def test_rate_limit_gets_more_attempts(self):
        gw = gateway(lambda r: httpx.Response(200), retry_attempts=2)
        failure = CompletionResult(success=False, error="429 | slow down")
        with patch.object(gw, "complete", new=AsyncMock(return_value=failure)) as complete, patch(
            "concilium.providers.openrouter.asyncio.sleep", new=AsyncMock()
        ) as sleep:
            result = await gw.complete_with_retry("m", MESSAGES)
        assert not result.success
        assert complete.call_count == 5
        assert sleep.await_args_list[0].args == (30,)

    @pytest.mark.asyncio
    async def test_query_returns_none_on_failure(self):
        response = await gateway(lambda r: httpx.Response(404, text="no such model")).query("m", MESSAGES)
        assert response is None


class TestStreaming:
    @pytest.mark.asyncio
    async def test_chunks_and_usage(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert body["stream"] is True
            assert body["stream_options"] == {"include_usage": True}
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=stream_body(
                    "FINAL ", "RANKING:", "\n1. Response A",
                    usage={"prompt_tokens": 20, "completion_tokens": 8, "total_tokens": 28},
                ),
            )

        chunks = []
        response = await gateway(handler).query_streaming("judge/one", MESSAGES, chunks.append)
        assert response.content == "FINAL RANKING:\n1. Response A"
        assert response.usage.total_tokens == 28
        assert "".join(chunks) == response.content
        assert len(chunks) <= 3

    @pytest.mark.asyncio
    async def test_http_error_returns_none(self):
        chunks = []
        response = await gateway(lambda r: httpx.Response(500, text="boom")).query_streaming(
            "m", MESSAGES, chunks.append
        )
        assert response is None
        assert chunks == []

    @pytest.mark.asyncio
    async def test_missing_key_returns_none(self):
        response = await gateway(lambda r: httpx.Response(200), api_key="").query_streaming("m", MESSAGES)
        assert response is None

    @pytest.mark.asyncio
    async def test_parallel_streaming(self):
        def handler(request: httpx.Request) -> httpx.Response:
            model = json.loads(request.content)["model"]
            if model == "bad/model":
                return httpx.Response(500)
            return httpx.Response(200, content=stream_body(f"review by {model}"))

        events = []
        results = await gateway(handler).query_models_parallel_streaming(
            ["good/model", "bad/model"],
            MESSAGES,
            on_start=lambda m: events.append(("start", m)),
            on_chunk=lambda m, c: events.append(("chunk", m, c)),
            on_complete=lambda m, ok, usage: events.append(("complete", m, ok)),
        )
        assert results["good/model"].content == "review by good/model"
        assert results["bad/model"] is None
        assert ("chunk", "good/model", "review by good/model") in events
        assert ("complete", "good/model", True) in events
        assert ("complete", "bad/model", False) in events
        assert ("start", "bad/model") in events


class TestModelList:
    @pytest.mark.asyncio
    async def test_fetch_and_cache(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(
                200,
                json={"data": [{"id": "judge/one", "name": "Judge", "pricing": {"prompt": "0.000001"}}]},
            )

        gw = gateway(handler)
        first = await gw.fetch_models()
        second = await gw.fetch_models()
        assert [m.id for m in first] == ["judge/one"]
        assert second == first
        assert len(calls) == 1
        assert gw.get_cached_or_fallback_models() == first

        gw.clear_model_cache()
        assert gw.get_cached_or_fallback_models() == FALLBACK_MODELS

    @pytest.mark.asyncio
    async def test_fallback_not_cached(self):
        gw = gateway(lambda r: httpx.Response(500))
        models = await gw.fetch_models()
        assert models == FALLBACK_MODELS
        assert gw.cache.get() is None

    def test_cache_expiry(self):
        cache = ModelCache(ttl_seconds=0)
        cache.set(list(FALLBACK_MODELS))
        assert cache.get() is None
