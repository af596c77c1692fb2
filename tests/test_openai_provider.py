"""Tests for the OpenAI-compatible provider against a local chat-completions stub."""
from __future__ import annotations

import json
import os
from unittest.mock import patch

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from codeagent.engine.errors import ProviderAPIError, ProviderAuthError
from codeagent.engine.providers.base import ModelInfo, ModelRequest, ToolSpec
from codeagent.engine.providers.openai_compat import OpenAICompatProvider
from codeagent.engine.yaml_config import ProviderConfig

CHUNKS = [
    {"choices": [{"delta": {"reasoning_content": "thinking"}}]},
    {"choices": [{"delta": {"content": "Hel"}}]},
    {"choices": [{"delta": {"content": "lo"}}]},
    {"choices": [{"delta": {"tool_calls": [
        {"index": 0, "id": "call_9", "function": {"name": "echo", "arguments": "{\"te"}},
    ]}}]},
    {"choices": [{"delta": {"tool_calls": [
        {"index": 0, "function": {"arguments": "xt\": \"hi\"}"}},
    ]}}]},
    {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
    {"choices": [], "usage": {
        "prompt_tokens": 120,
        "completion_tokens": 30,
        "prompt_tokens_details": {"cached_tokens": 20},
    }},
]


def _request(**kw) -> ModelRequest:
    return ModelRequest(
        model=ModelInfo(provider_id="local", model_id="coder"),
        system=["be brief"],
        messages=[{"role": "user", "content": "hi"}],
        **kw,
    )


def _stub_app(received: list) -> web.Application:
    async def completions(request):
        body = await request.json()
        received.append((body, request.headers.get("authorization")))
        if not body["stream"]:
            return web.json_response({
                "choices": [{"message": {"content": "A title"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 5, "completion_tokens": 2},
            })
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        for chunk in CHUNKS:
            await response.write(f"data: {json.dumps(chunk)}\n\n".encode())
        await response.write(b"data: [DONE]\n\n")
        return response

    app = web.Application()
    app.router.add_post("/v1/chat/completions", completions)
    return app


@pytest.mark.asyncio
async def test_stream_maps_chunks_to_events():
    received = []
    async with TestServer(_stub_app(received)) as server:
        provider = OpenAICompatProvider(
            "local", ProviderConfig(base_url=str(server.make_url("/v1")), options={"seed": 7})
        )
        tools = [ToolSpec(name="echo", description="Echo", parameters={"type": "object"})]
        events = [e async for e in provider.stream(_request(tools=tools, max_output_tokens=512))]

    assert [e.type for e in events] == [
        "start-step",
        "reasoning-start",
        "reasoning-delta",
        "reasoning-end",
        "text-start",
        "text-delta",
        "text-delta",
        "tool-input-start",
        "tool-input-delta",
        "tool-input-delta",
        "text-end",
        "tool-input-end",
        "tool-call",
        "finish-step",
    ]
    call = events[-2]
    assert call.tool_call_id == "call_9"
    assert call.tool_name == "echo"
    assert call.input == {"text": "hi"}
    finish = events[-1]
    assert finish.finish_reason == "tool-calls"
    assert finish.usage.input_tokens == 120
    assert finish.usage.cached_input_tokens == 20

    body, auth = received[0]
    assert auth is None
    assert body["messages"][0] == {"role": "system", "content": "be brief"}
    assert body["tools"][0]["function"]["name"] == "echo"
    assert body["max_tokens"] == 512
    assert body["seed"] == 7
    assert body["stream_options"] == {"include_usage": True}


@pytest.mark.asyncio
async def test_generate_sends_the_api_key():
    received = []
    async with TestServer(_stub_app(received)) as server:
        provider = OpenAICompatProvider(
            "local",
            ProviderConfig(base_url=str(server.make_url("/v1")), api_key_env="LOCAL_API_KEY"),
        )
        with patch.dict(os.environ, {"LOCAL_API_KEY": "sk-test"}):
            assert provider.is_available()
            result = await provider.generate(_request())

    assert result.text == "A title"
    assert result.usage.output_tokens == 2
    assert received[0][1] == "Bearer sk-test"
    assert received[0][0]["stream"] is False


@pytest.mark.asyncio
async def test_missing_api_key_is_an_auth_error():
    provider = OpenAICompatProvider("local", ProviderConfig(api_key_env="LOCAL_API_KEY"))
    with patch.dict(os.environ, {}, clear=True):
        assert not provider.is_available()
        with pytest.raises(ProviderAuthError):
            await provider.generate(_request())


@pytest.mark.asyncio
async def test_http_errors_are_classified():
    async def completions(request):
        status = 401 if request.headers.get("authorization") else 429
        return web.Response(status=status, text="nope")

    app = web.Application()
    app.router.add_post("/v1/chat/completions", completions)
    async with TestServer(app) as server:
        plain = OpenAICompatProvider("local", ProviderConfig(base_url=str(server.make_url("/v1"))))
        with pytest.raises(ProviderAPIError):
            await plain.generate(_request())

        keyed = OpenAICompatProvider(
            "local",
            ProviderConfig(base_url=str(server.make_url("/v1")), api_key_env="LOCAL_API_KEY"),
        )
        with patch.dict(os.environ, {"LOCAL_API_KEY": "bad"}):
            with pytest.raises(ProviderAuthError):
                await keyed.generate(_request())
