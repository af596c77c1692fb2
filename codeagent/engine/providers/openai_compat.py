"""OpenAI-compatible chat-completions provider (OpenAI, Ollama, vLLM, ...).

Streams ``/chat/completions`` server-sent events over aiohttp and maps
each chunk onto ``StreamEvent``s. Tool-call arguments arrive as JSON
fragments keyed by index and are emitted as a single ``tool-call`` when
the step finishes.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import aiohttp

from ..errors import ProviderAPIError, ProviderAuthError
from ..stream_events import (
    FinishStepEvent,
    ReasoningDeltaEvent,
    ReasoningEndEvent,
    ReasoningStartEvent,
    StartStepEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
    TextStartEvent,
    ToolCallEvent,
    ToolInputDeltaEvent,
    ToolInputEndEvent,
    ToolInputStartEvent,
    Usage,
)
from ..yaml_config import ProviderConfig
from .base import GenerateResult, ModelRequest, Provider

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"

_FINISH_REASONS = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "content_filter": "content-filter",
}

_TIMEOUT = aiohttp.ClientTimeout(total=None, sock_connect=30, sock_read=600)


def _usage(data: dict[str, Any] | None) -> Usage:
    data = data or {}
    prompt_details = data.get("prompt_tokens_details") or {}
    completion_details = data.get("completion_tokens_details") or {}
    return Usage(
        input_tokens=int(data.get("prompt_tokens") or 0),
        output_tokens=int(data.get("completion_tokens") or 0),
        reasoning_tokens=int(completion_details.get("reasoning_tokens") or 0),
        cached_input_tokens=int(prompt_details.get("cached_tokens") or 0),
    )


@dataclass
class _PendingCall:
    id: str
    name: str = ""
    arguments: list[str] = field(default_factory=list)
    started: bool = False


class OpenAICompatProvider(Provider):
    """Chat-completions client for any OpenAI-compatible endpoint."""

    def __init__(self, provider_id: str, config: ProviderConfig | None = None) -> None:
        self._id = provider_id
        self._config = config or ProviderConfig()
        self._base_url = (self._config.base_url or DEFAULT_BASE_URL).rstrip("/")

    @property
    def name(self) -> str:
        return self._id

    def _api_key(self) -> str | None:
        env = self._config.api_key_env
        if env:
            return os.environ.get(env)
        return None

    def is_available(self) -> bool:
        return not self._config.api_key_env or bool(self._api_key())

    def _headers(self) -> dict[str, str]:
        headers = {"content-type": "application/json"}
        if self._config.api_key_env:
            key = self._api_key()
            if not key:
                raise ProviderAuthError(
                    self._id, f"environment variable {self._config.api_key_env} is not set"
                )
            headers["authorization"] = f"Bearer {key}"
        return headers

    def _body(self, request: ModelRequest, stream: bool) -> dict[str, Any]:
        messages = [{"role": "system", "content": s} for s in request.system if s]
        messages.extend(request.messages)
        body: dict[str, Any] = {
            "model": request.model.model_id,
            "messages": messages,
            "stream": stream,
        }
        if stream:
            body["stream_options"] = {"include_usage": True}
        if request.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters,
                    },
                }
                for t in request.tools
            ]
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.top_p is not None:
            body["top_p"] = request.top_p
        if request.max_output_tokens:
            body["max_tokens"] = request.max_output_tokens
        body.update(self._config.options)
        body.update(request.model.options)
        body.update(request.options)
        return body

    async def _raise_for_status(self, resp: aiohttp.ClientResponse) -> None:
        if resp.status < 400:
            return
        text = await resp.text()
        if resp.status in (401, 403):
            raise ProviderAuthError(self._id, f"{resp.status}: {text[:200]}")
        raise ProviderAPIError(self._id, resp.status, text)

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        url = f"{self._base_url}/chat/completions"
        body = self._body(request, stream=True)
        logger.debug("stream request model=%s messages=%d", body["model"], len(body["messages"]))

        text_open = False
        reasoning_open = False
        calls: dict[int, _PendingCall] = {}
        finish_reason = "stop"
        usage = Usage()

        yield StartStepEvent()
        async with aiohttp.ClientSession(timeout=_TIMEOUT) as session:
            async with session.post(url, json=body, headers=self._headers()) as resp:
                await self._raise_for_status(resp)
                async for raw in resp.content:
                    line = raw.decode("utf-8", errors="replace").strip()
                    if not line.startswith("data:"):
                        continue
                    payload = line[5:].strip()
                    if payload == "[DONE]":
                        break
                    try:
                        chunk = json.loads(payload)
                    except json.JSONDecodeError:
                        logger.warning("skipping malformed chunk: %s", payload[:200])
                        continue
                    if chunk.get("error"):
                        raise ProviderAPIError(self._id, 500, json.dumps(chunk["error"]))
                    if chunk.get("usage"):
                        usage = _usage(chunk["usage"])
                    for choice in chunk.get("choices") or []:
                        delta = choice.get("delta") or {}
                        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
                        if reasoning:
                            if not reasoning_open:
                                reasoning_open = True
                                yield ReasoningStartEvent(id="reasoning-0")
                            yield ReasoningDeltaEvent(id="reasoning-0", text=reasoning)
                        content = delta.get("content")
                        if content:
                            if reasoning_open:
                                reasoning_open = False
                                yield ReasoningEndEvent(id="reasoning-0")
                            if not text_open:
                                text_open = True
                                yield TextStartEvent(id="text-0")
                            yield TextDeltaEvent(id="text-0", text=content)
                        for tc in delta.get("tool_calls") or []:
                            index = tc.get("index", 0)
                            call = calls.get(index)
                            if call is None:
                                call = calls[index] = _PendingCall(id=tc.get("id") or f"call_{index}")
                            function = tc.get("function") or {}
                            if function.get("name"):
                                call.name += function["name"]
                            if not call.started and call.name:
                                call.started = True
                                yield ToolInputStartEvent(id=call.id, tool_name=call.name)
                            if function.get("arguments"):
                                call.arguments.append(function["arguments"])
                                if call.started:
                                    yield ToolInputDeltaEvent(id=call.id, delta=function["arguments"])
                        if choice.get("finish_reason"):
                            finish_reason = _FINISH_REASONS.get(
                                choice["finish_reason"], choice["finish_reason"]
                            )

        if reasoning_open:
            yield ReasoningEndEvent(id="reasoning-0")
        if text_open:
            yield TextEndEvent(id="text-0")
        for index in sorted(calls):
            call = calls[index]
            yield ToolInputEndEvent(id=call.id)
            raw_args = "".join(call.arguments) or "{}"
            try:
                args = json.loads(raw_args)
            except json.JSONDecodeError as exc:
                logger.warning("invalid tool arguments for %s: %s", call.name, exc)
                yield ToolCallEvent(
                    tool_call_id=call.id,
                    tool_name="invalid",
                    input={"tool": call.name, "error": f"Invalid JSON arguments: {exc}"},
                )
                continue
            yield ToolCallEvent(tool_call_id=call.id, tool_name=call.name, input=args)
        yield FinishStepEvent(finish_reason=finish_reason, usage=usage)

    async def generate(self, request: ModelRequest) -> GenerateResult:
        url = f"{self._base_url}/chat/completions"
        body = self._body(request, stream=False)
        async with aiohttp.ClientSession(timeout=_TIMEOUT) as session:
            async with session.post(url, json=body, headers=self._headers()) as resp:
                await self._raise_for_status(resp)
                data = await resp.json(content_type=None)
        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        return GenerateResult(
            text=message.get("content") or "",
            usage=_usage(data.get("usage")),
            finish_reason=_FINISH_REASONS.get(
                choice.get("finish_reason") or "stop", "stop"
            ),
        )
