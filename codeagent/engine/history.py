"""Conversation history: summary boundary, model message conversion and
usage accounting."""
from __future__ import annotations

import json
from typing import Any

from codeagent.shared.models.message import (
    ABORTED_ERROR,
    AssistantMessage,
    CacheTokens,
    FilePart,
    MessageWithParts,
    TextPart,
    TokenUsage,
    ToolPart,
    ToolStatus,
)

from .providers.base import ModelInfo
from .stream_events import Usage

COMPACTED_OUTPUT = "[Old tool result content cleared]"

# Mimes whose content is already inlined as synthetic text parts.
_INLINED_MIMES = ("text/plain", "application/x-directory")


def filter_summarized(messages: list[MessageWithParts]) -> list[MessageWithParts]:
    """Drop everything before the latest summary message (which is kept)."""
    for index in range(len(messages) - 1, -1, -1):
        info = messages[index].info
        if isinstance(info, AssistantMessage) and info.summary:
            return messages[index:]
    return messages


def last_assistant(messages: list[MessageWithParts]) -> AssistantMessage | None:
    for item in reversed(messages):
        if isinstance(item.info, AssistantMessage):
            return item.info
    return None


def is_model_visible(item: MessageWithParts) -> bool:
    """Assistant messages that failed (other than by abort) are hidden."""
    info = item.info
    if isinstance(info, AssistantMessage) and info.error is not None:
        return info.error.name == ABORTED_ERROR
    return True


def _user_content(item: MessageWithParts) -> list[dict[str, Any]]:
    content: list[dict[str, Any]] = []
    for part in item.parts:
        if isinstance(part, TextPart) and part.text:
            content.append({"type": "text", "text": part.text})
        elif isinstance(part, FilePart):
            if part.mime in _INLINED_MIMES:
                continue
            if part.mime.startswith("image/") and part.url.startswith("data:"):
                content.append({"type": "image_url", "image_url": {"url": part.url}})
    return content


def _tool_output(part: ToolPart) -> str:
    state = part.state
    if state.status == ToolStatus.COMPLETED:
        if state.time is not None and state.time.compacted:
            return COMPACTED_OUTPUT
        return state.output or ""
    if state.status == ToolStatus.ERROR:
        return f"Error: {state.error or 'unknown error'}"
    return "Error: Tool execution aborted"


def to_model_messages(messages: list[MessageWithParts]) -> list[dict[str, Any]]:
    """Convert stored messages to OpenAI-style chat messages."""
    result: list[dict[str, Any]] = []
    for item in messages:
        if not is_model_visible(item):
            continue
        if not isinstance(item.info, AssistantMessage):
            content = _user_content(item)
            if content:
                result.append({"role": "user", "content": content})
            continue
        text: list[str] = []
        calls: list[dict[str, Any]] = []
        outputs: list[dict[str, Any]] = []
        for part in item.parts:
            if isinstance(part, TextPart) and part.text:
                text.append(part.text)
            elif isinstance(part, ToolPart) and part.state.status != ToolStatus.PENDING:
                calls.append(
                    {
                        "id": part.call_id,
                        "type": "function",
                        "function": {
                            "name": part.tool,
                            "arguments": json.dumps(part.state.input or {}),
                        },
                    }
                )
                outputs.append(
                    {
                        "role": "tool",
                        "tool_call_id": part.call_id,
                        "content": _tool_output(part),
                    }
                )
        if not text and not calls:
            continue
        message: dict[str, Any] = {"role": "assistant", "content": "\n".join(text) or None}
        if calls:
            message["tool_calls"] = calls
        result.append(message)
        result.extend(outputs)
    return result


def get_usage(model: ModelInfo, usage: Usage) -> tuple[float, TokenUsage]:
    """Token counts and USD cost for one model call.

    Cached input tokens are reported separately from (and excluded from)
    ``input``; model prices are per million tokens.
    """
    cached = usage.cached_input_tokens or 0
    tokens = TokenUsage(
        input=max((usage.input_tokens or 0) - cached, 0),
        output=usage.output_tokens or 0,
        reasoning=usage.reasoning_tokens or 0,
        cache=CacheTokens(read=cached, write=usage.cache_write_tokens or 0),
    )
    cost = (
        tokens.input * model.cost.input
        + tokens.output * model.cost.output
        + tokens.cache.read * model.cost.cache_read
        + tokens.cache.write * model.cost.cache_write
    ) / 1_000_000
    return cost, tokens
