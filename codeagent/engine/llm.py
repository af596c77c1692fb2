"""One model step with inline tool execution.

Wraps ``Provider.stream``: every ``tool-call`` is yielded (so the
processor can mark the part running) and then executed before the next
provider event is read, followed by a ``tool-result`` or ``tool-error``.
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import replace

from codeagent.tools.base import ToolContext, ToolInfo, validate_args

from .providers.base import ModelRequest, Provider
from .stream_events import (
    StreamEvent,
    ToolCallEvent,
    ToolErrorEvent,
    ToolResultEvent,
)

logger = logging.getLogger(__name__)

INVALID_TOOL = "invalid"


def repair_tool_call(event: ToolCallEvent, tools: dict[str, ToolInfo]) -> ToolCallEvent:
    """Map an unknown tool name onto a known one, or onto ``invalid``."""
    if event.tool_name in tools:
        return event
    lower = event.tool_name.lower()
    if lower != event.tool_name and lower in tools:
        logger.debug("repaired tool name %s -> %s", event.tool_name, lower)
        return replace(event, tool_name=lower)
    logger.warning("model called unknown tool %s", event.tool_name)
    return replace(
        event,
        tool_name=INVALID_TOOL,
        input={
            "tool": event.tool_name,
            "error": f"Model tried to call unavailable tool '{event.tool_name}'. "
            f"Available tools: {', '.join(sorted(t for t in tools if t != INVALID_TOOL))}.",
        },
    )


async def execute_tool_call(
    event: ToolCallEvent,
    tools: dict[str, ToolInfo],
    context_for: Callable[[ToolCallEvent], ToolContext],
) -> ToolResultEvent | ToolErrorEvent:
    tool = tools.get(event.tool_name)
    if tool is None:
        return ToolErrorEvent(
            tool_call_id=event.tool_call_id,
            tool_name=event.tool_name,
            input=event.input,
            error=ValueError(f"Unknown tool: {event.tool_name}"),
        )
    try:
        validate_args(tool.parameters, event.input)
        result = await tool.execute(event.input, context_for(event))
    except Exception as exc:
        logger.info("tool %s failed call=%s: %s", event.tool_name, event.tool_call_id, exc)
        return ToolErrorEvent(
            tool_call_id=event.tool_call_id,
            tool_name=event.tool_name,
            input=event.input,
            error=exc,
        )
    return ToolResultEvent(
        tool_call_id=event.tool_call_id,
        tool_name=event.tool_name,
        input=event.input,
        title=result.title,
        output=result.output,
        metadata=result.metadata,
    )


async def stream_step(
    provider: Provider,
    request: ModelRequest,
    tools: dict[str, ToolInfo],
    context_for: Callable[[ToolCallEvent], ToolContext],
) -> AsyncIterator[StreamEvent]:
    """Stream one step, executing requested tools as they arrive."""
    async for event in provider.stream(request):
        if not isinstance(event, ToolCallEvent):
            yield event
            continue
        call = repair_tool_call(event, tools)
        yield call
        yield await execute_tool_call(call, tools, context_for)
