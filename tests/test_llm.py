from __future__ import annotations

import pytest

from codeagent.engine.llm import INVALID_TOOL, execute_tool_call, repair_tool_call, stream_step
from codeagent.engine.providers.base import ModelRequest
from codeagent.engine.stream_events import ToolCallEvent, ToolErrorEvent, ToolResultEvent
from codeagent.tools.base import ToolContext
from codeagent.tools.builtin import invalid_tool

from conftest import ScriptedProvider, echo_tool, tool_step


def _tools():
    return {"echo": echo_tool(), INVALID_TOOL: invalid_tool()}


def _context(event):
    return ToolContext(session_id="ses", message_id="msg", call_id=event.tool_call_id)


def test_known_tool_is_untouched():
    event = ToolCallEvent(tool_call_id="c", tool_name="echo", input={"text": "a"})
    assert repair_tool_call(event, _tools()) is event


def test_case_mismatch_is_repaired():
    event = ToolCallEvent(tool_call_id="c", tool_name="ECHO", input={"text": "a"})
    repaired = repair_tool_call(event, _tools())
    assert repaired.tool_name == "echo"
    assert repaired.input == {"text": "a"}


def test_unknown_tool_routes_to_invalid():
    event = ToolCallEvent(tool_call_id="c", tool_name="teleport", input={})
    repaired = repair_tool_call(event, _tools())
    assert repaired.tool_name == INVALID_TOOL
    assert repaired.input["tool"] == "teleport"
    assert "echo" in repaired.input["error"]


@pytest.mark.asyncio
async def test_execute_validates_arguments():
    event = ToolCallEvent(tool_call_id="c", tool_name="echo", input={"text": 3})
    result = await execute_tool_call(event, _tools(), _context)
    assert isinstance(result, ToolErrorEvent)
    assert "text" in str(result.error)


@pytest.mark.asyncio
async def test_stream_step_executes_calls_inline():
    provider = ScriptedProvider([tool_step("Echo", {"text": "hi"})])
    request = ModelRequest(model=None)
    events = [e async for e in stream_step(provider, request, _tools(), _context)]

    types = [e.type for e in events]
    assert types == ["start-step", "tool-call", "tool-result", "finish-step"]
    call = events[1]
    result = events[2]
    assert call.tool_name == "echo"
    assert isinstance(result, ToolResultEvent)
    assert result.output == "hi"
    assert result.metadata == {"length": 2}


@pytest.mark.asyncio
async def test_invalid_tool_reports_back_to_the_model():
    provider = ScriptedProvider([tool_step("teleport", {"where": "moon"})])
    events = [e async for e in stream_step(provider, ModelRequest(model=None), _tools(), _context)]
    result = events[2]
    assert isinstance(result, ToolResultEvent)
    assert result.title == "Invalid Tool"
    assert "teleport" in result.output
