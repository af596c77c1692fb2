"""Closed set of events produced while streaming one model step.

Providers emit the model-side events (text, reasoning, tool input, tool
calls, step boundaries, finish). The step driver in ``llm.py`` adds
``tool-result`` / ``tool-error`` after executing each call. The
processor dispatches on ``type``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    cached_input_tokens: int = 0
    cache_write_tokens: int = 0


@dataclass
class StartEvent:
    type: str = "start"


@dataclass
class StartStepEvent:
    type: str = "start-step"


@dataclass
class FinishStepEvent:
    finish_reason: str = "stop"
    usage: Usage = field(default_factory=Usage)
    metadata: dict[str, Any] | None = None
    type: str = "finish-step"


@dataclass
class FinishEvent:
    finish_reason: str = "stop"
    total_usage: Usage = field(default_factory=Usage)
    type: str = "finish"


@dataclass
class TextStartEvent:
    id: str = ""
    metadata: dict[str, Any] | None = None
    type: str = "text-start"


@dataclass
class TextDeltaEvent:
    id: str = ""
    text: str = ""
    metadata: dict[str, Any] | None = None
    type: str = "text-delta"


@dataclass
class TextEndEvent:
    id: str = ""
    metadata: dict[str, Any] | None = None
    type: str = "text-end"


@dataclass
class ReasoningStartEvent:
    id: str = ""
    metadata: dict[str, Any] | None = None
    type: str = "reasoning-start"


@dataclass
class ReasoningDeltaEvent:
    id: str = ""
    text: str = ""
    metadata: dict[str, Any] | None = None
    type: str = "reasoning-delta"


@dataclass
class ReasoningEndEvent:
    id: str = ""
    metadata: dict[str, Any] | None = None
    type: str = "reasoning-end"


@dataclass
class ToolInputStartEvent:
    id: str = ""
    tool_name: str = ""
    type: str = "tool-input-start"


@dataclass
class ToolInputDeltaEvent:
    id: str = ""
    delta: str = ""
    type: str = "tool-input-delta"


@dataclass
class ToolInputEndEvent:
    id: str = ""
    type: str = "tool-input-end"


@dataclass
class ToolCallEvent:
    tool_call_id: str = ""
    tool_name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] | None = None
    type: str = "tool-call"


@dataclass
class ToolResultEvent:
    tool_call_id: str = ""
    tool_name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    title: str = ""
    output: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    type: str = "tool-result"


@dataclass
class ToolErrorEvent:
    tool_call_id: str = ""
    tool_name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    error: BaseException | None = None
    type: str = "tool-error"


@dataclass
class ErrorEvent:
    error: BaseException | None = None
    type: str = "error"


StreamEvent = Union[
    StartEvent,
    StartStepEvent,
    FinishStepEvent,
    FinishEvent,
    TextStartEvent,
    TextDeltaEvent,
    TextEndEvent,
    ReasoningStartEvent,
    ReasoningDeltaEvent,
    ReasoningEndEvent,
    ToolInputStartEvent,
    ToolInputDeltaEvent,
    ToolInputEndEvent,
    ToolCallEvent,
    ToolResultEvent,
    ToolErrorEvent,
    ErrorEvent,
]
