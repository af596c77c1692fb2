"""Message and part models.

A conversation is a list of messages, each owning an id-sorted list of
parts. User messages are inert containers; assistant messages accumulate
token usage, cost and an optional terminal error while a turn runs.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


def now_ms() -> int:
    return int(time.time() * 1000)


class ToolStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


# MessageError names stored on assistant messages.
ABORTED_ERROR = "MessageAbortedError"
OUTPUT_LENGTH_ERROR = "MessageOutputLengthError"
AUTH_ERROR = "ProviderAuthError"
UNKNOWN_ERROR = "UnknownError"


@dataclass
class MessageError:
    name: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        return str(self.data.get("message", ""))


@dataclass
class CacheTokens:
    read: int = 0
    write: int = 0


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache: CacheTokens = field(default_factory=CacheTokens)


@dataclass
class MessageTime:
    created: int = field(default_factory=now_ms)
    completed: int | None = None


@dataclass
class MessagePath:
    cwd: str = ""
    root: str = ""


@dataclass
class UserMessage:
    id: str
    session_id: str
    time: MessageTime = field(default_factory=MessageTime)
    role: str = "user"


@dataclass
class AssistantMessage:
    id: str
    session_id: str
    time: MessageTime = field(default_factory=MessageTime)
    provider_id: str = ""
    model_id: str = ""
    mode: str = ""
    system: list[str] = field(default_factory=list)
    path: MessagePath = field(default_factory=MessagePath)
    cost: float = 0.0
    tokens: TokenUsage = field(default_factory=TokenUsage)
    error: MessageError | None = None
    summary: bool = False
    role: str = "assistant"


Message = Union[UserMessage, AssistantMessage]


@dataclass
class PartTime:
    start: int = field(default_factory=now_ms)
    end: int | None = None


@dataclass
class ToolTime:
    start: int = field(default_factory=now_ms)
    end: int | None = None
    compacted: int | None = None


@dataclass
class ToolState:
    """State machine of a tool invocation: pending -> running -> completed|error."""
    status: ToolStatus = ToolStatus.PENDING
    input: dict[str, Any] = field(default_factory=dict)
    output: str | None = None
    error: str | None = None
    title: str | None = None
    metadata: dict[str, Any] | None = None
    time: ToolTime | None = None

    @property
    def finished(self) -> bool:
        return self.status in (ToolStatus.COMPLETED, ToolStatus.ERROR)


@dataclass
class TextPart:
    id: str
    session_id: str
    message_id: str
    text: str = ""
    synthetic: bool = False
    time: PartTime | None = None
    type: str = "text"


@dataclass
class ReasoningPart:
    id: str
    session_id: str
    message_id: str
    text: str = ""
    metadata: dict[str, Any] | None = None
    time: PartTime | None = None
    type: str = "reasoning"


@dataclass
class ToolPart:
    id: str
    session_id: str
    message_id: str
    tool: str = ""
    call_id: str = ""
    state: ToolState = field(default_factory=ToolState)
    type: str = "tool"


@dataclass
class FilePart:
    id: str
    session_id: str
    message_id: str
    mime: str = ""
    url: str = ""
    filename: str | None = None
    source: dict[str, Any] | None = None
    type: str = "file"


@dataclass
class AgentPart:
    id: str
    session_id: str
    message_id: str
    name: str = ""
    source: dict[str, Any] | None = None
    type: str = "agent"


@dataclass
class StepStartPart:
    id: str
    session_id: str
    message_id: str
    snapshot: str | None = None
    type: str = "step-start"


@dataclass
class StepFinishPart:
    id: str
    session_id: str
    message_id: str
    tokens: TokenUsage = field(default_factory=TokenUsage)
    cost: float = 0.0
    snapshot: str | None = None
    type: str = "step-finish"


@dataclass
class PatchPart:
    id: str
    session_id: str
    message_id: str
    hash: str = ""
    files: list[str] = field(default_factory=list)
    type: str = "patch"


Part = Union[
    TextPart,
    ReasoningPart,
    ToolPart,
    FilePart,
    AgentPart,
    StepStartPart,
    StepFinishPart,
    PatchPart,
]

PART_TYPES: dict[str, type] = {
    "text": TextPart,
    "reasoning": ReasoningPart,
    "tool": ToolPart,
    "file": FilePart,
    "agent": AgentPart,
    "step-start": StepStartPart,
    "step-finish": StepFinishPart,
    "patch": PatchPart,
}


@dataclass
class MessageWithParts:
    info: Message
    parts: list[Part] = field(default_factory=list)
