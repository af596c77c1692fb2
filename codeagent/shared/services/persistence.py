"""Dict codecs for sessions, messages and parts.

The same plain-dict shape is written to disk by Storage and returned by
the HTTP server, so these are the single source of truth for the wire
format.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from codeagent.shared.models.message import (
    PART_TYPES,
    AgentPart,
    AssistantMessage,
    CacheTokens,
    FilePart,
    Message,
    MessageError,
    MessagePath,
    MessageTime,
    MessageWithParts,
    Part,
    PartTime,
    PatchPart,
    ReasoningPart,
    StepFinishPart,
    StepStartPart,
    TextPart,
    TokenUsage,
    ToolPart,
    ToolState,
    ToolStatus,
    ToolTime,
    UserMessage,
)
from codeagent.shared.models.session import (
    RevertInfo,
    SessionInfo,
    SessionTime,
    ShareInfo,
)


def session_to_dict(info: SessionInfo) -> dict[str, Any]:
    return asdict(info)


def dict_to_session(data: dict[str, Any]) -> SessionInfo:
    time = data.get("time") or {}
    share = data.get("share")
    revert = data.get("revert")
    return SessionInfo(
        id=data["id"],
        project_id=data.get("project_id", ""),
        directory=data.get("directory", ""),
        title=data.get("title", ""),
        parent_id=data.get("parent_id"),
        version=data.get("version", "1"),
        time=SessionTime(
            created=time.get("created", 0),
            updated=time.get("updated", 0),
            compacting=time.get("compacting"),
        ),
        share=ShareInfo(url=share["url"]) if share else None,
        revert=RevertInfo(
            message_id=revert["message_id"],
            part_id=revert.get("part_id"),
            snapshot=revert.get("snapshot"),
            diff=revert.get("diff"),
        ) if revert else None,
    )


def _tokens(data: dict[str, Any] | None) -> TokenUsage:
    data = data or {}
    cache = data.get("cache") or {}
    return TokenUsage(
        input=data.get("input", 0),
        output=data.get("output", 0),
        reasoning=data.get("reasoning", 0),
        cache=CacheTokens(read=cache.get("read", 0), write=cache.get("write", 0)),
    )


def message_to_dict(msg: Message) -> dict[str, Any]:
    return asdict(msg)


def dict_to_message(data: dict[str, Any]) -> Message:
    time = data.get("time") or {}
    msg_time = MessageTime(
        created=time.get("created", 0), completed=time.get("completed")
    )
    if data.get("role") == "user":
        return UserMessage(
            id=data["id"], session_id=data["session_id"], time=msg_time
        )
    path = data.get("path") or {}
    error = data.get("error")
    return AssistantMessage(
        id=data["id"],
        session_id=data["session_id"],
        time=msg_time,
        provider_id=data.get("provider_id", ""),
        model_id=data.get("model_id", ""),
        mode=data.get("mode", ""),
        system=list(data.get("system") or []),
        path=MessagePath(cwd=path.get("cwd", ""), root=path.get("root", "")),
        cost=data.get("cost", 0.0),
        tokens=_tokens(data.get("tokens")),
        error=MessageError(name=error["name"], data=error.get("data") or {})
        if error else None,
        summary=data.get("summary", False),
    )


def part_to_dict(part: Part) -> dict[str, Any]:
    data = asdict(part)
    if isinstance(part, ToolPart):
        data["state"]["status"] = part.state.status.value
    return data


def _part_time(data: dict[str, Any] | None) -> PartTime | None:
    if not data:
        return None
    return PartTime(start=data.get("start", 0), end=data.get("end"))


def _tool_state(data: dict[str, Any]) -> ToolState:
    time = data.get("time")
    return ToolState(
        status=ToolStatus(data.get("status", "pending")),
        input=data.get("input") or {},
        output=data.get("output"),
        error=data.get("error"),
        title=data.get("title"),
        metadata=data.get("metadata"),
        time=ToolTime(
            start=time.get("start", 0),
            end=time.get("end"),
            compacted=time.get("compacted"),
        ) if time else None,
    )


def dict_to_part(data: dict[str, Any]) -> Part:
    kind = data.get("type", "")
    if kind not in PART_TYPES:
        raise ValueError(f"Unknown part type: {kind!r}")
    ids = {
        "id": data["id"],
        "session_id": data["session_id"],
        "message_id": data["message_id"],
    }
    if kind == "text":
        return TextPart(
            **ids,
            text=data.get("text", ""),
            synthetic=data.get("synthetic", False),
            time=_part_time(data.get("time")),
        )
    if kind == "reasoning":
        return ReasoningPart(
            **ids,
            text=data.get("text", ""),
            metadata=data.get("metadata"),
            time=_part_time(data.get("time")),
        )
    if kind == "tool":
        return ToolPart(
            **ids,
            tool=data.get("tool", ""),
            call_id=data.get("call_id", ""),
            state=_tool_state(data.get("state") or {}),
        )
    if kind == "file":
        return FilePart(
            **ids,
            mime=data.get("mime", ""),
            url=data.get("url", ""),
            filename=data.get("filename"),
            source=data.get("source"),
        )
    if kind == "agent":
        return AgentPart(**ids, name=data.get("name", ""), source=data.get("source"))
    if kind == "step-start":
        return StepStartPart(**ids, snapshot=data.get("snapshot"))
    if kind == "step-finish":
        return StepFinishPart(
            **ids,
            tokens=_tokens(data.get("tokens")),
            cost=data.get("cost", 0.0),
            snapshot=data.get("snapshot"),
        )
    return PatchPart(
        **ids, hash=data.get("hash", ""), files=list(data.get("files") or [])
    )


def message_with_parts_to_dict(item: MessageWithParts) -> dict[str, Any]:
    return {
        "info": message_to_dict(item.info),
        "parts": [part_to_dict(p) for p in item.parts],
    }
