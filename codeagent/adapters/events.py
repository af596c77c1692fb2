"""Event types published on the project event bus.

Each event is a small dataclass whose fields are JSON-ready values. On
the wire (SSE and plugin ``event`` hooks) an event is
``{"type": <event_type>, "properties": {<fields>}}``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class BusEvent:
    """Base event."""
    event_type: str = ""


@dataclass
class ServerConnected(BusEvent):
    event_type: str = "server.connected"


@dataclass
class SessionUpdated(BusEvent):
    event_type: str = "session.updated"
    info: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionDeleted(BusEvent):
    event_type: str = "session.deleted"
    info: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionIdle(BusEvent):
    event_type: str = "session.idle"
    session_id: str = ""


@dataclass
class SessionCompacted(BusEvent):
    event_type: str = "session.compacted"
    session_id: str = ""


@dataclass
class SessionError(BusEvent):
    event_type: str = "session.error"
    session_id: str | None = None
    error: dict[str, Any] | None = None


@dataclass
class MessageUpdated(BusEvent):
    event_type: str = "message.updated"
    info: dict[str, Any] = field(default_factory=dict)


@dataclass
class MessageRemoved(BusEvent):
    event_type: str = "message.removed"
    session_id: str = ""
    message_id: str = ""


@dataclass
class PartUpdated(BusEvent):
    event_type: str = "message.part.updated"
    part: dict[str, Any] = field(default_factory=dict)
    delta: str | None = None


@dataclass
class PartRemoved(BusEvent):
    event_type: str = "message.part.removed"
    session_id: str = ""
    message_id: str = ""
    part_id: str = ""


@dataclass
class PermissionUpdated(BusEvent):
    event_type: str = "permission.updated"
    permission: dict[str, Any] = field(default_factory=dict)


@dataclass
class PermissionReplied(BusEvent):
    event_type: str = "permission.replied"
    session_id: str = ""
    permission_id: str = ""
    response: str = ""


@dataclass
class FileWatcherUpdated(BusEvent):
    event_type: str = "file.watcher.updated"
    file: str = ""
    event: str = ""


_EVENT_MAP: dict[str, type[BusEvent]] = {
    "server.connected": ServerConnected,
    "session.updated": SessionUpdated,
    "session.deleted": SessionDeleted,
    "session.idle": SessionIdle,
    "session.compacted": SessionCompacted,
    "session.error": SessionError,
    "message.updated": MessageUpdated,
    "message.removed": MessageRemoved,
    "message.part.updated": PartUpdated,
    "message.part.removed": PartRemoved,
    "permission.updated": PermissionUpdated,
    "permission.replied": PermissionReplied,
    "file.watcher.updated": FileWatcherUpdated,
}


def event_to_dict(event: BusEvent) -> dict[str, Any]:
    """Convert a typed event to its ``{"type", "properties"}`` wire form."""
    properties: dict[str, Any] = {}
    for name in event.__dataclass_fields__:
        if name == "event_type":
            continue
        value = getattr(event, name)
        if value is not None:
            properties[name] = value
    return {"type": event.event_type, "properties": properties}


def dict_to_event(data: dict[str, Any]) -> BusEvent:
    """Parse a wire dict back into a typed event."""
    event_type = data.get("type", "")
    cls = _EVENT_MAP.get(event_type, BusEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    props = data.get("properties") or {}
    filtered = {k: v for k, v in props.items() if k in valid_fields}
    filtered["event_type"] = event_type
    return cls(**filtered)
