"""Session metadata model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from codeagent.shared.models.message import now_ms

SESSION_VERSION = "1"

_PARENT_TITLE_PREFIX = "New session - "
_CHILD_TITLE_PREFIX = "Child session - "


def default_title(is_child: bool = False) -> str:
    prefix = _CHILD_TITLE_PREFIX if is_child else _PARENT_TITLE_PREFIX
    return prefix + datetime.now(timezone.utc).isoformat()


def is_default_title(title: str | None) -> bool:
    if not title:
        return True
    return title.startswith(_PARENT_TITLE_PREFIX) or title.startswith(
        _CHILD_TITLE_PREFIX
    )


@dataclass
class SessionTime:
    created: int = field(default_factory=now_ms)
    updated: int = field(default_factory=now_ms)
    compacting: int | None = None


@dataclass
class ShareInfo:
    url: str


@dataclass
class RevertInfo:
    """Where a session was rolled back to, and how to undo the rollback."""
    message_id: str
    part_id: str | None = None
    snapshot: str | None = None
    diff: str | None = None


@dataclass
class SessionInfo:
    id: str
    project_id: str
    directory: str
    title: str = ""
    parent_id: str | None = None
    version: str = SESSION_VERSION
    time: SessionTime = field(default_factory=SessionTime)
    share: ShareInfo | None = None
    revert: RevertInfo | None = None

    @property
    def is_root(self) -> bool:
        return self.parent_id is None
