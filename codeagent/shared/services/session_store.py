"""Session, message and part CRUD over Storage.

Every mutation is persisted before the matching bus event is published,
so an SSE client that re-reads after an event always sees the new state.
"""
from __future__ import annotations

import logging
from collections.abc import Callable

from codeagent.adapters.event_bus import EventBus
from codeagent.adapters.events import (
    MessageRemoved,
    MessageUpdated,
    PartRemoved,
    PartUpdated,
    SessionDeleted,
    SessionUpdated,
)
from codeagent.engine import identifier
from codeagent.engine.errors import SessionNotFoundError
from codeagent.shared.models.message import (
    Message,
    MessageWithParts,
    Part,
    now_ms,
)
from codeagent.shared.models.session import SessionInfo, ShareInfo, default_title
from codeagent.shared.services.persistence import (
    dict_to_message,
    dict_to_part,
    dict_to_session,
    message_to_dict,
    part_to_dict,
    session_to_dict,
)
from codeagent.shared.services.storage import Storage

logger = logging.getLogger(__name__)


class SessionStore:
    """Persistent conversation state for one project."""

    def __init__(
        self,
        storage: Storage,
        bus: EventBus,
        project_id: str,
        directory: str,
        share_url: str | None = None,
    ) -> None:
        self._storage = storage
        self._bus = bus
        self.project_id = project_id
        self.directory = directory
        self._share_url = share_url

    # ── Sessions ──

    def create(
        self, parent_id: str | None = None, title: str | None = None
    ) -> SessionInfo:
        info = SessionInfo(
            id=identifier.descending("session"),
            project_id=self.project_id,
            directory=self.directory,
            parent_id=parent_id,
            title=title or default_title(is_child=parent_id is not None),
        )
        logger.info("created session id=%s parent=%s", info.id, parent_id)
        self._write_session(info)
        return info

    def get(self, session_id: str) -> SessionInfo:
        data = self._storage.read(["session", self.project_id, session_id])
        if data is None:
            raise SessionNotFoundError("session", session_id)
        return dict_to_session(data)

    def update(
        self,
        session_id: str,
        editor: Callable[[SessionInfo], None],
        touch: bool = True,
    ) -> SessionInfo:
        info = self.get(session_id)
        editor(info)
        if touch:
            info.time.updated = now_ms()
        self._write_session(info)
        return info

    def list(self) -> list[SessionInfo]:
        """All sessions, newest first."""
        result = []
        for key in self._storage.list(["session", self.project_id]):
            data = self._storage.read(key)
            if data is not None:
                result.append(dict_to_session(data))
        return result

    def children(self, parent_id: str) -> list[SessionInfo]:
        return [s for s in self.list() if s.parent_id == parent_id]

    def remove(self, session_id: str) -> None:
        """Delete a session with its children, messages and parts."""
        info = self.get(session_id)
        for child in self.children(session_id):
            self.remove(child.id)
        for key in self._storage.list(["message", session_id]):
            self._storage.remove_tree(["part", key[-1]])
        self._storage.remove_tree(["message", session_id])
        self._storage.remove(["session", self.project_id, session_id])
        logger.info("removed session id=%s", session_id)
        self._bus.publish(SessionDeleted(info=session_to_dict(info)))

    def share(self, session_id: str) -> SessionInfo:
        if not self._share_url:
            raise ValueError("Sharing is not configured (share_url is unset)")
        url = f"{self._share_url.rstrip('/')}/s/{session_id[-8:]}"

        def _edit(info: SessionInfo) -> None:
            info.share = ShareInfo(url=url)

        return self.update(session_id, _edit)

    def unshare(self, session_id: str) -> SessionInfo:
        def _edit(info: SessionInfo) -> None:
            info.share = None

        return self.update(session_id, _edit)

    def _write_session(self, info: SessionInfo) -> None:
        data = session_to_dict(info)
        self._storage.write(["session", self.project_id, info.id], data)
        self._bus.publish(SessionUpdated(info=data))

    # ── Messages ──

    def messages(self, session_id: str) -> list[MessageWithParts]:
        """Messages of a session in chronological (id) order."""
        result = []
        for key in self._storage.list(["message", session_id]):
            data = self._storage.read(key)
            if data is None:
                continue
            msg = dict_to_message(data)
            result.append(MessageWithParts(info=msg, parts=self.parts(msg.id)))
        return result

    def get_message(self, session_id: str, message_id: str) -> MessageWithParts:
        data = self._storage.read(["message", session_id, message_id])
        if data is None:
            raise SessionNotFoundError("message", message_id)
        return MessageWithParts(
            info=dict_to_message(data), parts=self.parts(message_id)
        )

    def update_message(self, msg: Message) -> Message:
        data = message_to_dict(msg)
        self._storage.write(["message", msg.session_id, msg.id], data)
        self._bus.publish(MessageUpdated(info=data))
        return msg

    def remove_message(self, session_id: str, message_id: str) -> None:
        self._storage.remove_tree(["part", message_id])
        self._storage.remove(["message", session_id, message_id])
        self._bus.publish(
            MessageRemoved(session_id=session_id, message_id=message_id)
        )

    # ── Parts ──

    def parts(self, message_id: str) -> list[Part]:
        result = []
        for key in self._storage.list(["part", message_id]):
            data = self._storage.read(key)
            if data is not None:
                result.append(dict_to_part(data))
        return result

    def update_part(self, part: Part, delta: str | None = None) -> Part:
        """Insert or replace a part by id."""
        data = part_to_dict(part)
        self._storage.write(["part", part.message_id, part.id], data)
        self._bus.publish(PartUpdated(part=data, delta=delta))
        return part

    def remove_part(self, session_id: str, message_id: str, part_id: str) -> None:
        self._storage.remove(["part", message_id, part_id])
        self._bus.publish(
            PartRemoved(
                session_id=session_id, message_id=message_id, part_id=part_id
            )
        )

    def touch(self, session_id: str) -> None:
        self.update(session_id, lambda info: None)
