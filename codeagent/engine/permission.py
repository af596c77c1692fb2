"""Interactive tool permission requests.

A tool that needs approval calls ``ask``; the request is broadcast as a
``permission.updated`` event and the call suspends until a client
responds with ``once``, ``always`` or ``reject``. ``always`` approvals
are remembered per session and matched with wildcards against later
requests. Pending requests are rejected when their session is aborted.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

from codeagent.adapters.event_bus import EventBus
from codeagent.adapters.events import PermissionReplied, PermissionUpdated
from codeagent.engine import identifier
from codeagent.engine.agents import ALLOW, DENY
from codeagent.engine.errors import PermissionRejectedError, SessionNotFoundError
from codeagent.tools import wildcard

if TYPE_CHECKING:
    from codeagent.engine.plugins import PluginManager

logger = logging.getLogger(__name__)

RESPONSES = ("once", "always", "reject")


@dataclass
class PermissionRequest:
    id: str
    type: str
    title: str
    session_id: str
    message_id: str
    call_id: str | None = None
    pattern: str | list[str] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created: int = field(default_factory=lambda: int(time.time() * 1000))

    def keys(self) -> list[str]:
        if self.pattern is None:
            return [self.type]
        if isinstance(self.pattern, list):
            return list(self.pattern)
        return [self.pattern]


@dataclass
class _Pending:
    request: PermissionRequest
    future: asyncio.Future = field(repr=False)


class PermissionManager:
    """Pending permission requests and per-session "always" approvals."""

    def __init__(self, bus: EventBus, plugins: PluginManager | None = None) -> None:
        self._bus = bus
        self._plugins = plugins
        self._pending: dict[str, dict[str, _Pending]] = {}
        self._approved: dict[str, set[str]] = {}

    def _covered(self, request: PermissionRequest) -> bool:
        approved = self._approved.get(request.session_id)
        if not approved:
            return False
        return all(
            any(wildcard.match(key, pattern) for pattern in approved)
            for key in request.keys()
        )

    def pending(self, session_id: str | None = None) -> list[PermissionRequest]:
        sessions = [session_id] if session_id else list(self._pending)
        return [
            item.request
            for sid in sessions
            for item in self._pending.get(sid, {}).values()
        ]

    async def ask(
        self,
        *,
        type: str,
        title: str,
        session_id: str,
        message_id: str,
        call_id: str | None = None,
        pattern: str | list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Return when approved; raise PermissionRejectedError when rejected."""
        request = PermissionRequest(
            id=identifier.ascending("permission"),
            type=type,
            title=title,
            session_id=session_id,
            message_id=message_id,
            call_id=call_id,
            pattern=pattern,
            metadata=metadata or {},
        )
        if self._covered(request):
            logger.debug("permission covered by always-approval type=%s", type)
            return

        if self._plugins is not None:
            verdict = await self._plugins.trigger(
                "permission.ask", request, {"status": "ask"}
            )
            if verdict["status"] == DENY:
                raise PermissionRejectedError(session_id, type, call_id, request.metadata)
            if verdict["status"] == ALLOW:
                return

        future = asyncio.get_running_loop().create_future()
        self._pending.setdefault(session_id, {})[request.id] = _Pending(request, future)
        logger.info(
            "permission requested id=%s session=%s type=%s title=%s",
            request.id, session_id, type, title,
        )
        self._bus.publish(PermissionUpdated(permission=asdict(request)))
        try:
            await future
        finally:
            self._pending.get(session_id, {}).pop(request.id, None)

    def respond(self, session_id: str, permission_id: str, response: str) -> None:
        if response not in RESPONSES:
            raise ValueError(f"Invalid permission response: {response!r}")
        item = self._pending.get(session_id, {}).get(permission_id)
        if item is None:
            raise SessionNotFoundError("permission", permission_id)
        logger.info(
            "permission response id=%s session=%s response=%s",
            permission_id, session_id, response,
        )
        self._bus.publish(
            PermissionReplied(
                session_id=session_id,
                permission_id=permission_id,
                response=response,
            )
        )
        if response == "reject":
            self._settle_rejected(item)
            return
        if not item.future.done():
            item.future.set_result(None)
        if response == "always":
            self._approved.setdefault(session_id, set()).update(item.request.keys())
            for other in list(self._pending.get(session_id, {}).values()):
                if other is not item and self._covered(other.request):
                    self.respond(session_id, other.request.id, "always")

    def _settle_rejected(self, item: _Pending) -> None:
        if item.future.done():
            return
        request = item.request
        item.future.set_exception(
            PermissionRejectedError(
                request.session_id, request.type, request.call_id, request.metadata
            )
        )

    def reject_session(self, session_id: str) -> None:
        """Reject every pending request of a session (abort listener)."""
        for item in list(self._pending.get(session_id, {}).values()):
            self._settle_rejected(item)

    async def gate(
        self,
        action: str | None,
        *,
        type: str,
        title: str,
        session_id: str,
        message_id: str,
        call_id: str | None = None,
        pattern: str | list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Apply an agent permission action (allow, deny or ask)."""
        if action is None or action == ALLOW:
            return
        if action == DENY:
            raise PermissionRejectedError(session_id, type, call_id, metadata)
        await self.ask(
            type=type,
            title=title,
            session_id=session_id,
            message_id=message_id,
            call_id=call_id,
            pattern=pattern,
            metadata=metadata,
        )
