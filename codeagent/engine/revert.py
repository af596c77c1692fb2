"""Session revert: roll the working tree back to a message or part.

A revert is staged, not destructive: ``revert`` restores files and
records ``session.revert``; the messages after the revert point are only
deleted by ``cleanup``, which runs when the next prompt arrives. Until
then ``unrevert`` puts the working tree back as it was.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from codeagent.shared.models.message import PatchPart, UserMessage
from codeagent.shared.models.session import RevertInfo, SessionInfo
from codeagent.shared.services.snapshot import Patch

if TYPE_CHECKING:
    from .instance import ProjectContext

logger = logging.getLogger(__name__)

# Part kinds that make a partially reverted message worth keeping.
_USEFUL_PARTS = ("text", "tool")


class SessionRevert:
    def __init__(self, ctx: ProjectContext) -> None:
        self._ctx = ctx

    async def revert(
        self, session_id: str, message_id: str, part_id: str | None = None
    ) -> SessionInfo:
        ctx = self._ctx
        ctx.locks.assert_not_busy(session_id)
        messages = ctx.store.messages(session_id)
        last_user: UserMessage | None = None
        point: RevertInfo | None = None
        patches: list[Patch] = []

        for item in messages:
            if isinstance(item.info, UserMessage):
                last_user = item.info
            remaining = []
            for part in item.parts:
                if point is not None:
                    if isinstance(part, PatchPart):
                        patches.append(Patch(hash=part.hash, files=list(part.files)))
                    continue
                if (item.info.id == message_id and part_id is None) or part.id == part_id:
                    # Reverting every useful part of a message reverts the
                    # whole turn, back to the user message that started it.
                    keep_part = part_id if any(
                        p.type in _USEFUL_PARTS for p in remaining
                    ) else None
                    if keep_part is None and last_user is not None:
                        point = RevertInfo(message_id=last_user.id)
                    else:
                        point = RevertInfo(message_id=item.info.id, part_id=keep_part)
                remaining.append(part)

        session = ctx.store.get(session_id)
        if point is None:
            logger.info("revert point not found session=%s message=%s", session_id, message_id)
            return session

        point.snapshot = (
            session.revert.snapshot if session.revert is not None else None
        ) or await ctx.snapshot.track()
        await ctx.snapshot.revert(patches)
        if point.snapshot:
            point.diff = await ctx.snapshot.diff(point.snapshot)
        logger.info(
            "reverted session=%s message=%s part=%s patches=%d",
            session_id, point.message_id, point.part_id, len(patches),
        )

        def _edit(info: SessionInfo) -> None:
            info.revert = point

        return ctx.store.update(session_id, _edit)

    async def unrevert(self, session_id: str) -> SessionInfo:
        ctx = self._ctx
        ctx.locks.assert_not_busy(session_id)
        session = ctx.store.get(session_id)
        if session.revert is None:
            return session
        if session.revert.snapshot:
            await ctx.snapshot.restore(session.revert.snapshot)
        logger.info("unreverted session=%s", session_id)

        def _edit(info: SessionInfo) -> None:
            info.revert = None

        return ctx.store.update(session_id, _edit)

    async def cleanup(self, session: SessionInfo) -> None:
        """Drop everything at or after the revert point and clear it."""
        revert = session.revert
        if revert is None:
            return
        store = self._ctx.store
        messages = store.messages(session.id)
        removing = False
        for item in messages:
            if item.info.id == revert.message_id:
                if revert.part_id is None:
                    removing = True
                else:
                    dropping = False
                    for part in item.parts:
                        dropping = dropping or part.id == revert.part_id
                        if dropping:
                            store.remove_part(session.id, item.info.id, part.id)
                    removing = True
                    continue
            if removing:
                store.remove_message(session.id, item.info.id)
        logger.info("revert cleanup session=%s message=%s", session.id, revert.message_id)

        def _edit(info: SessionInfo) -> None:
            info.revert = None

        store.update(session.id, _edit)
