"""Per-session turn lock and prompt queue.

At most one turn runs per session. A prompt that arrives while a turn is
in flight is queued with a future; the running turn resolves every
queued future with its final assistant message when it finishes.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from codeagent.adapters.event_bus import EventBus
from codeagent.adapters.events import SessionIdle
from codeagent.engine.errors import SessionBusyError, SessionNotFoundError

if TYPE_CHECKING:
    from codeagent.shared.services.session_store import SessionStore

logger = logging.getLogger(__name__)


class AbortHandle:
    """Cancellation token for one running turn.

    Aborting sets the event, cancels every tracked task, and runs the
    registered callbacks (used to kill subprocess groups).
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def track(self, task: asyncio.Task | None = None) -> None:
        """Cancel *task* (default: the current task) when aborted."""
        task = task or asyncio.current_task()
        if task is None:
            return
        if self.aborted:
            task.cancel()
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def untrack(self, task: asyncio.Task | None = None) -> None:
        self._tasks.discard(task or asyncio.current_task())

    def on_abort(self, callback: Callable[[], None]) -> Callable[[], None]:
        if self.aborted:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def abort(self) -> None:
        if self.aborted:
            return
        self._event.set()
        for callback in list(self._callbacks):
            try:
                callback()
            except Exception:
                logger.exception("abort callback failed")
        self._callbacks.clear()
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class QueuedPrompt:
    message_id: str
    future: asyncio.Future = field(repr=False)
    input: Any = field(default=None, repr=False)


class SessionLock:
    """Held while a turn runs. Release exactly once, in a finally block.

    Prompts that arrive while the lock is held queue on the lock itself,
    so a turn only ever resolves the waiters that queued behind it.
    """

    def __init__(
        self, locks: SessionLocks, session_id: str, handle: AbortHandle
    ) -> None:
        self._locks = locks
        self.session_id = session_id
        self.handle = handle
        self.queue: list[QueuedPrompt] = []
        self._released = False
        self._released_event = asyncio.Event()

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self.handle.untrack()
        self._locks._release(self)
        self._released_event.set()

    async def wait_released(self) -> None:
        await self._released_event.wait()

    def queued(self) -> list[QueuedPrompt]:
        return list(self.queue)

    def resolve_queue(self, result: Any) -> None:
        """Resolve and clear every prompt queued behind this turn."""
        items, self.queue = self.queue, []
        for item in items:
            if not item.future.done():
                item.future.set_result(result)

    def fail_queue(self, exc: BaseException) -> None:
        items, self.queue = self.queue, []
        for item in items:
            if item.future.done():
                continue
            if isinstance(exc, asyncio.CancelledError):
                item.future.cancel()
            else:
                item.future.set_exception(exc)


class SessionLocks:
    """Busy markers and FIFO prompt queues for every session of a project."""

    def __init__(self, bus: EventBus, store: SessionStore | None = None) -> None:
        self._bus = bus
        self._store = store
        self._pending: dict[str, SessionLock] = {}
        # Aborted turns that have not unwound yet.
        self._aborted: dict[str, SessionLock] = {}
        self._abort_listeners: list[Callable[[str], None]] = []

    def is_busy(self, session_id: str) -> bool:
        return session_id in self._pending

    def assert_not_busy(self, session_id: str) -> None:
        if self.is_busy(session_id):
            raise SessionBusyError(session_id)

    def lock(self, session_id: str) -> SessionLock:
        if session_id in self._pending:
            raise SessionBusyError(session_id)
        handle = AbortHandle()
        handle.track()
        lock = SessionLock(self, session_id, handle)
        self._pending[session_id] = lock
        logger.debug("locked session=%s", session_id)
        return lock

    def _release(self, lock: SessionLock) -> None:
        if self._pending.get(lock.session_id) is lock:
            del self._pending[lock.session_id]
        if self._aborted.get(lock.session_id) is lock:
            del self._aborted[lock.session_id]
        logger.debug("unlocked session=%s", lock.session_id)
        if self._is_child(lock.session_id):
            return
        self._bus.publish(SessionIdle(session_id=lock.session_id))

    def _is_child(self, session_id: str) -> bool:
        if self._store is None:
            return False
        try:
            return self._store.get(session_id).parent_id is not None
        except SessionNotFoundError:
            return False

    def add_abort_listener(self, listener: Callable[[str], None]) -> None:
        self._abort_listeners.append(listener)

    def abort(self, session_id: str) -> bool:
        lock = self._pending.pop(session_id, None)
        if lock is None:
            return False
        logger.info("aborting session=%s", session_id)
        self._aborted[session_id] = lock
        for listener in self._abort_listeners:
            try:
                listener(session_id)
            except Exception:
                logger.exception("abort listener failed session=%s", session_id)
        lock.handle.abort()
        return True

    async def stop(self, session_id: str) -> bool:
        """Abort the running turn and wait until it has released its lock.

        Also waits on a turn that was aborted earlier and is still unwinding.
        """
        lock = self._pending.get(session_id) or self._aborted.get(session_id)
        if lock is None:
            return False
        self.abort(session_id)
        await lock.wait_released()
        return True

    # ── Queue ──

    def enqueue(
        self, session_id: str, message_id: str, input: Any = None
    ) -> asyncio.Future:
        """Queue behind the turn currently holding *session_id*."""
        lock = self._pending.get(session_id)
        if lock is None:
            raise SessionNotFoundError("running turn", session_id)
        future = asyncio.get_running_loop().create_future()
        lock.queue.append(QueuedPrompt(message_id=message_id, future=future, input=input))
        logger.debug("queued prompt session=%s message=%s", session_id, message_id)
        return future

    def queued(self, session_id: str) -> list[QueuedPrompt]:
        lock = self._pending.get(session_id)
        return lock.queued() if lock is not None else []

    def dispose(self) -> None:
        held = list(self._pending.values()) + list(self._aborted.values())
        for session_id in list(self._pending):
            self.abort(session_id)
        for lock in held:
            lock.fail_queue(asyncio.CancelledError())
