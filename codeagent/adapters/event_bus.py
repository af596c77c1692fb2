"""Per-project event bus.

Publishing is synchronous and never blocks the engine: each subscriber
queue receives the event with ``put_nowait`` (slow consumers drop events
with a warning), and callback subscribers are invoked inline. Callbacks
that return an awaitable are scheduled as tasks.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

from codeagent.adapters.events import BusEvent

logger = logging.getLogger(__name__)

Subscriber = Callable[[BusEvent], Any]


class EventBus:
    """Fan-out of BusEvents to queues and callbacks."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._maxsize = maxsize
        self._queues: list[asyncio.Queue[BusEvent]] = []
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._wildcard: list[Subscriber] = []
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    def publish(self, event: BusEvent) -> None:
        if self._closed:
            return
        logger.debug("publish type=%s", event.event_type)
        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "EventBus queue full, dropping: %s (queue size: %d)",
                    event.event_type,
                    queue.qsize(),
                )
        for callback in self._subscribers.get(event.event_type, []) + self._wildcard:
            self._invoke(callback, event)

    def _invoke(self, callback: Subscriber, event: BusEvent) -> None:
        try:
            result = callback(event)
        except Exception:
            logger.exception("EventBus subscriber failed for %s", event.event_type)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("EventBus async subscriber failed: %s", exc)

    def subscribe(
        self, event_type: str, callback: Subscriber
    ) -> Callable[[], None]:
        """Subscribe to one event type. Returns an unsubscribe function."""
        self._subscribers.setdefault(event_type, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def subscribe_all(self, callback: Subscriber) -> Callable[[], None]:
        self._wildcard.append(callback)

        def unsubscribe() -> None:
            if callback in self._wildcard:
                self._wildcard.remove(callback)

        return unsubscribe

    def open_queue(self) -> asyncio.Queue[BusEvent]:
        queue: asyncio.Queue[BusEvent] = asyncio.Queue(maxsize=self._maxsize)
        self._queues.append(queue)
        return queue

    def close_queue(self, queue: asyncio.Queue[BusEvent]) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    async def consume(self) -> AsyncIterator[BusEvent]:
        """Yield events as they arrive. Stops on close()."""
        queue = self.open_queue()
        try:
            while not self._closed:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=0.5)
                    yield event
                except asyncio.TimeoutError:
                    continue
        finally:
            self.close_queue(queue)

    def close(self) -> None:
        """Stop publishing permanently."""
        self._closed = True
        self._queues.clear()
        self._subscribers.clear()
        self._wildcard.clear()
