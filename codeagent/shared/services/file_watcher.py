"""Polling file watcher for the project worktree.

Publishes ``file.watcher.updated`` with ``add``, ``change`` or ``unlink``
for every file whose mtime appeared, moved or vanished between scans.
Enabled by CODEAGENT_EXPERIMENTAL_WATCHER for git projects only.
"""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from codeagent.adapters.event_bus import EventBus
from codeagent.adapters.events import FileWatcherUpdated

logger = logging.getLogger(__name__)

IGNORED_DIRS = frozenset(
    {".git", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache"}
)


def scan(root: str | Path) -> dict[str, float]:
    """Map of file path -> mtime under *root*, skipping ignored dirs."""
    result: dict[str, float] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in IGNORED_DIRS]
        for name in filenames:
            path = os.path.join(dirpath, name)
            try:
                result[path] = os.stat(path).st_mtime
            except OSError:
                continue
    return result


def diff_scans(
    before: dict[str, float], after: dict[str, float]
) -> list[tuple[str, str]]:
    changes: list[tuple[str, str]] = []
    for path, mtime in after.items():
        if path not in before:
            changes.append((path, "add"))
        elif before[path] != mtime:
            changes.append((path, "change"))
    for path in before:
        if path not in after:
            changes.append((path, "unlink"))
    return changes


class FileWatcher:
    def __init__(self, root: str, bus: EventBus, interval: float = 1.0) -> None:
        self._root = root
        self._bus = bus
        self._interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("file watcher started root=%s interval=%.1fs", self._root, self._interval)

    async def _loop(self) -> None:
        previous = await asyncio.to_thread(scan, self._root)
        while True:
            await asyncio.sleep(self._interval)
            current = await asyncio.to_thread(scan, self._root)
            for path, event in diff_scans(previous, current):
                logger.debug("file %s %s", event, path)
                self._bus.publish(FileWatcherUpdated(file=path, event=event))
            previous = current

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("file watcher stopped root=%s", self._root)
