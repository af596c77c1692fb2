"""Tests for the polling file watcher."""
from __future__ import annotations

import asyncio
import os

import pytest

from codeagent.adapters.event_bus import EventBus
from codeagent.shared.services.file_watcher import FileWatcher, diff_scans, scan


def test_scan_skips_ignored_directories(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "main.py").write_text("print()")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD").write_text("ref: refs/heads/main")
    (tmp_path / "node_modules" / "pkg").mkdir(parents=True)
    (tmp_path / "node_modules" / "pkg" / "index.js").write_text("")

    assert list(scan(tmp_path)) == [str(tmp_path / "src" / "main.py")]


def test_diff_scans():
    before = {"a": 1.0, "b": 1.0, "c": 1.0}
    after = {"a": 1.0, "b": 2.0, "d": 1.0}

    assert sorted(diff_scans(before, after)) == [
        ("b", "change"),
        ("c", "unlink"),
        ("d", "add"),
    ]


@pytest.mark.asyncio
async def test_watcher_publishes_file_events(tmp_path):
    bus = EventBus()
    queue = bus.open_queue()
    watcher = FileWatcher(str(tmp_path), bus, interval=0.01)
    watcher.start()
    assert watcher.running
    try:
        await asyncio.sleep(0.05)
        target = tmp_path / "new.txt"
        target.write_text("hello")
        event = await asyncio.wait_for(queue.get(), timeout=5)
    finally:
        await watcher.stop()

    assert event.event_type == "file.watcher.updated"
    assert event.file == os.path.join(str(tmp_path), "new.txt")
    assert event.event == "add"
    assert not watcher.running
