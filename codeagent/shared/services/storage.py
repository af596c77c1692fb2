"""Key-addressed JSON document store.

Layout:
    <data>/storage/session/<project_id>/<session_id>.json
    <data>/storage/message/<session_id>/<message_id>.json
    <data>/storage/part/<message_id>/<part_id>.json

Keys are lists of path segments. Every write goes to a temp file in the
target directory and is renamed into place, so readers never observe a
partially written document.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class Storage:
    """JSON documents on disk addressed by ``[segment, ...]`` keys."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: list[str]) -> Path:
        if not key or any(not s or "/" in s or s in (".", "..") for s in key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.root.joinpath(*key[:-1], key[-1] + ".json")

    def write(self, key: list[str], data: dict[str, Any]) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        finally:
            if tmp_path.exists():
                try:
                    tmp_path.unlink()
                except OSError:
                    pass

    def read(self, key: list[str]) -> dict[str, Any] | None:
        path = self._path(key)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            logger.warning("Corrupt storage document: %s", path)
            return None

    def remove(self, key: list[str]) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def remove_tree(self, prefix: list[str]) -> None:
        """Remove every document under *prefix*."""
        directory = self.root.joinpath(*prefix)
        if directory.is_dir():
            shutil.rmtree(directory, ignore_errors=True)

    def list(self, prefix: list[str]) -> list[list[str]]:
        """Keys directly under *prefix*, sorted by last segment."""
        directory = self.root.joinpath(*prefix)
        if not directory.is_dir():
            return []
        names = sorted(
            p.stem for p in directory.glob("*.json") if not p.name.startswith(".")
        )
        return [prefix + [name] for name in names]
