"""Snapshot service: checkpoint and roll back the working tree.

Checkpoints are git tree objects written into a private git directory
(``<data>/snapshot/<project_id>``) that uses the project worktree as its
work tree, so the user's own repository, index and history are never
touched. Git failures are logged and degrade to empty results; nothing
in this module raises on a git error.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from codeagent.shared.services.project import ProjectInfo

logger = logging.getLogger(__name__)

_GIT_TIMEOUT_SECONDS = 120


@dataclass
class Patch:
    hash: str
    files: list[str] = field(default_factory=list)


class SnapshotService:
    """Track, diff, restore and revert working-tree checkpoints."""

    def __init__(
        self,
        project: ProjectInfo,
        snapshot_root: Path,
        directory: str | None = None,
        enabled: bool = True,
    ) -> None:
        self._project = project
        self._root = Path(snapshot_root)
        self._git_dir = self._root / project.id
        self._worktree = project.worktree
        self._directory = directory or project.worktree
        self.enabled = enabled

    @property
    def git_dir(self) -> Path:
        return self._git_dir

    def _git(
        self, *args: str, cwd: str | None = None
    ) -> subprocess.CompletedProcess | None:
        """Run git against the private snapshot repository."""
        cmd = [
            "git",
            f"--git-dir={self._git_dir}",
            f"--work-tree={self._worktree}",
            *args,
        ]
        try:
            return subprocess.run(
                cmd,
                cwd=cwd or self._directory,
                capture_output=True,
                text=True,
                timeout=_GIT_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("git %s failed: %s", args[0], exc)
            return None

    def _ensure_repo(self) -> None:
        if (self._git_dir / "HEAD").exists():
            return
        self._git_dir.mkdir(parents=True, exist_ok=True)
        env = {
            **os.environ,
            "GIT_DIR": str(self._git_dir),
            "GIT_WORK_TREE": self._worktree,
        }
        try:
            subprocess.run(
                ["git", "init", "--quiet"],
                cwd=self._worktree,
                env=env,
                capture_output=True,
                text=True,
                timeout=_GIT_TIMEOUT_SECONDS,
            )
            logger.info("snapshot repository initialized at %s", self._git_dir)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("snapshot git init failed: %s", exc)

    # ── Sync implementations ──

    def track_sync(self) -> str | None:
        if not self._project.is_git or not self.enabled:
            return None
        self._ensure_repo()
        self._git("add", ".")
        result = self._git("write-tree")
        if result is None or result.returncode != 0:
            logger.warning(
                "snapshot write-tree failed: %s",
                result.stderr.strip() if result else "git unavailable",
            )
            return None
        tree = result.stdout.strip()
        logger.info("tracking hash=%s cwd=%s", tree, self._directory)
        return tree

    def patch_sync(self, tree: str) -> Patch:
        self._git("add", ".")
        result = self._git("diff", "--name-only", tree, "--", ".")
        if result is None or result.returncode != 0:
            logger.warning(
                "failed to get diff hash=%s exit=%s",
                tree,
                result.returncode if result else None,
            )
            return Patch(hash=tree, files=[])
        files = [
            str(Path(self._worktree) / line.strip())
            for line in result.stdout.strip().splitlines()
            if line.strip()
        ]
        return Patch(hash=tree, files=files)

    def restore_sync(self, tree: str) -> bool:
        logger.info("restore snapshot=%s", tree)
        result = self._git("read-tree", tree, cwd=self._worktree)
        if result is not None and result.returncode == 0:
            result = self._git("checkout-index", "-a", "-f", cwd=self._worktree)
        if result is None or result.returncode != 0:
            logger.error(
                "failed to restore snapshot=%s stderr=%s",
                tree,
                result.stderr.strip() if result else "git unavailable",
            )
            return False
        return True

    def revert_sync(self, patches: list[Patch]) -> None:
        seen: set[str] = set()
        for item in patches:
            for file in item.files:
                if file in seen:
                    continue
                logger.info("reverting file=%s hash=%s", file, item.hash)
                result = self._git("checkout", item.hash, "--", file, cwd=self._worktree)
                if result is None or result.returncode != 0:
                    logger.info("file not found in history, deleting file=%s", file)
                    try:
                        Path(file).unlink()
                    except OSError:
                        pass
                seen.add(file)

    def diff_sync(self, tree: str) -> str:
        self._git("add", ".")
        result = self._git("diff", tree, "--", ".", cwd=self._worktree)
        if result is None or result.returncode != 0:
            logger.warning(
                "failed to get diff hash=%s stderr=%s",
                tree,
                result.stderr.strip() if result else "git unavailable",
            )
            return ""
        return result.stdout.strip()

    # ── Async API (git runs in a worker thread) ──

    async def track(self) -> str | None:
        return await asyncio.to_thread(self.track_sync)

    async def patch(self, tree: str) -> Patch:
        return await asyncio.to_thread(self.patch_sync, tree)

    async def restore(self, tree: str) -> bool:
        return await asyncio.to_thread(self.restore_sync, tree)

    async def revert(self, patches: list[Patch]) -> None:
        await asyncio.to_thread(self.revert_sync, patches)

    async def diff(self, tree: str) -> str:
        return await asyncio.to_thread(self.diff_sync, tree)


def cleanup_stale(data_dir: Path) -> int:
    """Remove ``snapshot`` directories left by older data layouts.

    The live location is ``<data>/snapshot``; any other directory named
    ``snapshot`` below the data dir is stale. Returns how many were removed.
    """
    data_dir = Path(data_dir)
    live = data_dir / "snapshot"
    removed = 0
    if not data_dir.is_dir():
        return 0
    for path in list(data_dir.rglob("snapshot")):
        if path == live or live in path.parents or not path.is_dir():
            continue
        shutil.rmtree(path, ignore_errors=True)
        logger.info("removed stale snapshot dir %s", path)
        removed += 1
    return removed
