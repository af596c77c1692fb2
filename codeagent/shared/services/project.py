"""Project discovery: map a working directory to a stable project id.

For git repos the id is derived from git-common-dir, so every worktree of
a repository shares sessions and snapshot storage. Non-git directories
map to the shared ``global`` project and have no snapshots.
"""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

GLOBAL_PROJECT_ID = "global"


@dataclass
class ProjectInfo:
    id: str
    worktree: str
    vcs: str | None = None

    @property
    def is_git(self) -> bool:
        return self.vcs == "git"


def _git_output(args: list[str], cwd: Path) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("git %s failed in %s: %s", args[0], cwd, exc)
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def get_git_common_dir(cwd: Path) -> Path | None:
    out = _git_output(["rev-parse", "--path-format=absolute", "--git-common-dir"], cwd)
    return Path(out) if out else None


def get_worktree_root(cwd: Path) -> Path | None:
    out = _git_output(["rev-parse", "--show-toplevel"], cwd)
    return Path(out) if out else None


def discover_project(directory: Path) -> ProjectInfo:
    """Resolve the project that owns *directory*."""
    directory = Path(directory).resolve()
    common_dir = get_git_common_dir(directory)
    worktree = get_worktree_root(directory)
    if common_dir is None or worktree is None:
        logger.debug("no git repository at %s, using global project", directory)
        return ProjectInfo(id=GLOBAL_PROJECT_ID, worktree="/", vcs=None)
    project_id = "-".join(common_dir.resolve().parts[1:])
    return ProjectInfo(id=project_id, worktree=str(worktree), vcs="git")
