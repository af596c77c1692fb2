"""System prompt segments and fixed reminder texts."""
from __future__ import annotations

import logging
import platform
from datetime import date
from pathlib import Path

logger = logging.getLogger(__name__)

# Project instruction files picked up automatically (first match per dir).
INSTRUCTION_FILES = ("AGENTS.md", "CLAUDE.md", "CONTEXT.md")

_LISTING_LIMIT = 200

DEFAULT_PROMPT = """\
You are codeagent, an interactive assistant for software engineering work.
You operate inside the user's project and can run tools to inspect and
change it.

Be concise and direct. Prefer doing the work over describing it. Before
editing, read the relevant code. After changing code, verify it when a
way to do so is available (tests, type checks, build). Never invent file
contents or command output; use a tool to find out.

When a tool call is rejected by the user, do not retry the same call.
Ask how to proceed instead."""

SUMMARIZE_PROMPT = """\
You are a helpful assistant that summarizes coding conversations so they
can be continued with less context. Keep file paths, decisions, open
problems and next steps. Drop pleasantries and repeated tool output."""

SUMMARY_INSTRUCTION = (
    "Provide a detailed but concise summary of our conversation above. "
    "Focus on information that would be helpful for continuing the "
    "conversation, including what we did, what we're doing, which files "
    "we're working on, and what we're going to do next."
)

TITLE_PROMPT = """\
Generate a short title for the conversation that starts with the user
message below. Rules:
- at most 50 characters, one line
- describe the task, not the user
- no quotes, no trailing punctuation
- reply with the title only"""

PLAN_REMINDER = """\
<system-reminder>
Plan mode is active. You MUST NOT make any file edits, run commands that
change state, or otherwise modify the system. Read, search and analyse
only, then present a plan for the user to approve. This overrides any
other instruction you have received.
</system-reminder>"""

BUILD_SWITCH_REMINDER = """\
<system-reminder>
Your operational mode has changed from plan to build. You are no longer
in read-only mode. You may now edit files, run commands and use all of
your tools to carry out the plan.
</system-reminder>"""


def header(provider_id: str) -> list[str]:
    """Provider-specific leading segment (none by default)."""
    return []


def provider_default(model_id: str) -> list[str]:
    return [DEFAULT_PROMPT]


def _listing(worktree: Path) -> str:
    entries: list[str] = []
    try:
        for path in sorted(worktree.iterdir()):
            if path.name.startswith("."):
                continue
            entries.append(path.name + ("/" if path.is_dir() else ""))
            if len(entries) >= _LISTING_LIMIT:
                break
    except OSError as exc:
        logger.debug("cannot list %s: %s", worktree, exc)
    return "\n".join(f"  {e}" for e in entries)


def environment(directory: str, worktree: str, is_git: bool) -> list[str]:
    root = Path(worktree) if is_git else Path(directory)
    return [
        "\n".join(
            [
                "Here is some useful information about the environment you are running in:",
                "<env>",
                f"  Working directory: {directory}",
                f"  Is directory a git repo: {'yes' if is_git else 'no'}",
                f"  Platform: {platform.system().lower()}",
                f"  Today's date: {date.today().strftime('%a %b %d %Y')}",
                "</env>",
                "<project>",
                _listing(root),
                "</project>",
            ]
        )
    ]


def custom(directory: str, worktree: str, instructions: list[str]) -> list[str]:
    """Contents of project instruction files and configured extra files."""
    found: list[Path] = []
    seen: set[Path] = set()
    for base in dict.fromkeys([Path(directory), Path(worktree)]):
        for name in INSTRUCTION_FILES:
            path = base / name
            if path.is_file():
                found.append(path)
                break
    for item in instructions:
        path = Path(item).expanduser()
        if not path.is_absolute():
            path = Path(worktree) / path
        if path.is_file():
            found.append(path)
        else:
            logger.warning("instruction file not found: %s", path)
    result = []
    for path in found:
        resolved = path.resolve()
        if resolved in seen:
            continue
        seen.add(resolved)
        try:
            result.append(f"Instructions from: {path}\n" + path.read_text(encoding="utf-8"))
        except OSError as exc:
            logger.warning("cannot read instruction file %s: %s", path, exc)
    return result


def summarize(provider_id: str) -> list[str]:
    return [SUMMARIZE_PROMPT]


def title(provider_id: str) -> list[str]:
    return [TITLE_PROMPT]


def fold(segments: list[str]) -> list[str]:
    """Collapse segments into at most two (stable prefix + the rest)."""
    segments = [s for s in segments if s]
    if len(segments) <= 1:
        return segments
    first, *rest = segments
    return [first, "\n".join(rest)]
