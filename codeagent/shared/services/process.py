"""Process-group shell execution with streamed output.

Commands run in their own session (``start_new_session=True``) so that a
timeout or cancellation can signal the whole group, including anything
the command spawned.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], Awaitable[None] | None]

_TERM_GRACE_SECONDS = 1.0
_READ_CHUNK = 4096


@dataclass
class ShellResult:
    output: str
    exit_code: int | None
    timed_out: bool = False


def default_shell() -> str | None:
    """User's $SHELL, falling back to bash/sh on PATH."""
    shell = os.environ.get("SHELL")
    if shell and os.path.exists(shell):
        return shell
    return shutil.which("bash") or shutil.which("sh")


def signal_process_group(
    proc: asyncio.subprocess.Process, sig: signal.Signals
) -> bool:
    """Send a signal to the process group when available."""
    if proc.returncode is not None:
        return False
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, sig)
        else:
            proc.send_signal(sig)
        return True
    except ProcessLookupError:
        return False


async def stop_process_group(proc: asyncio.subprocess.Process) -> None:
    """SIGTERM the group, then SIGKILL if it has not exited after a grace period."""
    if not signal_process_group(proc, signal.SIGTERM):
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=_TERM_GRACE_SECONDS)
    except asyncio.TimeoutError:
        logger.info("process group pid=%s ignored SIGTERM, killing", proc.pid)
        signal_process_group(proc, signal.SIGKILL)
        await proc.wait()


async def run_shell(
    command: str,
    cwd: str,
    on_output: OutputCallback | None = None,
    timeout: float | None = None,
    shell: str | None = None,
) -> ShellResult:
    """Run *command* in a new process group, streaming combined output.

    Cancellation of the calling task stops the process group and then
    re-raises CancelledError.
    """
    proc = await asyncio.create_subprocess_shell(
        command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        cwd=cwd,
        start_new_session=True,
        executable=shell or default_shell(),
    )
    logger.info("spawned shell pid=%s cwd=%s command=%s", proc.pid, cwd, command[:180])
    chunks: list[str] = []

    async def _pump() -> None:
        assert proc.stdout is not None
        while True:
            chunk = await proc.stdout.read(_READ_CHUNK)
            if not chunk:
                break
            text = chunk.decode(errors="replace")
            chunks.append(text)
            if on_output is not None:
                result = on_output("".join(chunks))
                if asyncio.iscoroutine(result):
                    await result

    timed_out = False
    try:
        await asyncio.wait_for(
            asyncio.gather(_pump(), proc.wait()),
            timeout=timeout if timeout and timeout > 0 else None,
        )
    except asyncio.TimeoutError:
        timed_out = True
        logger.warning("shell command timed out pid=%s after %ss", proc.pid, timeout)
        await stop_process_group(proc)
    except asyncio.CancelledError:
        logger.info("shell command cancelled pid=%s", proc.pid)
        await asyncio.shield(stop_process_group(proc))
        raise
    return ShellResult(
        output="".join(chunks), exit_code=proc.returncode, timed_out=timed_out
    )
