"""Subprocess helper that never outlives a cancelled tool call."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from collections.abc import Sequence
from dataclasses import dataclass

from clawloop.errors import ToolError
from clawloop.errors import ToolErrorKind

logger = logging.getLogger(__name__)

_KILL_GRACE_SECONDS = 2.0


@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str


async def run_process(
    argv: Sequence[str],
    *,
    stdin: str | None = None,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
) -> ProcessResult:
    """Run *argv* to completion.

    When the awaiting task is cancelled (the executor's timeout), the child
    is terminated, then killed after a short grace period, and reaped
    before the cancellation propagates.
    """
    if not argv:
        raise ToolError(ToolErrorKind.INVALID_ARGS, "empty command")
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=dict(env) if env is not None else None,
        )
    except OSError as exc:
        raise ToolError(ToolErrorKind.EXECUTION_FAILED, f"cannot start {argv[0]}: {exc}") from exc

    try:
        out, err = await proc.communicate(stdin.encode() if stdin is not None else None)
    except asyncio.CancelledError:
        await _reclaim(proc)
        raise
    return ProcessResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=out.decode("utf-8", errors="replace"),
        stderr=err.decode("utf-8", errors="replace"),
    )


async def _reclaim(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    logger.warning("terminating subprocess pid=%s after cancellation", proc.pid)
    try:
        proc.terminate()
        await asyncio.wait_for(asyncio.shield(proc.wait()), _KILL_GRACE_SECONDS)
    except ProcessLookupError:
        return
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
