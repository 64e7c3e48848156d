"""Unit tests for the cancellation-safe subprocess helper."""

from __future__ import annotations

import asyncio
import os
import sys

import pytest

from clawloop.errors import ToolError
from clawloop.errors import ToolErrorKind
from clawloop.tools import run_process

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process semantics")


class TestRunProcess:
    async def test_captures_output(self):
        result = await run_process([sys.executable, "-c", "import sys; print('hi'); sys.exit(3)"])
        assert result.returncode == 3
        assert result.stdout.strip() == "hi"

    async def test_passes_stdin(self):
        result = await run_process(
            [sys.executable, "-c", "import sys; print(sys.stdin.read().upper())"],
            stdin="abc",
        )
        assert result.stdout.strip() == "ABC"

    async def test_missing_binary_is_execution_failed(self):
        with pytest.raises(ToolError) as exc_info:
            await run_process(["/nonexistent/clawloop-binary"])
        assert exc_info.value.kind is ToolErrorKind.EXECUTION_FAILED

    async def test_empty_argv_is_invalid(self):
        with pytest.raises(ToolError) as exc_info:
            await run_process([])
        assert exc_info.value.kind is ToolErrorKind.INVALID_ARGS

    async def test_cancellation_reaps_child(self, tmp_path):
        pid_file = tmp_path / "pid"
        script = (
            "import os, time, pathlib; "
            f"pathlib.Path({str(pid_file)!r}).write_text(str(os.getpid())); "
            "time.sleep(30)"
        )
        task = asyncio.create_task(run_process([sys.executable, "-c", script]))
        for _ in range(200):
            if pid_file.exists() and pid_file.read_text():
                break
            await asyncio.sleep(0.02)
        pid = int(pid_file.read_text())

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)
