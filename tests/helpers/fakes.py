"""In-process fakes shared by unit and integration tests."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

from clawloop.models.schemas import AutonomyLevel
from clawloop.models.schemas import ChatMessage
from clawloop.models.schemas import ProviderResponse
from clawloop.models.schemas import ToolCall
from clawloop.tools.base import FunctionTool
from clawloop.tools.base import ToolSafety

HANG = object()


class FakeClock:
    """Manually advanced clock usable wherever a ``clock`` callable is taken."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Drop-in for ``asyncio.sleep`` that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ScriptedProvider:
    """Provider replaying a script of responses, exceptions or ``HANG``.

    The last script entry repeats once the script is exhausted.
    """

    def __init__(self, *script: Any) -> None:
        if not script:
            script = (ProviderResponse(text="ok"),)
        self._script = list(script)
        self.calls: list[list[ChatMessage]] = []
        self.tool_schemas: list[list[dict[str, Any]]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def complete(
        self,
        prompt: Sequence[ChatMessage],
        tool_schema: Sequence[dict[str, Any]],
        *,
        timeout_seconds: float,
    ) -> ProviderResponse:
        index = min(len(self.calls), len(self._script) - 1)
        self.calls.append(list(prompt))
        self.tool_schemas.append(list(tool_schema))
        step = self._script[index]
        if step is HANG:
            await asyncio.Event().wait()
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, str):
            return ProviderResponse(text=step)
        return step


def tool_call_response(name: str, arguments: dict | None = None, *, call_id: str | None = None) -> ProviderResponse:
    return ProviderResponse(
        tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments or {})]
    )


def lookup_tool(calls: list[dict] | None = None) -> FunctionTool:
    """Read-only, parallel-safe tool echoing its ``key`` argument."""

    async def _lookup(arguments: dict) -> str:
        if calls is not None:
            calls.append(arguments)
        return f"value-of-{arguments['key']}"

    return FunctionTool(
        "lookup",
        _lookup,
        description="Look up a value by key.",
        parameters_schema={
            "type": "object",
            "properties": {"key": {"type": "string"}},
            "required": ["key"],
        },
        safety=ToolSafety.read_only_tool(),
    )


def write_tool(calls: list[dict] | None = None) -> FunctionTool:
    """Side-effecting tool that needs ``full`` autonomy."""

    async def _write(arguments: dict) -> str:
        if calls is not None:
            calls.append(arguments)
        return f"wrote {arguments.get('path')}"

    return FunctionTool(
        "write_file",
        _write,
        description="Write content to a file.",
        parameters_schema={
            "type": "object",
            "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
            "required": ["path"],
        },
        safety=ToolSafety(read_only=False, required_level=AutonomyLevel.full),
    )
