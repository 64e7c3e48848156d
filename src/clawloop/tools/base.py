"""Tool capability contract.

Concrete tools (shell, files, browser, ...) live outside the core; they
only need to satisfy ``Tool``.  ``FunctionTool`` adapts a plain coroutine
function for small built-ins and tests.
"""

from __future__ import annotations

from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from typing import Protocol
from typing import runtime_checkable

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from jsonschema.protocols import Validator
from jsonschema.validators import validator_for

from clawloop.models.schemas import AutonomyLevel
from clawloop.models.schemas import ToolDescriptor


@dataclass(frozen=True)
class ToolSafety:
    """Safety metadata declared by every tool."""

    read_only: bool = False
    required_level: AutonomyLevel = AutonomyLevel.full
    parallel_safe: bool = False

    @classmethod
    def read_only_tool(cls, *, parallel_safe: bool = True) -> ToolSafety:
        return cls(
            read_only=True,
            required_level=AutonomyLevel.read_only,
            parallel_safe=parallel_safe,
        )


@runtime_checkable
class Tool(Protocol):
    name: str
    description: str
    parameters_schema: dict[str, Any]
    safety: ToolSafety

    async def invoke(self, arguments: dict[str, Any]) -> str:
        """Run the tool; raise ``ToolError`` on failure."""


def describe(tool: Tool) -> ToolDescriptor:
    return ToolDescriptor(
        name=tool.name,
        description=tool.description,
        parameters_schema=tool.parameters_schema,
        read_only=tool.safety.read_only,
        parallel_safe=tool.safety.parallel_safe,
        required_level=tool.safety.required_level,
    )


class FunctionTool:
    """``Tool`` backed by an async callable taking the argument dict."""

    def __init__(
        self,
        name: str,
        func: Callable[[dict[str, Any]], Awaitable[Any]],
        *,
        description: str = "",
        parameters_schema: dict[str, Any] | None = None,
        safety: ToolSafety | None = None,
    ) -> None:
        self.name = name
        self.description = description
        self.parameters_schema = parameters_schema or {"type": "object", "properties": {}}
        self.safety = safety or ToolSafety()
        self._func = func

    async def invoke(self, arguments: dict[str, Any]) -> str:
        result = await self._func(arguments)
        return result if isinstance(result, str) else str(result)


# ---------------------------------------------------------------------------
# Argument validation
# ---------------------------------------------------------------------------


def build_validator(schema: dict[str, Any]) -> Validator:
    """JSON-schema validator for a tool's parameters.

    The draft follows ``$schema`` when present, 2020-12 otherwise.
    Raises ``ValueError`` for a malformed schema.
    """
    cls = validator_for(schema, default=Draft202012Validator)
    try:
        cls.check_schema(schema)
    except SchemaError as exc:
        raise ValueError(f"invalid parameters schema: {exc.message}") from exc
    return cls(schema)


def validate_arguments(
    schema: dict[str, Any],
    arguments: dict[str, Any],
    *,
    validator: Validator | None = None,
) -> list[str]:
    """Return human-readable problems with *arguments*; empty when valid."""
    if not isinstance(arguments, dict):
        return ["arguments must be an object"]
    validator = validator or build_validator(schema)
    problems: list[str] = []
    errors = sorted(
        validator.iter_errors(arguments),
        key=lambda err: [str(part) for part in err.absolute_path],
    )
    for error in errors:
        path = ".".join(str(part) for part in error.absolute_path)
        problems.append(f"argument '{path}': {error.message}" if path else error.message)
    return problems
