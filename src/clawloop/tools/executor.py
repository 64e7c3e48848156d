"""Tool executor: runs an approved tool call under a timeout."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from collections.abc import Iterable
from time import perf_counter

from jsonschema.protocols import Validator

from clawloop.audit import AuditEventType
from clawloop.audit import AuditLogger
from clawloop.config import ToolExecutorConfig
from clawloop.errors import PolicyError
from clawloop.errors import PolicyErrorKind
from clawloop.errors import ToolError
from clawloop.errors import ToolErrorKind
from clawloop.models.schemas import ToolDescriptor
from clawloop.models.schemas import ToolInvocationRequest
from clawloop.models.schemas import ToolResult
from clawloop.observability import increment_counter
from clawloop.observability import record_latency
from clawloop.policy.schemas import PolicyDecision
from clawloop.policy.schemas import PolicyReason
from clawloop.tools.base import build_validator
from clawloop.tools.base import describe
from clawloop.tools.base import Tool
from clawloop.tools.base import validate_arguments

logger = logging.getLogger(__name__)

_MAX_REMEMBERED_DECISIONS = 10_000


class ToolExecutor:
    """Dispatches approved requests to concrete tools.

    Every call must present the ``allow`` decision issued for exactly that
    request.  Decisions are single-use and expire after
    ``max_decision_age_seconds``; nothing is cached between calls.
    """

    def __init__(
        self,
        tools: Iterable[Tool],
        config: ToolExecutorConfig | None = None,
        *,
        audit_logger: AuditLogger | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._tools: dict[str, Tool] = {}
        self._validators: dict[str, Validator] = {}
        for tool in tools:
            if tool.name in self._tools:
                raise ValueError(f"duplicate tool name '{tool.name}'")
            self._tools[tool.name] = tool
            self._validators[tool.name] = build_validator(tool.parameters_schema)
        self._config = config or ToolExecutorConfig()
        self._audit = audit_logger
        self._clock = clock or time.time
        self._consumed: OrderedDict[str, None] = OrderedDict()

    @property
    def descriptors(self) -> list[ToolDescriptor]:
        return [describe(tool) for tool in self._tools.values()]

    def descriptor(self, name: str) -> ToolDescriptor | None:
        tool = self._tools.get(name)
        return describe(tool) if tool is not None else None

    async def execute(
        self, request: ToolInvocationRequest, decision: PolicyDecision
    ) -> ToolResult:
        """Run *request*; tool failures come back as ``ToolResult.error``."""
        self._consume(request, decision)

        start = perf_counter()
        result = await self._run(request)
        result = result.model_copy(update={"duration_ms": (perf_counter() - start) * 1000})

        record_latency(
            operation="tool.execute",
            duration_ms=result.duration_ms,
            ok=result.ok,
        )
        increment_counter(f"tool.{result.error.value if result.error else 'ok'}")
        if self._audit is not None:
            await self._audit.emit(
                AuditEventType.TOOL_EXECUTED,
                tool_name=request.tool_name,
                call_id=request.call_id,
                turn_id=request.turn_id,
                decision_id=decision.decision_id,
                ok=result.ok,
                error=result.error.value if result.error else None,
                duration_ms=round(result.duration_ms, 3),
            )
        return result

    async def _run(self, request: ToolInvocationRequest) -> ToolResult:
        tool = self._tools.get(request.tool_name)
        if tool is None:
            return _error(request, ToolErrorKind.EXECUTION_FAILED, "tool is not registered")

        problems = validate_arguments(
            tool.parameters_schema,
            request.arguments,
            validator=self._validators[tool.name],
        )
        if problems:
            return _error(request, ToolErrorKind.INVALID_ARGS, "; ".join(problems))

        timeout = self._config.timeouts.get(tool.name, self._config.default_timeout_seconds)
        retries = max(self._config.timeout_retries.get(tool.name, 0), 0)

        for attempt in range(retries + 1):
            try:
                output = await asyncio.wait_for(tool.invoke(request.arguments), timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "tool %s call_id=%s timed out after %.1fs (attempt %d/%d)",
                    tool.name,
                    request.call_id,
                    timeout,
                    attempt + 1,
                    retries + 1,
                )
                continue
            except ToolError as exc:
                return _error(request, exc.kind, str(exc))
            except Exception as exc:
                logger.warning(
                    "tool %s call_id=%s failed: %s", tool.name, request.call_id, exc
                )
                return _error(request, ToolErrorKind.EXECUTION_FAILED, str(exc) or type(exc).__name__)
            return ToolResult(
                call_id=request.call_id,
                tool_name=request.tool_name,
                output=output,
            )

        return _error(
            request,
            ToolErrorKind.TIMEOUT,
            f"timed out after {timeout:g}s ({retries + 1} attempt(s))",
        )

    def _consume(self, request: ToolInvocationRequest, decision: PolicyDecision) -> None:
        if not decision.allowed:
            kind = (
                PolicyErrorKind.RATE_LIMITED
                if decision.reason is PolicyReason.rate_limited
                else PolicyErrorKind.DENIED
            )
            raise PolicyError(kind, f"call {request.call_id} was not allowed: {decision.reason.value}")
        if decision.call_id != request.call_id or (
            decision.request_fingerprint != request.fingerprint()
        ):
            raise PolicyError(
                PolicyErrorKind.DENIED,
                f"decision {decision.decision_id} was issued for a different request",
            )
        age = self._clock() - decision.issued_at
        if age > self._config.max_decision_age_seconds:
            raise PolicyError(
                PolicyErrorKind.DENIED,
                f"decision {decision.decision_id} is stale ({age:.1f}s old)",
            )
        if decision.decision_id in self._consumed:
            raise PolicyError(
                PolicyErrorKind.DENIED,
                f"decision {decision.decision_id} was already used",
            )
        self._consumed[decision.decision_id] = None
        while len(self._consumed) > _MAX_REMEMBERED_DECISIONS:
            self._consumed.popitem(last=False)


def _error(request: ToolInvocationRequest, kind: ToolErrorKind, message: str) -> ToolResult:
    return ToolResult(
        call_id=request.call_id,
        tool_name=request.tool_name,
        error=kind,
        error_message=message,
    )
