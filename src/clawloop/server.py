"""Clawloop: FastMCP channel exposing the agent runtime.

Call ``configure(...)`` before using the tools; ``shutdown()`` stops the
hygiene loop and closes backend clients.
"""

from __future__ import annotations

from collections.abc import Iterable
from time import perf_counter

from fastmcp import FastMCP

from clawloop.auth import create_channel_auth
from clawloop.auth import is_sender_allowed
from clawloop.config import RuntimeConfig
from clawloop.engine.llm_adapters import Provider
from clawloop.errors import MemoryStoreError
from clawloop.errors import PolicyError
from clawloop.memory.store import MemoryStore
from clawloop.models.channel import HygieneRunResult
from clawloop.models.channel import MemoryHit
from clawloop.models.channel import PendingCall
from clawloop.models.channel import ProviderHealthResult
from clawloop.models.channel import RuntimeMetricsResult
from clawloop.models.channel import SearchMemoryResult
from clawloop.models.channel import SubmitMessageResult
from clawloop.observability import counters_snapshot
from clawloop.observability import latency_metrics_snapshot
from clawloop.observability import record_latency
from clawloop.runtime import AgentRuntime
from clawloop.runtime import build_runtime
from clawloop.runtime import ChannelInput
from clawloop.runtime import TurnOutcome
from clawloop.runtime import TurnState
from clawloop.tools.base import Tool

mcp = FastMCP("Clawloop", auth=create_channel_auth())

_MAX_SEARCH_LIMIT = 50

# ---------------------------------------------------------------------------
# Runtime instance (set via configure())
# ---------------------------------------------------------------------------

_runtime: AgentRuntime | None = None


async def configure(
    config: RuntimeConfig | None = None,
    *,
    tools: Iterable[Tool] = (),
    providers: dict[str, Provider] | None = None,
    store: MemoryStore | None = None,
    start_hygiene: bool = True,
) -> AgentRuntime:
    """Build and start the runtime.

    Must be called before the MCP tools can function.  Reconfiguring
    shuts the previous runtime down first.
    """
    global _runtime
    if _runtime is not None:
        await shutdown()
    runtime = build_runtime(config, tools, store=store, providers=providers)
    if start_hygiene:
        await runtime.start()
    else:
        await runtime.gateway.restore_health()
    _runtime = runtime
    return runtime


async def shutdown() -> None:
    """Stop background work and release backend clients."""
    global _runtime
    runtime, _runtime = _runtime, None
    if runtime is None:
        return
    await runtime.stop()
    close = getattr(runtime.store, "close", None)
    if close is not None:
        try:
            await close()
        except RuntimeError:
            # Tests may reconfigure across event loops.
            pass


def _get_runtime() -> AgentRuntime:
    """Return the runtime instance or raise."""
    if _runtime is None:
        raise RuntimeError("Runtime not configured. Call configure() first.")
    return _runtime


def _submit_result(outcome: TurnOutcome) -> SubmitMessageResult:
    return SubmitMessageResult(
        status="done" if outcome.state is TurnState.done else "failed",
        turn_id=outcome.turn_id,
        conversation_id=outcome.conversation_id,
        response=outcome.response,
        provider_id=outcome.provider_id,
        iterations=outcome.iterations,
        pending_confirmations=[
            PendingCall(
                call_id=p.call_id,
                tool_name=p.tool_name,
                arguments=p.arguments,
                reason=p.reason,
            )
            for p in outcome.pending_confirmations
        ],
        error_code=outcome.error.value if outcome.error else None,
        message=outcome.error_message,
    )


def _rejected(error_code: str, message: str, *, conversation_id: str = "") -> SubmitMessageResult:
    return SubmitMessageResult(
        status="rejected",
        conversation_id=conversation_id,
        error_code=error_code,
        message=message,
    )


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool
async def submit_message(
    content: str,
    conversation_id: str = "default",
    sender: str | None = None,
) -> SubmitMessageResult:
    """Send a user message to the agent and wait for its reply.

    Args:
        content: The user message.
        conversation_id: Conversation the message belongs to.
        sender: Channel-specific sender identity, checked against the allowlist.
    """
    start = perf_counter()
    ok = False
    try:
        runtime = _get_runtime()
        if not content.strip():
            return _rejected(
                "validation_error",
                "content must not be empty",
                conversation_id=conversation_id,
            )
        if not is_sender_allowed(sender):
            return _rejected(
                "sender_not_allowed",
                "sender is not on the allowlist",
                conversation_id=conversation_id,
            )
        outcome = await runtime.submit(
            ChannelInput(content=content, conversation_id=conversation_id, sender=sender)
        )
        ok = outcome.state is TurnState.done
        return _submit_result(outcome)
    finally:
        record_latency(
            operation="mcp.submit_message",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def confirm_tool_call(
    conversation_id: str,
    call_id: str,
    sender: str | None = None,
) -> SubmitMessageResult:
    """Approve a tool call the agent asked confirmation for.

    Args:
        conversation_id: Conversation holding the pending call.
        call_id: Id of the pending call, as returned by ``submit_message``.
        sender: Approving sender; must be allowlisted and match the requester.
    """
    start = perf_counter()
    ok = False
    try:
        runtime = _get_runtime()
        if not is_sender_allowed(sender):
            return _rejected(
                "sender_not_allowed",
                "sender is not on the allowlist",
                conversation_id=conversation_id,
            )
        try:
            outcome = await runtime.confirm(conversation_id, call_id, sender=sender)
        except KeyError:
            return _rejected(
                "not_found",
                f"no pending confirmation for call '{call_id}'",
                conversation_id=conversation_id,
            )
        except PolicyError as exc:
            return _rejected("sender_not_allowed", str(exc), conversation_id=conversation_id)
        ok = outcome.state is TurnState.done
        return _submit_result(outcome)
    finally:
        record_latency(
            operation="mcp.confirm_tool_call",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def search_memory(query: str, limit: int = 5) -> SearchMemoryResult:
    """Search long-term memory with the hybrid retriever.

    Args:
        query: Natural language query.
        limit: Max records returned (1-50).
    """
    start = perf_counter()
    ok = False
    try:
        runtime = _get_runtime()
        if not 1 <= limit <= _MAX_SEARCH_LIMIT:
            return SearchMemoryResult(
                status="error",
                query=query,
                error_code="validation_error",
                message=f"limit must be between 1 and {_MAX_SEARCH_LIMIT}",
            )
        try:
            result = await runtime.search_memory(query, limit)
        except MemoryStoreError as exc:
            return SearchMemoryResult(
                status="error",
                query=query,
                error_code=f"memory_{exc.kind.value}",
                message=str(exc),
            )
        ok = True
        return SearchMemoryResult(
            query=query,
            hits=[
                MemoryHit(
                    id=item.record.id,
                    content=item.record.content,
                    score=round(item.score, 6),
                    timestamp=item.record.timestamp,
                    source_kind=item.record.source_kind.value,
                )
                for item in result.items
            ],
        )
    finally:
        record_latency(
            operation="mcp.search_memory",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def run_hygiene() -> HygieneRunResult:
    """Summarize aged memory now instead of waiting for the schedule."""
    runtime = _get_runtime()
    try:
        report = await runtime.run_hygiene()
    except MemoryStoreError as exc:
        return HygieneRunResult(status="error", message=str(exc))
    if report is None:
        return HygieneRunResult(status="skipped", message="hygiene is disabled")
    if not report.lease_acquired:
        return HygieneRunResult(
            status="skipped",
            run_id=report.run_id,
            message="another hygiene run holds the lease",
        )
    return HygieneRunResult(
        status="error" if report.errors else "ok",
        run_id=report.run_id,
        selected=report.selected,
        groups_summarized=report.groups_summarized,
        records_superseded=report.records_superseded,
        errors=report.errors,
    )


@mcp.tool
async def provider_health() -> ProviderHealthResult:
    """Report health and circuit state of every configured provider."""
    return ProviderHealthResult(providers=_get_runtime().provider_health())


@mcp.tool
async def runtime_metrics() -> RuntimeMetricsResult:
    """Latency aggregates and outcome counters since process start."""
    return RuntimeMetricsResult(
        latency=latency_metrics_snapshot(),
        counters=counters_snapshot(),
    )
