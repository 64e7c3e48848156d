"""Turn controller: the bounded retrieve / prompt / act loop.

One ``run`` drives a single user turn through::

    idle -> retrieving -> prompting -> awaiting_provider -> parsing_response
         -> [executing_tools -> prompting ...] -> persisting -> done

with ``failed`` reachable from any state.  Tool calls of one turn live in
an arena keyed by ``(turn_id, call_id)``; results are fed back to the model
in request order regardless of how they were scheduled.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections import defaultdict
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from time import perf_counter

from pydantic import BaseModel
from pydantic import Field

from clawloop.audit import AuditEventType
from clawloop.audit import AuditLogger
from clawloop.config import TurnConfig
from clawloop.engine.embeddings import Embedder
from clawloop.engine.embeddings import EmbeddingError
from clawloop.engine.gateway import ProviderGateway
from clawloop.engine.prompt_builder import PromptAssembler
from clawloop.engine.retrieval import HybridRetriever
from clawloop.errors import MemoryStoreError
from clawloop.errors import PolicyError
from clawloop.errors import PolicyErrorKind
from clawloop.errors import ProviderError
from clawloop.errors import TurnErrorKind
from clawloop.memory import create_message_record
from clawloop.memory.store import MemoryStore
from clawloop.models.schemas import ChatMessage
from clawloop.models.schemas import ConversationTurn
from clawloop.models.schemas import RetrievalResult
from clawloop.models.schemas import ToolCall
from clawloop.models.schemas import ToolInvocationRequest
from clawloop.models.schemas import ToolResult
from clawloop.models.schemas import TurnRole
from clawloop.observability import increment_counter
from clawloop.observability import record_latency
from clawloop.policy.engine import PolicyEngine
from clawloop.policy.schemas import PolicyDecision
from clawloop.policy.schemas import PolicyOutcome
from clawloop.runtime.parsing import parse_response
from clawloop.tools.executor import ToolExecutor

logger = logging.getLogger(__name__)

APOLOGY = "Sorry, I could not reach any language model right now. Please try again later."


def _same_sender(expected: str, actual: str | None) -> bool:
    return actual is not None and actual.strip().lower() == expected.strip().lower()


class TurnState(str, Enum):
    idle = "idle"
    retrieving = "retrieving"
    prompting = "prompting"
    awaiting_provider = "awaiting_provider"
    parsing_response = "parsing_response"
    executing_tools = "executing_tools"
    persisting = "persisting"
    done = "done"
    failed = "failed"


@dataclass(frozen=True)
class ChannelInput:
    """A user message as delivered by a channel adapter."""

    content: str
    conversation_id: str = "default"
    sender: str | None = None


class PendingConfirmation(BaseModel):
    """A tool call held back until the user approves it."""

    model_config = {"frozen": True}

    call_id: str
    turn_id: str
    tool_name: str
    arguments: dict = Field(default_factory=dict)
    reason: str = ""
    sender: str | None = Field(
        default=None,
        description="Sender whose message produced the call; only they may approve it.",
    )


class TurnOutcome(BaseModel):
    """Result of one controller run, as returned to the channel."""

    turn_id: str
    conversation_id: str
    state: TurnState
    response: str = ""
    error: TurnErrorKind | None = None
    error_message: str | None = None
    provider_id: str | None = None
    iterations: int = 0
    tool_results: list[ToolResult] = Field(default_factory=list)
    decisions: list[PolicyDecision] = Field(default_factory=list)
    pending_confirmations: list[PendingConfirmation] = Field(default_factory=list)
    snippets_used: int = 0
    persisted: bool = False
    transitions: list[TurnState] = Field(default_factory=list)


@dataclass
class _CallSlot:
    request: ToolInvocationRequest
    decision: PolicyDecision | None = None
    result: ToolResult | None = None
    refusal: str | None = None


@dataclass
class _TurnContext:
    turn_id: str
    message: ChannelInput
    transitions: list[TurnState] = field(default_factory=lambda: [TurnState.idle])
    arena: dict[tuple[str, str], _CallSlot] = field(default_factory=dict)
    working: list[ChatMessage] = field(default_factory=list)
    decisions: list[PolicyDecision] = field(default_factory=list)
    pending: list[PendingConfirmation] = field(default_factory=list)
    provider_id: str | None = None
    iterations: int = 0
    last_text: str = ""

    @property
    def state(self) -> TurnState:
        return self.transitions[-1]

    def enter(self, state: TurnState) -> None:
        logger.debug("turn %s: %s -> %s", self.turn_id, self.state.value, state.value)
        self.transitions.append(state)

    def slot(self, call_id: str) -> _CallSlot:
        return self.arena[(self.turn_id, call_id)]

    @property
    def tool_results(self) -> list[ToolResult]:
        return [s.result for s in self.arena.values() if s.result is not None]


class TurnController:
    """Owns the per-conversation logs and runs turns against collaborators."""

    def __init__(
        self,
        *,
        store: MemoryStore,
        retriever: HybridRetriever,
        gateway: ProviderGateway,
        policy: PolicyEngine,
        executor: ToolExecutor,
        config: TurnConfig | None = None,
        embedder: Embedder | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._config = config or TurnConfig()
        if self._config.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self._store = store
        self._retriever = retriever
        self._gateway = gateway
        self._policy = policy
        self._executor = executor
        self._embedder = embedder
        self._audit = audit_logger
        self._assembler = PromptAssembler(self._config, policy)
        self._logs: dict[str, deque[ConversationTurn]] = {}
        self._seq: dict[str, int] = defaultdict(int)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._pending: dict[tuple[str, str], PendingConfirmation] = {}
        for descriptor in executor.descriptors:
            policy.register_tool(descriptor)

    # ------------------------------------------------------------------
    # Conversation log
    # ------------------------------------------------------------------

    def history(self, conversation_id: str) -> list[ConversationTurn]:
        return list(self._logs.get(conversation_id, ()))

    def pending_confirmations(self, conversation_id: str) -> list[PendingConfirmation]:
        return [p for (cid, _), p in self._pending.items() if cid == conversation_id]

    def _record_turn(
        self,
        conversation_id: str,
        role: TurnRole,
        content: str,
        *,
        provider_id: str | None = None,
        tool_call_ids: Sequence[str] = (),
    ) -> ConversationTurn:
        log = self._logs.setdefault(
            conversation_id, deque(maxlen=max(self._config.history_max_messages, 1) * 2)
        )
        self._seq[conversation_id] += 1
        turn = ConversationTurn(
            seq=self._seq[conversation_id],
            role=role,
            content=content,
            provider_id=provider_id,
            tool_call_ids=list(tool_call_ids),
        )
        log.append(turn)
        return turn

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    async def run(self, message: ChannelInput, *, turn_id: str | None = None) -> TurnOutcome:
        """Handle one user message to completion.

        Provider exhaustion and the iteration bound end the turn in
        ``failed``; the returned outcome always carries a user-facing
        response.
        """
        ctx = _TurnContext(turn_id=turn_id or f"turn_{uuid.uuid4().hex[:16]}", message=message)
        start = perf_counter()
        async with self._locks[message.conversation_id]:
            outcome = await self._drive(ctx)
        record_latency(
            operation="turn.run",
            duration_ms=(perf_counter() - start) * 1000,
            ok=outcome.state is TurnState.done,
        )
        increment_counter(f"turn.{outcome.state.value}")
        await self._audit_outcome(outcome)
        return outcome

    async def _drive(self, ctx: _TurnContext) -> TurnOutcome:
        conversation_id = ctx.message.conversation_id
        history = self.history(conversation_id)
        self._record_turn(conversation_id, TurnRole.user, ctx.message.content)
        ctx.working.append(ChatMessage(role="user", content=ctx.message.content))

        ctx.enter(TurnState.retrieving)
        retrieval = await self._retrieve(ctx.message.content)

        while ctx.iterations < self._config.max_iterations:
            ctx.iterations += 1

            ctx.enter(TurnState.prompting)
            prompt = self._assembler.build(
                retrieval=retrieval,
                tools=self._executor.descriptors,
                history=history,
                working=ctx.working,
            )

            ctx.enter(TurnState.awaiting_provider)
            try:
                response = await self._gateway.complete(prompt)
            except ProviderError as exc:
                logger.warning("turn %s failed, providers exhausted: %s", ctx.turn_id, exc)
                return self._fail(ctx, retrieval, APOLOGY, None, str(exc))
            ctx.provider_id = response.provider_id

            ctx.enter(TurnState.parsing_response)
            parsed = parse_response(
                response,
                turn_id=ctx.turn_id,
                iteration=ctx.iterations,
                taken=[call_id for (_, call_id) in ctx.arena],
            )
            if parsed.text:
                ctx.last_text = parsed.text
            if parsed.is_final:
                return await self._finish(ctx, retrieval, parsed.text)

            ctx.enter(TurnState.executing_tools)
            ctx.working.append(
                ChatMessage(role="assistant", content=parsed.text, tool_calls=parsed.tool_calls)
            )
            await self._execute_calls(ctx, parsed.tool_calls)
            ctx.working.extend(self._tool_messages(ctx, parsed.tool_calls))
            if ctx.pending:
                return await self._finish(ctx, retrieval, self._confirmation_text(ctx))

        logger.warning(
            "turn %s exceeded %d iterations", ctx.turn_id, self._config.max_iterations
        )
        return self._fail(
            ctx,
            retrieval,
            self._partial_text(ctx),
            TurnErrorKind.MAX_ITERATIONS_EXCEEDED,
            f"stopped after {self._config.max_iterations} iterations",
        )

    async def _retrieve(self, query: str) -> RetrievalResult | None:
        try:
            return await self._retriever.retrieve(query, self._config.retrieval_k)
        except MemoryStoreError as exc:
            logger.warning("memory retrieval failed, continuing without context: %s", exc)
            increment_counter("turn.retrieval_degraded")
            return None

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    async def _execute_calls(
        self, ctx: _TurnContext, calls: Sequence[ToolCall], *, confirmed: bool = False
    ) -> None:
        """Gate and run *calls*.

        Side-effecting calls run one at a time in request order; runs of
        consecutive read-only, parallel-safe calls are gathered.
        """
        batch: list[_CallSlot] = []
        for call in calls:
            request = ToolInvocationRequest(
                tool_name=call.name,
                arguments=call.arguments,
                turn_id=ctx.turn_id,
                call_id=call.id,
                confirmed=confirmed,
            )
            slot = _CallSlot(request=request)
            ctx.arena[(ctx.turn_id, request.call_id)] = slot

            descriptor = self._executor.descriptor(call.name)
            concurrent = descriptor is not None and descriptor.read_only and descriptor.parallel_safe
            if not concurrent:
                await self._run_batch(batch)
                batch = []

            decision = await self._authorize(ctx, request)
            slot.decision = decision
            if decision.outcome is PolicyOutcome.allow:
                if concurrent:
                    batch.append(slot)
                else:
                    await self._dispatch(slot)
            elif decision.outcome is PolicyOutcome.deny:
                slot.refusal = f"[policy denied: {decision.reason.value}] {decision.message}".strip()
            else:
                pending = PendingConfirmation(
                    call_id=request.call_id,
                    turn_id=ctx.turn_id,
                    tool_name=request.tool_name,
                    arguments=request.arguments,
                    reason=decision.message,
                    sender=ctx.message.sender,
                )
                ctx.pending.append(pending)
                self._pending[(ctx.message.conversation_id, request.call_id)] = pending
        await self._run_batch(batch)

    async def _run_batch(self, batch: list[_CallSlot]) -> None:
        if not batch:
            return
        await asyncio.gather(*(self._dispatch(slot) for slot in batch))

    async def _dispatch(self, slot: _CallSlot) -> None:
        try:
            slot.result = await self._executor.execute(slot.request, slot.decision)
        except PolicyError as exc:
            logger.warning("executor rejected call %s: %s", slot.request.call_id, exc)
            slot.refusal = f"[policy denied: {exc.kind.value}] {exc}"

    async def _authorize(self, ctx: _TurnContext, request: ToolInvocationRequest) -> PolicyDecision:
        decision = self._policy.authorize(request)
        ctx.decisions.append(decision)
        if self._audit is not None:
            await self._audit.emit(
                AuditEventType.POLICY_DECISION,
                decision_id=decision.decision_id,
                turn_id=request.turn_id,
                call_id=request.call_id,
                tool_name=request.tool_name,
                arguments=request.arguments,
                outcome=decision.outcome.value,
                reason=decision.reason.value,
                autonomy_level=decision.autonomy_level.value,
                confirmed=request.confirmed,
            )
        return decision

    def _tool_messages(self, ctx: _TurnContext, calls: Sequence[ToolCall]) -> list[ChatMessage]:
        messages: list[ChatMessage] = []
        for call in calls:
            slot = ctx.slot(call.id)
            if slot.result is not None:
                content = slot.result.as_context()
            elif slot.refusal is not None:
                content = slot.refusal
            else:
                content = "[awaiting user confirmation]"
            messages.append(ChatMessage(role="tool", content=content, tool_call_id=call.id))
        return messages

    # ------------------------------------------------------------------
    # Confirmation follow-up
    # ------------------------------------------------------------------

    async def confirm(
        self, conversation_id: str, call_id: str, *, sender: str | None = None
    ) -> TurnOutcome:
        """Run a call held for confirmation, now marked as user-approved.

        When the held call came from a known sender, only that sender may
        approve it.  The approved request still goes through the policy
        engine, so deny lists and rate limits keep applying.
        """
        key = (conversation_id, call_id)
        pending = self._pending.get(key)
        if pending is None:
            raise KeyError(f"no pending confirmation for call '{call_id}'")
        if pending.sender is not None and not _same_sender(pending.sender, sender):
            raise PolicyError(
                PolicyErrorKind.WRONG_APPROVER,
                f"call '{call_id}' can only be approved by its requester",
            )
        del self._pending[key]

        ctx = _TurnContext(
            turn_id=pending.turn_id,
            message=ChannelInput(content="", conversation_id=conversation_id, sender=sender),
        )
        call = ToolCall(id=call_id, name=pending.tool_name, arguments=pending.arguments)
        async with self._locks[conversation_id]:
            ctx.enter(TurnState.executing_tools)
            await self._execute_calls(ctx, [call], confirmed=True)
            slot = ctx.slot(call_id)
            if slot.result is not None:
                response = f"Ran {pending.tool_name}: {slot.result.as_context()}"
            elif slot.refusal is not None:
                response = f"Could not run {pending.tool_name}: {slot.refusal}"
            else:
                response = f"{pending.tool_name} still requires confirmation."
            self._record_turn(conversation_id, TurnRole.agent, response, tool_call_ids=[call_id])
            ctx.enter(TurnState.persisting)
            persisted = await self._persist(conversation_id, [(TurnRole.agent, response)])
            ctx.enter(TurnState.done)
        return TurnOutcome(
            turn_id=ctx.turn_id,
            conversation_id=conversation_id,
            state=ctx.state,
            response=response,
            tool_results=ctx.tool_results,
            decisions=ctx.decisions,
            pending_confirmations=ctx.pending,
            persisted=persisted,
            transitions=ctx.transitions,
        )

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def _finish(
        self, ctx: _TurnContext, retrieval: RetrievalResult | None, response: str
    ) -> TurnOutcome:
        conversation_id = ctx.message.conversation_id
        call_ids = [call_id for (_, call_id) in ctx.arena]
        self._record_turn(
            conversation_id,
            TurnRole.agent,
            response,
            provider_id=ctx.provider_id,
            tool_call_ids=call_ids,
        )
        ctx.enter(TurnState.persisting)
        persisted = await self._persist(
            conversation_id,
            [(TurnRole.user, ctx.message.content), (TurnRole.agent, response)],
        )
        ctx.enter(TurnState.done)
        return self._outcome(ctx, retrieval, response, persisted=persisted)

    def _fail(
        self,
        ctx: _TurnContext,
        retrieval: RetrievalResult | None,
        response: str,
        error: TurnErrorKind | None,
        message: str,
    ) -> TurnOutcome:
        ctx.enter(TurnState.failed)
        outcome = self._outcome(ctx, retrieval, response, persisted=False)
        return outcome.model_copy(update={"error": error, "error_message": message})

    def _outcome(
        self,
        ctx: _TurnContext,
        retrieval: RetrievalResult | None,
        response: str,
        *,
        persisted: bool,
    ) -> TurnOutcome:
        return TurnOutcome(
            turn_id=ctx.turn_id,
            conversation_id=ctx.message.conversation_id,
            state=ctx.state,
            response=response,
            provider_id=ctx.provider_id,
            iterations=ctx.iterations,
            tool_results=ctx.tool_results,
            decisions=ctx.decisions,
            pending_confirmations=ctx.pending,
            snippets_used=len(retrieval) if retrieval else 0,
            persisted=persisted,
            transitions=ctx.transitions,
        )

    async def _persist(
        self, conversation_id: str, entries: Sequence[tuple[TurnRole, str]]
    ) -> bool:
        entries = [(role, content) for role, content in entries if content]
        embeddings = await self._embed([content for _, content in entries])
        try:
            for (role, content), embedding in zip(entries, embeddings):
                await self._store.append(
                    create_message_record(
                        content,
                        role=role.value,
                        conversation_id=conversation_id,
                        embedding=embedding,
                    )
                )
        except MemoryStoreError as exc:
            logger.warning("failed to persist turn memory for %s: %s", conversation_id, exc)
            increment_counter("turn.persist_failed")
            return False
        return True

    async def _embed(self, texts: list[str]) -> list[list[float] | None]:
        if self._embedder is None or not self._retriever.semantic_enabled or not texts:
            return [None] * len(texts)
        try:
            return list(await self._embedder.embed(texts))
        except EmbeddingError as exc:
            logger.warning("record embedding failed, storing without vectors: %s", exc)
            return [None] * len(texts)

    def _confirmation_text(self, ctx: _TurnContext) -> str:
        lines = [
            f"- {p.tool_name}({json.dumps(p.arguments, sort_keys=True)}) [call {p.call_id}]: {p.reason}"
            for p in ctx.pending
        ]
        prefix = f"{ctx.last_text}\n\n" if ctx.last_text else ""
        return prefix + "I need your confirmation before running:\n" + "\n".join(lines)

    def _partial_text(self, ctx: _TurnContext) -> str:
        parts = ["I could not finish this request within the allowed number of steps."]
        if ctx.last_text:
            parts.append(f"Last progress: {ctx.last_text}")
        results = ctx.tool_results
        if results:
            parts.append(
                "Completed tool calls: "
                + ", ".join(f"{r.tool_name} ({'ok' if r.ok else r.error.value})" for r in results)
            )
        return "\n".join(parts)

    async def _audit_outcome(self, outcome: TurnOutcome) -> None:
        if self._audit is None:
            return
        event_type = (
            AuditEventType.TURN_COMPLETED
            if outcome.state is TurnState.done
            else AuditEventType.TURN_FAILED
        )
        await self._audit.emit(
            event_type,
            turn_id=outcome.turn_id,
            conversation_id=outcome.conversation_id,
            provider_id=outcome.provider_id,
            iterations=outcome.iterations,
            tool_calls=len(outcome.tool_results),
            pending_confirmations=len(outcome.pending_confirmations),
            error=outcome.error.value if outcome.error else None,
        )
