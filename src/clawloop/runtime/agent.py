"""Agent runtime: wiring plus the channel-facing entry point."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Iterable
from typing import Protocol

from clawloop.audit import AuditLogger
from clawloop.config import RuntimeConfig
from clawloop.engine.circuit import HealthStore
from clawloop.engine.circuit import InMemoryHealthStore
from clawloop.engine.circuit import RedisHealthStore
from clawloop.engine.embeddings import build_embedder
from clawloop.engine.gateway import ProviderGateway
from clawloop.engine.hygiene import HygieneReport
from clawloop.engine.hygiene import HygieneScheduler
from clawloop.engine.llm_adapters import Provider
from clawloop.engine.retrieval import HybridRetriever
from clawloop.errors import TurnErrorKind
from clawloop.memory import build_memory_store
from clawloop.memory.store import MemoryStore
from clawloop.models.provider import ProviderDescriptor
from clawloop.models.schemas import RetrievalResult
from clawloop.policy.engine import PolicyEngine
from clawloop.runtime.controller import ChannelInput
from clawloop.runtime.controller import TurnController
from clawloop.runtime.controller import TurnOutcome
from clawloop.runtime.controller import TurnState
from clawloop.runtime.registry import default_provider_registry
from clawloop.runtime.registry import Registry
from clawloop.tools.base import Tool
from clawloop.tools.executor import ToolExecutor

logger = logging.getLogger(__name__)

ABORTED_RESPONSE = "Sorry, this request took too long and was stopped."


class Channel(Protocol):
    async def submit(self, message: ChannelInput) -> TurnOutcome: ...


class AgentRuntime:
    """Long-lived runtime shared by every channel and conversation."""

    def __init__(
        self,
        *,
        controller: TurnController,
        store: MemoryStore,
        gateway: ProviderGateway,
        retriever: HybridRetriever,
        hygiene: HygieneScheduler | None = None,
        turn_timeout_seconds: float | None = None,
    ) -> None:
        self.controller = controller
        self.store = store
        self.gateway = gateway
        self.retriever = retriever
        self.hygiene = hygiene
        self._turn_timeout = turn_timeout_seconds
        self._background: set[asyncio.Task[HygieneReport | None]] = set()

    async def start(self) -> None:
        await self.gateway.restore_health()
        if self.hygiene is not None:
            self.hygiene.start()

    async def stop(self) -> None:
        if self.hygiene is not None:
            await self.hygiene.stop()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

    async def submit(self, message: ChannelInput) -> TurnOutcome:
        """Run one turn under the whole-turn timeout."""
        turn_id = f"turn_{uuid.uuid4().hex[:16]}"
        try:
            outcome = await asyncio.wait_for(
                self.controller.run(message, turn_id=turn_id), self._turn_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("turn %s aborted after %.1fs", turn_id, self._turn_timeout)
            return self._aborted(turn_id, message.conversation_id)
        self._schedule_hygiene_check()
        return outcome

    async def confirm(
        self, conversation_id: str, call_id: str, *, sender: str | None = None
    ) -> TurnOutcome:
        """Run an approved call under the whole-turn timeout."""
        pending = next(
            (p for p in self.controller.pending_confirmations(conversation_id) if p.call_id == call_id),
            None,
        )
        try:
            return await asyncio.wait_for(
                self.controller.confirm(conversation_id, call_id, sender=sender),
                self._turn_timeout,
            )
        except asyncio.TimeoutError:
            turn_id = pending.turn_id if pending is not None else ""
            logger.warning(
                "confirmation of %s in turn %s aborted after %.1fs",
                call_id,
                turn_id,
                self._turn_timeout,
            )
            return self._aborted(turn_id, conversation_id)

    async def search_memory(self, query: str, limit: int = 5) -> RetrievalResult:
        return await self.retriever.retrieve(query, limit)

    async def run_hygiene(self) -> HygieneReport | None:
        if self.hygiene is None:
            return None
        return await self.hygiene.run_once()

    def provider_health(self) -> list[ProviderDescriptor]:
        return self.gateway.health()

    def _aborted(self, turn_id: str, conversation_id: str) -> TurnOutcome:
        return TurnOutcome(
            turn_id=turn_id,
            conversation_id=conversation_id,
            state=TurnState.failed,
            response=ABORTED_RESPONSE,
            error=TurnErrorKind.ABORTED,
            error_message=f"turn exceeded {self._turn_timeout:g}s",
            transitions=[TurnState.idle, TurnState.failed],
        )

    def _schedule_hygiene_check(self) -> None:
        if self.hygiene is None:
            return
        task = asyncio.create_task(self.hygiene.maybe_trigger())
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[HygieneReport | None]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("size-triggered hygiene failed: %s", exc)


def build_health_store(config: RuntimeConfig) -> HealthStore:
    backend = config.gateway.health_backend.strip().lower()
    if backend == "memory":
        return InMemoryHealthStore()
    if backend == "redis":
        from redis.asyncio import Redis  # type: ignore[import-untyped]

        return RedisHealthStore(
            Redis.from_url(config.memory.redis_url), prefix=config.memory.key_prefix
        )
    raise ValueError(
        f"Unsupported health backend '{config.gateway.health_backend}'. "
        "Supported backends: memory, redis."
    )


def build_runtime(
    config: RuntimeConfig | None = None,
    tools: Iterable[Tool] = (),
    *,
    store: MemoryStore | None = None,
    providers: dict[str, Provider] | None = None,
    provider_registry: Registry | None = None,
) -> AgentRuntime:
    """Resolve every component from *config* once.

    *providers* overrides registry resolution for the given provider ids,
    which is how tests and embedders inject in-process backends.
    """
    config = config or RuntimeConfig()
    registry = provider_registry or default_provider_registry()
    registry.freeze()
    overrides = providers or {}

    resolved = [
        (
            provider_config.id,
            provider_config.priority,
            overrides.get(provider_config.id)
            or registry.create(provider_config.kind, provider_config),
        )
        for provider_config in config.providers
    ]
    audit = AuditLogger(config.audit)
    store = store or build_memory_store(config.memory)
    embedder = build_embedder(config.embedding) if config.retrieval.embeddings_enabled else None
    gateway = ProviderGateway(
        resolved,
        config.gateway,
        health_store=build_health_store(config),
        audit_logger=audit,
    )
    retriever = HybridRetriever(store, config.retrieval, embedder=embedder)
    executor = ToolExecutor(tools, config.tools, audit_logger=audit)
    policy = PolicyEngine(config.policy, executor.descriptors)
    controller = TurnController(
        store=store,
        retriever=retriever,
        gateway=gateway,
        policy=policy,
        executor=executor,
        config=config.turn,
        embedder=embedder,
        audit_logger=audit,
    )
    hygiene = HygieneScheduler(
        store, gateway, config.hygiene, embedder=embedder, audit_logger=audit
    )
    return AgentRuntime(
        controller=controller,
        store=store,
        gateway=gateway,
        retriever=retriever,
        hygiene=hygiene,
        turn_timeout_seconds=config.turn.turn_timeout_seconds,
    )
