"""Provider gateway: retry, failover and circuit breaking.

Providers are tried in priority order.  Transient and rate-limited
failures are retried on the same provider with bounded exponential
backoff; auth and fatal failures fail over immediately.  When every
provider is exhausted (or skipped because its circuit is open) the call
fails with one aggregated ``FATAL`` error carrying per-attempt diagnostics.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from collections.abc import Callable
from collections.abc import Sequence
from dataclasses import dataclass
from time import perf_counter
from typing import Any

from clawloop.audit import AuditEventType
from clawloop.audit import AuditLogger
from clawloop.config import GatewayConfig
from clawloop.engine.circuit import CircuitBreaker
from clawloop.engine.circuit import HealthStore
from clawloop.engine.circuit import InMemoryHealthStore
from clawloop.engine.llm_adapters import Provider
from clawloop.errors import ProviderAttempt
from clawloop.errors import ProviderError
from clawloop.errors import ProviderErrorKind
from clawloop.models.provider import HealthState
from clawloop.models.provider import ProviderDescriptor
from clawloop.models.schemas import ChatMessage
from clawloop.models.schemas import PromptContext
from clawloop.models.schemas import ProviderResponse
from clawloop.observability import increment_counter
from clawloop.observability import record_latency

logger = logging.getLogger(__name__)

PromptLike = PromptContext | Sequence[ChatMessage] | str


@dataclass(frozen=True)
class CompletionOptions:
    """Per-call overrides of the gateway defaults."""

    attempt_timeout_seconds: float | None = None
    max_attempts_per_provider: int | None = None


@dataclass
class _Slot:
    provider: Provider
    descriptor: ProviderDescriptor
    order: int


class ProviderGateway:
    """Resilient dispatch of completion requests across providers."""

    def __init__(
        self,
        providers: Sequence[tuple[str, int, Provider]],
        config: GatewayConfig | None = None,
        *,
        health_store: HealthStore | None = None,
        audit_logger: AuditLogger | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        if not providers:
            raise ValueError("at least one provider is required")
        self._config = config or GatewayConfig()
        self._breaker = CircuitBreaker(self._config)
        self._health_store = health_store or InMemoryHealthStore()
        self._audit = audit_logger
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._slots: dict[str, _Slot] = {}
        for order, (provider_id, priority, provider) in enumerate(providers):
            if provider_id in self._slots:
                raise ValueError(f"duplicate provider id '{provider_id}'")
            self._slots[provider_id] = _Slot(
                provider=provider,
                descriptor=ProviderDescriptor(id=provider_id, priority=priority),
                order=order,
            )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def restore_health(self) -> None:
        """Load persisted health for configured providers (startup)."""
        persisted = await self._health_store.load()
        for provider_id, descriptor in persisted.items():
            slot = self._slots.get(provider_id)
            if slot is None:
                continue
            slot.descriptor = descriptor.model_copy(
                update={"priority": slot.descriptor.priority, "probe_in_flight": False}
            )

    def health(self) -> list[ProviderDescriptor]:
        """Snapshot of all descriptors in dispatch order."""
        return [slot.descriptor.model_copy(deep=True) for slot in self._ordered()]

    def descriptor(self, provider_id: str) -> ProviderDescriptor:
        return self._slots[provider_id].descriptor.model_copy(deep=True)

    def _ordered(self) -> list[_Slot]:
        return sorted(
            self._slots.values(), key=lambda s: (s.descriptor.priority, s.order)
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def complete(
        self,
        prompt: PromptLike,
        tool_schema: Sequence[dict[str, Any]] = (),
        options: CompletionOptions | None = None,
    ) -> ProviderResponse:
        """Return the first successful completion across providers."""
        opts = options or CompletionOptions()
        timeout = opts.attempt_timeout_seconds or self._config.attempt_timeout_seconds
        max_attempts = max(
            opts.max_attempts_per_provider or self._config.max_attempts_per_provider, 1
        )
        messages = _to_messages(prompt)
        if isinstance(prompt, PromptContext) and not tool_schema:
            tool_schema = prompt.tool_schema()

        start = perf_counter()
        attempts: list[ProviderAttempt] = []
        try:
            for slot in self._ordered():
                response = await self._try_provider(
                    slot, messages, tool_schema, timeout, max_attempts, attempts
                )
                if response is not None:
                    record_latency(
                        operation="gateway.complete",
                        duration_ms=(perf_counter() - start) * 1000,
                        ok=True,
                    )
                    return response
        except asyncio.CancelledError:
            record_latency(
                operation="gateway.complete",
                duration_ms=(perf_counter() - start) * 1000,
                ok=False,
            )
            raise

        record_latency(
            operation="gateway.complete",
            duration_ms=(perf_counter() - start) * 1000,
            ok=False,
        )
        increment_counter("gateway.exhausted")
        raise ProviderError(
            ProviderErrorKind.FATAL,
            _summarize(attempts, skipped=self._skipped_ids(attempts)),
            attempts=attempts,
        )

    async def _try_provider(
        self,
        slot: _Slot,
        messages: list[ChatMessage],
        tool_schema: Sequence[dict[str, Any]],
        timeout: float,
        max_attempts: int,
        attempts: list[ProviderAttempt],
    ) -> ProviderResponse | None:
        descriptor = slot.descriptor
        if not self._breaker.try_acquire(descriptor, self._clock()):
            logger.debug("skipping provider %s: circuit open", descriptor.id)
            return None
        probing = self._breaker.is_probe(descriptor)
        # A half-open probe is a single call
        budget = 1 if probing else max_attempts

        for attempt in range(1, budget + 1):
            try:
                response = await asyncio.wait_for(
                    slot.provider.complete(messages, tool_schema, timeout_seconds=timeout),
                    timeout,
                )
            except asyncio.TimeoutError:
                error = ProviderError(
                    ProviderErrorKind.TRANSIENT, f"timed out after {timeout:g}s"
                )
            except asyncio.CancelledError:
                await self._on_failure(
                    slot,
                    ProviderError(ProviderErrorKind.TRANSIENT, "cancelled"),
                    attempt,
                    attempts,
                    probe=probing,
                )
                raise
            except ProviderError as exc:
                error = exc
            except Exception as exc:
                logger.exception("provider %s raised an unexpected error", descriptor.id)
                error = ProviderError(ProviderErrorKind.FATAL, f"unexpected error: {exc}")
            else:
                await self._on_success(slot, probe=probing)
                return response.model_copy(update={"provider_id": descriptor.id})

            opened = await self._on_failure(slot, error, attempt, attempts, probe=probing)
            if opened or not error.retryable or attempt == budget:
                break
            await self._sleep(self._backoff(attempt, error))

        logger.warning(
            "failing over from provider %s after %d attempt(s): %s",
            descriptor.id,
            sum(1 for a in attempts if a.provider_id == descriptor.id),
            attempts[-1].message,
        )
        increment_counter("gateway.failover")
        return None

    def _backoff(self, attempt: int, error: ProviderError) -> float:
        delay = min(
            self._config.backoff_base_seconds * (2 ** (attempt - 1)),
            self._config.backoff_max_seconds,
        )
        if error.kind is ProviderErrorKind.RATE_LIMITED and error.retry_after is not None:
            delay = max(delay, min(error.retry_after, self._config.backoff_max_seconds))
        return delay

    async def _on_success(self, slot: _Slot, *, probe: bool) -> None:
        previous = self._breaker.record_success(slot.descriptor, probe=probe)
        await self._health_store.save(slot.descriptor)
        if previous is HealthState.circuit_open and probe:
            logger.info("circuit closed for provider %s", slot.descriptor.id)
            await self._audit_circuit(slot.descriptor, previous)

    async def _on_failure(
        self,
        slot: _Slot,
        error: ProviderError,
        attempt: int,
        attempts: list[ProviderAttempt],
        *,
        probe: bool,
    ) -> bool:
        descriptor = slot.descriptor
        previous = descriptor.health
        attempts.append(
            ProviderAttempt(
                provider_id=descriptor.id,
                attempt=attempt,
                kind=error.kind,
                message=str(error),
            )
        )
        opened = self._breaker.record_failure(descriptor, self._clock(), probe=probe)
        await self._health_store.save(descriptor)
        increment_counter(f"gateway.error.{error.kind.value}")
        if self._audit is not None:
            await self._audit.emit(
                AuditEventType.PROVIDER_FAILURE,
                provider_id=descriptor.id,
                attempt=attempt,
                kind=error.kind.value,
                message=str(error)[:200],
            )
        if opened:
            await self._audit_circuit(descriptor, previous)
        return opened

    async def _audit_circuit(self, descriptor: ProviderDescriptor, previous: HealthState) -> None:
        increment_counter(f"gateway.circuit.{descriptor.health.value}")
        if self._audit is None:
            return
        await self._audit.emit(
            AuditEventType.CIRCUIT_STATE_CHANGED,
            provider_id=descriptor.id,
            previous=previous.value,
            current=descriptor.health.value,
            cooldown_until=descriptor.cooldown_until,
        )

    def _skipped_ids(self, attempts: list[ProviderAttempt]) -> list[str]:
        tried = {a.provider_id for a in attempts}
        return [slot.descriptor.id for slot in self._ordered() if slot.descriptor.id not in tried]


def _to_messages(prompt: PromptLike) -> list[ChatMessage]:
    if isinstance(prompt, PromptContext):
        return prompt.to_messages()
    if isinstance(prompt, str):
        return [ChatMessage(role="user", content=prompt)]
    return list(prompt)


def _summarize(attempts: list[ProviderAttempt], *, skipped: list[str]) -> str:
    parts: list[str] = []
    by_provider: dict[str, list[ProviderAttempt]] = {}
    for attempt in attempts:
        by_provider.setdefault(attempt.provider_id, []).append(attempt)
    for provider_id, provider_attempts in by_provider.items():
        last = provider_attempts[-1]
        parts.append(
            f"{provider_id}: {last.kind.value} after {len(provider_attempts)} attempt(s) ({last.message})"
        )
    for provider_id in skipped:
        parts.append(f"{provider_id}: skipped (circuit open)")
    return "all providers failed: " + "; ".join(parts)
