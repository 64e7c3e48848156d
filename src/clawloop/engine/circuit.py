"""Per-provider circuit breaker and health persistence.

State machine per provider::

    healthy --failure--> degraded --N failures within W--> circuit_open
    circuit_open --cool-down elapsed--> (one half-open probe)
    probe success --> healthy          probe failure --> circuit_open (longer)

Whether health survives a restart is explicit configuration
(``GatewayConfig.health_backend``): ``InMemoryHealthStore`` keeps it per
process, ``RedisHealthStore`` persists it.
"""

from __future__ import annotations

import logging
from typing import Protocol

from pydantic import ValidationError
from redis.asyncio import Redis  # type: ignore[import-untyped]

from clawloop.config import GatewayConfig
from clawloop.models.provider import HealthState
from clawloop.models.provider import ProviderDescriptor

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Pure transition rules applied to ``ProviderDescriptor`` objects."""

    def __init__(self, config: GatewayConfig) -> None:
        if config.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self._config = config

    def try_acquire(self, descriptor: ProviderDescriptor, now: float) -> bool:
        """Return whether a request may be sent to this provider now.

        For an open circuit whose cool-down has elapsed, the first caller
        becomes the half-open probe; everybody else keeps skipping it.
        """
        if descriptor.health is not HealthState.circuit_open:
            return True
        if descriptor.cooldown_until is not None and now < descriptor.cooldown_until:
            return False
        if descriptor.probe_in_flight:
            return False
        descriptor.probe_in_flight = True
        return True

    def is_probe(self, descriptor: ProviderDescriptor) -> bool:
        return descriptor.health is HealthState.circuit_open and descriptor.probe_in_flight

    def record_success(self, descriptor: ProviderDescriptor, *, probe: bool = False) -> HealthState:
        """Close the circuit; return the state before the call.

        Only the half-open *probe* may close an open circuit.  A success
        from a call that started before the circuit opened changes nothing.
        """
        previous = descriptor.health
        if previous is HealthState.circuit_open and not probe:
            return previous
        descriptor.health = HealthState.healthy
        descriptor.consecutive_failures = 0
        descriptor.failure_times = []
        descriptor.cooldown_until = None
        descriptor.open_count = 0
        descriptor.probe_in_flight = False
        return previous

    def record_failure(
        self, descriptor: ProviderDescriptor, now: float, *, probe: bool = False
    ) -> bool:
        """Count one failure; return ``True`` when the circuit (re)opens."""
        descriptor.consecutive_failures += 1
        descriptor.last_failure_at = now
        window_start = now - self._config.failure_window_seconds
        descriptor.failure_times = [
            t for t in [*descriptor.failure_times, now] if t >= window_start
        ]
        if probe:
            descriptor.probe_in_flight = False
            self._open(descriptor, now)
            return True
        if descriptor.health is HealthState.circuit_open:
            # Late failure from a call that started before the circuit opened
            return False
        if len(descriptor.failure_times) >= self._config.failure_threshold:
            self._open(descriptor, now)
            return True
        descriptor.health = HealthState.degraded
        return False

    def _open(self, descriptor: ProviderDescriptor, now: float) -> None:
        cooldown = min(
            self._config.cooldown_seconds
            * (self._config.cooldown_multiplier ** descriptor.open_count),
            self._config.max_cooldown_seconds,
        )
        descriptor.health = HealthState.circuit_open
        descriptor.cooldown_until = now + cooldown
        descriptor.open_count += 1
        logger.warning(
            "circuit opened for provider %s (failures=%d, cooldown=%.1fs)",
            descriptor.id,
            descriptor.consecutive_failures,
            cooldown,
        )


# ---------------------------------------------------------------------------
# Health persistence
# ---------------------------------------------------------------------------


class HealthStore(Protocol):
    async def load(self) -> dict[str, ProviderDescriptor]: ...

    async def save(self, descriptor: ProviderDescriptor) -> None: ...


class InMemoryHealthStore:
    """Health lives and dies with the process."""

    def __init__(self) -> None:
        self._descriptors: dict[str, ProviderDescriptor] = {}

    async def load(self) -> dict[str, ProviderDescriptor]:
        return {k: v.model_copy(deep=True) for k, v in self._descriptors.items()}

    async def save(self, descriptor: ProviderDescriptor) -> None:
        self._descriptors[descriptor.id] = descriptor.model_copy(deep=True)


class RedisHealthStore:
    """Health persisted in a Redis hash so open circuits survive restarts."""

    def __init__(self, redis: Redis, *, prefix: str = "clawloop") -> None:
        self._redis = redis
        self._key = f"{prefix}:provider_health"

    async def load(self) -> dict[str, ProviderDescriptor]:
        raw = await self._redis.hgetall(self._key)
        descriptors: dict[str, ProviderDescriptor] = {}
        for field, value in raw.items():
            provider_id = field.decode() if isinstance(field, bytes) else field
            try:
                descriptor = ProviderDescriptor.model_validate_json(value)
            except ValidationError:
                logger.warning("ignoring unreadable health entry for provider %s", provider_id)
                continue
            # A probe cannot survive a restart
            descriptor.probe_in_flight = False
            descriptors[provider_id] = descriptor
        return descriptors

    async def save(self, descriptor: ProviderDescriptor) -> None:
        await self._redis.hset(self._key, descriptor.id, descriptor.model_dump_json())
