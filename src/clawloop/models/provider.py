"""Provider health bookkeeping."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel
from pydantic import Field


class HealthState(str, Enum):
    healthy = "healthy"
    degraded = "degraded"
    circuit_open = "circuit_open"


class ProviderDescriptor(BaseModel):
    """Health record for one configured provider.

    Mutated only by the provider gateway's circuit breaker.
    """

    id: str
    priority: int = 0
    health: HealthState = HealthState.healthy
    consecutive_failures: int = 0
    last_failure_at: float | None = None
    cooldown_until: float | None = None
    open_count: int = Field(
        default=0,
        description="Consecutive re-openings, drives cool-down extension.",
    )
    failure_times: list[float] = Field(
        default_factory=list,
        description="Timestamps of the current run of consecutive failures.",
    )
    probe_in_flight: bool = False
