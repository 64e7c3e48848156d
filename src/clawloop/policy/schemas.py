"""Policy decision and autonomy state models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel
from pydantic import Field

from clawloop.models.schemas import AutonomyLevel


class PolicyOutcome(str, Enum):
    allow = "allow"
    deny = "deny"
    ask_confirmation = "ask_confirmation"


class PolicyReason(str, Enum):
    allowed = "allowed"
    unknown_tool = "unknown_tool"
    denied_by_config = "denied_by_config"
    not_allowlisted = "not_allowlisted"
    autonomy_read_only = "autonomy_read_only"
    rate_limited = "rate_limited"
    requires_confirmation = "requires_confirmation"


class RateCounter(BaseModel):
    model_config = {"frozen": True}

    window_start: float
    count: int = 0


class RateLimitSnapshot(BaseModel):
    """Bucket state observed when the decision was made."""

    model_config = {"frozen": True}

    tool_name: str
    limit: int | None
    count: int
    window_start: float
    window_end: float

    @property
    def remaining(self) -> int | None:
        if self.limit is None:
            return None
        return max(self.limit - self.count, 0)


class PolicyDecision(BaseModel):
    """Pure output of ``PolicyEngine.evaluate``; never shared mutable state."""

    model_config = {"frozen": True}

    decision_id: str
    outcome: PolicyOutcome
    reason: PolicyReason
    message: str = ""
    tool_name: str
    call_id: str
    request_fingerprint: str
    issued_at: float
    autonomy_level: AutonomyLevel
    rate_limit: RateLimitSnapshot | None = None

    @property
    def allowed(self) -> bool:
        return self.outcome is PolicyOutcome.allow


class AutonomyState(BaseModel):
    """Autonomy level plus per-tool counters.

    Instances are treated as immutable snapshots; the policy engine swaps in
    a new state on every committed decision.
    """

    model_config = {"frozen": True}

    level: AutonomyLevel = AutonomyLevel.confirm_required
    counters: dict[str, RateCounter] = Field(default_factory=dict)
    abuse_counters: dict[str, int] = Field(default_factory=dict)
