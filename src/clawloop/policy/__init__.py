"""Policy domain: autonomy levels, rate limits and tool gating."""

from clawloop.policy.engine import PolicyEngine
from clawloop.policy.schemas import AutonomyState
from clawloop.policy.schemas import PolicyDecision
from clawloop.policy.schemas import PolicyOutcome
from clawloop.policy.schemas import PolicyReason
from clawloop.policy.schemas import RateCounter
from clawloop.policy.schemas import RateLimitSnapshot

__all__ = [
    "AutonomyState",
    "PolicyDecision",
    "PolicyEngine",
    "PolicyOutcome",
    "PolicyReason",
    "RateCounter",
    "RateLimitSnapshot",
]
