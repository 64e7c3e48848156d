"""Autonomy and security policy gating every tool invocation.

``evaluate`` is a pure function of the request, the autonomy state
snapshot, the static tool configuration and the supplied clock reading:
identical inputs always produce identical decisions, which keeps audits
reproducible.  ``authorize`` evaluates against the live state and commits
counter updates atomically.
"""

from __future__ import annotations

import hashlib
import logging
import math
import time
from collections.abc import Callable
from collections.abc import Iterable
from threading import Lock

from clawloop.config import PolicyConfig
from clawloop.models.schemas import AutonomyLevel
from clawloop.models.schemas import ToolDescriptor
from clawloop.models.schemas import ToolInvocationRequest
from clawloop.observability import increment_counter
from clawloop.policy.schemas import AutonomyState
from clawloop.policy.schemas import PolicyDecision
from clawloop.policy.schemas import PolicyOutcome
from clawloop.policy.schemas import PolicyReason
from clawloop.policy.schemas import RateCounter
from clawloop.policy.schemas import RateLimitSnapshot

logger = logging.getLogger(__name__)


class PolicyEngine:
    """Single owned gate for tool side effects, shared by all turns."""

    def __init__(
        self,
        config: PolicyConfig | None = None,
        tools: Iterable[ToolDescriptor] = (),
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._config = config or PolicyConfig()
        if self._config.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self._tools = {tool.name: tool for tool in tools}
        self._clock = clock or time.time
        self._lock = Lock()
        self._state = AutonomyState(level=AutonomyLevel(self._config.autonomy_level))

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    @property
    def level(self) -> AutonomyLevel:
        return self._state.level

    def snapshot(self) -> AutonomyState:
        """Return the current immutable state snapshot."""
        return self._state

    def set_level(self, level: AutonomyLevel) -> None:
        with self._lock:
            self._state = self._state.model_copy(update={"level": level})
        logger.info("autonomy level set to %s", level.value)

    def register_tool(self, descriptor: ToolDescriptor) -> None:
        self._tools[descriptor.name] = descriptor

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def evaluate(
        self,
        request: ToolInvocationRequest,
        state: AutonomyState,
        *,
        now: float,
    ) -> PolicyDecision:
        """Decide on *request* without touching any shared state."""
        fingerprint = request.fingerprint()
        snapshot = self._rate_snapshot(request.tool_name, state, now)

        def decide(outcome: PolicyOutcome, reason: PolicyReason, message: str) -> PolicyDecision:
            return PolicyDecision(
                decision_id=_decision_id(fingerprint, outcome, now),
                outcome=outcome,
                reason=reason,
                message=message,
                tool_name=request.tool_name,
                call_id=request.call_id,
                request_fingerprint=fingerprint,
                issued_at=now,
                autonomy_level=state.level,
                rate_limit=snapshot,
            )

        tool = self._tools.get(request.tool_name)
        if tool is None:
            return decide(
                PolicyOutcome.deny,
                PolicyReason.unknown_tool,
                f"Tool '{request.tool_name}' is not registered.",
            )

        # 1. Explicit configuration always wins
        if request.tool_name in self._config.denied_tools:
            return decide(
                PolicyOutcome.deny,
                PolicyReason.denied_by_config,
                f"Tool '{request.tool_name}' is denied by configuration.",
            )
        if self._config.allowed_tools and request.tool_name not in self._config.allowed_tools:
            return decide(
                PolicyOutcome.deny,
                PolicyReason.not_allowlisted,
                f"Tool '{request.tool_name}' is not on the allowlist.",
            )

        # 2. Read-only autonomy never runs side effects
        if not tool.read_only and state.level is AutonomyLevel.read_only:
            return decide(
                PolicyOutcome.deny,
                PolicyReason.autonomy_read_only,
                f"Tool '{request.tool_name}' has side effects and autonomy is read-only.",
            )

        # 3. Rate limit window
        if snapshot.limit is not None and snapshot.count >= snapshot.limit:
            return decide(
                PolicyOutcome.deny,
                PolicyReason.rate_limited,
                (
                    f"Tool '{request.tool_name}' exceeded {snapshot.limit} calls "
                    f"per {self._config.window_seconds:g}s window."
                ),
            )

        # 4. Side effects above the current autonomy level need a human
        if (
            not tool.read_only
            and state.level < tool.required_level
            and not request.confirmed
        ):
            return decide(
                PolicyOutcome.ask_confirmation,
                PolicyReason.requires_confirmation,
                (
                    f"Tool '{request.tool_name}' requires autonomy level "
                    f"'{tool.required_level.value}' (current: '{state.level.value}')."
                ),
            )

        return decide(PolicyOutcome.allow, PolicyReason.allowed, "")

    def authorize(self, request: ToolInvocationRequest) -> PolicyDecision:
        """Evaluate against live state and commit counters atomically.

        Only ``allow`` increments the rate counter.  Denied and
        confirmation outcomes bump the abuse counter when enabled.
        """
        with self._lock:
            now = self._clock()
            state = self._state
            decision = self.evaluate(request, state, now=now)
            self._state = self._commit(state, decision, now)

        increment_counter(f"policy.{decision.outcome.value}")
        if decision.outcome is not PolicyOutcome.allow:
            logger.info(
                "policy %s tool=%s call_id=%s reason=%s",
                decision.outcome.value,
                decision.tool_name,
                decision.call_id,
                decision.reason.value,
            )
        return decision

    def permitted_tools(self, tools: Iterable[ToolDescriptor]) -> list[ToolDescriptor]:
        """Filter descriptors to those the model may be offered right now."""
        level = self._state.level
        permitted: list[ToolDescriptor] = []
        for tool in tools:
            if tool.name in self._config.denied_tools:
                continue
            if self._config.allowed_tools and tool.name not in self._config.allowed_tools:
                continue
            if level is AutonomyLevel.read_only and not tool.read_only:
                continue
            permitted.append(tool)
        return sorted(permitted, key=lambda t: t.name)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _limit_for(self, tool_name: str) -> int | None:
        return self._config.rate_limits.get(tool_name, self._config.default_rate_limit)

    def _window_start(self, now: float) -> float:
        width = self._config.window_seconds
        return math.floor(now / width) * width

    def _rate_snapshot(
        self, tool_name: str, state: AutonomyState, now: float
    ) -> RateLimitSnapshot:
        window_start = self._window_start(now)
        counter = state.counters.get(tool_name)
        count = counter.count if counter and counter.window_start == window_start else 0
        return RateLimitSnapshot(
            tool_name=tool_name,
            limit=self._limit_for(tool_name),
            count=count,
            window_start=window_start,
            window_end=window_start + self._config.window_seconds,
        )

    def _commit(
        self, state: AutonomyState, decision: PolicyDecision, now: float
    ) -> AutonomyState:
        if decision.outcome is PolicyOutcome.allow:
            window_start = self._window_start(now)
            counter = state.counters.get(decision.tool_name)
            count = counter.count if counter and counter.window_start == window_start else 0
            counters = dict(state.counters)
            counters[decision.tool_name] = RateCounter(
                window_start=window_start, count=count + 1
            )
            return state.model_copy(update={"counters": counters})

        if self._config.track_abuse:
            abuse = dict(state.abuse_counters)
            abuse[decision.tool_name] = abuse.get(decision.tool_name, 0) + 1
            return state.model_copy(update={"abuse_counters": abuse})
        return state


def _decision_id(fingerprint: str, outcome: PolicyOutcome, now: float) -> str:
    digest = hashlib.sha256(f"{fingerprint}:{outcome.value}:{now!r}".encode()).hexdigest()
    return f"dec_{digest[:24]}"
