"""In-process runtime metrics.

Two kinds of signal are kept: per-operation latency (``turn.run``,
``gateway.dispatch``, ``tool.execute`` ...) and named outcome counters
such as ``gateway.failover`` or ``policy.deny``.  Everything lives in a
module-level registry guarded by a thread lock; the MCP channel exposes
a snapshot through ``runtime_metrics``.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from collections import deque
from dataclasses import dataclass
from dataclasses import field
from threading import Lock

logger = logging.getLogger(__name__)

# Recent samples kept per operation for the p95 estimate
SAMPLE_WINDOW = 256


@dataclass
class LatencySummary:
    count: int = 0
    error_count: int = 0
    total_ms: float = 0.0
    min_ms: float = math.inf
    max_ms: float = 0.0
    recent: deque[float] = field(default_factory=lambda: deque(maxlen=SAMPLE_WINDOW))

    def observe(self, duration_ms: float, ok: bool) -> None:
        self.count += 1
        self.error_count += 0 if ok else 1
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)
        self.recent.append(duration_ms)

    def p95(self) -> float:
        if not self.recent:
            return 0.0
        ordered = sorted(self.recent)
        return ordered[max(math.ceil(0.95 * len(ordered)) - 1, 0)]

    def as_dict(self) -> dict[str, float | int]:
        avg = self.total_ms / self.count if self.count else 0.0
        return {
            "count": self.count,
            "error_count": self.error_count,
            "total_ms": round(self.total_ms, 3),
            "avg_ms": round(avg, 3),
            "min_ms": round(self.min_ms if self.count else 0.0, 3),
            "max_ms": round(self.max_ms, 3),
            "p95_ms": round(self.p95(), 3),
            "last_ms": round(self.recent[-1] if self.recent else 0.0, 3),
        }


_lock = Lock()
_latency: dict[str, LatencySummary] = {}
_counters: Counter[str] = Counter()


def record_latency(*, operation: str, duration_ms: float, ok: bool = True) -> None:
    """Record one latency sample; negative durations count as zero."""
    duration_ms = max(float(duration_ms), 0.0)
    with _lock:
        summary = _latency.get(operation)
        if summary is None:
            summary = _latency[operation] = LatencySummary()
        summary.observe(duration_ms, ok)
    logger.debug("%s took %.3fms ok=%s", operation, duration_ms, ok)


def increment_counter(name: str, amount: int = 1) -> None:
    with _lock:
        _counters[name] += amount


def latency_metrics_snapshot() -> dict[str, dict[str, float | int]]:
    with _lock:
        return {name: _latency[name].as_dict() for name in sorted(_latency)}


def counters_snapshot() -> dict[str, int]:
    with _lock:
        return {name: _counters[name] for name in sorted(_counters)}


def reset_metrics() -> None:
    """Forget every sample and counter."""
    with _lock:
        _latency.clear()
        _counters.clear()
