"""Error taxonomy shared by every runtime subsystem.

Each family carries a ``kind`` enum so callers branch on the failure
category instead of on message text.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ClawloopError(Exception):
    """Base class for all runtime errors."""


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class ProviderErrorKind(str, Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    AUTH = "auth"
    FATAL = "fatal"


@dataclass(frozen=True)
class ProviderAttempt:
    """Outcome of one call against one provider."""

    provider_id: str
    attempt: int
    kind: ProviderErrorKind
    message: str


class ProviderError(ClawloopError):
    """Raised by provider adapters and by the gateway once all fail."""

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str,
        *,
        retry_after: float | None = None,
        attempts: list[ProviderAttempt] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.retry_after = retry_after
        self.attempts = attempts or []

    @property
    def retryable(self) -> bool:
        return self.kind in (ProviderErrorKind.TRANSIENT, ProviderErrorKind.RATE_LIMITED)


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


class MemoryStoreErrorKind(str, Enum):
    UNAVAILABLE = "unavailable"
    CORRUPT = "corrupt"


class MemoryStoreError(ClawloopError):
    def __init__(self, kind: MemoryStoreErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class PolicyErrorKind(str, Enum):
    DENIED = "denied"
    RATE_LIMITED = "rate_limited"
    WRONG_APPROVER = "wrong_approver"


class PolicyError(ClawloopError):
    """Raised when a tool call is attempted without a usable Allow decision."""

    def __init__(self, kind: PolicyErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class ToolErrorKind(str, Enum):
    TIMEOUT = "timeout"
    INVALID_ARGS = "invalid_args"
    EXECUTION_FAILED = "execution_failed"


class ToolError(ClawloopError):
    def __init__(self, kind: ToolErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def recoverable(self) -> bool:
        return self.kind in (ToolErrorKind.INVALID_ARGS, ToolErrorKind.EXECUTION_FAILED)


# ---------------------------------------------------------------------------
# Turns
# ---------------------------------------------------------------------------


class TurnErrorKind(str, Enum):
    MAX_ITERATIONS_EXCEEDED = "max_iterations_exceeded"
    ABORTED = "aborted"


class TurnError(ClawloopError):
    def __init__(self, kind: TurnErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
