"""Records written to the audit trail."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field


class AuditEventType(str, Enum):
    POLICY_DECISION = "POLICY_DECISION"
    TOOL_EXECUTED = "TOOL_EXECUTED"
    PROVIDER_FAILURE = "PROVIDER_FAILURE"
    CIRCUIT_STATE_CHANGED = "CIRCUIT_STATE_CHANGED"
    TURN_COMPLETED = "TURN_COMPLETED"
    TURN_FAILED = "TURN_FAILED"
    HYGIENE_RUN = "HYGIENE_RUN"


class AuditEvent(BaseModel):
    """One line of the JSONL trail.

    ``payload`` carries whatever identifies the action: decision and call
    ids for policy events, provider id and error kind for gateway events,
    counts for hygiene runs.
    """

    model_config = ConfigDict(frozen=True)

    event_type: AuditEventType
    timestamp: float = Field(default_factory=time.time, description="Unix seconds.")
    payload: dict[str, Any] = Field(default_factory=dict)
