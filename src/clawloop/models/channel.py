"""Result models returned by the MCP channel tools."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel
from pydantic import Field

from clawloop.models.provider import ProviderDescriptor


class PendingCall(BaseModel):
    call_id: str
    tool_name: str
    arguments: dict = Field(default_factory=dict)
    reason: str = ""


class SubmitMessageResult(BaseModel):
    """Reply to ``submit_message`` and ``confirm_tool_call``."""

    status: Literal["done", "failed", "rejected"] = "done"
    turn_id: str = ""
    conversation_id: str = ""
    response: str = ""
    provider_id: str | None = None
    iterations: int = 0
    pending_confirmations: list[PendingCall] = Field(default_factory=list)
    error_code: str | None = None
    message: str | None = None


class MemoryHit(BaseModel):
    id: str
    content: str
    score: float
    timestamp: float
    source_kind: str


class SearchMemoryResult(BaseModel):
    status: Literal["ok", "error"] = "ok"
    query: str
    hits: list[MemoryHit] = Field(default_factory=list)
    error_code: str | None = None
    message: str | None = None


class HygieneRunResult(BaseModel):
    status: Literal["ok", "skipped", "error"] = "ok"
    run_id: str | None = None
    selected: int = 0
    groups_summarized: int = 0
    records_superseded: int = 0
    errors: list[str] = Field(default_factory=list)
    message: str | None = None


class ProviderHealthResult(BaseModel):
    providers: list[ProviderDescriptor] = Field(default_factory=list)


class RuntimeMetricsResult(BaseModel):
    latency: dict[str, dict[str, float]] = Field(
        default_factory=dict,
        description="Per-operation latency aggregates in milliseconds.",
    )
    counters: dict[str, int] = Field(default_factory=dict)
