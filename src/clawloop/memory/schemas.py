"""Memory domain data models."""

from __future__ import annotations

import time
import uuid
from enum import Enum

from pydantic import BaseModel
from pydantic import Field


class SourceKind(str, Enum):
    message = "message"
    summary = "summary"


class MemoryRecord(BaseModel):
    """A durable, append-only unit of conversational or summarized context.

    Records are never rewritten in place; the only field that changes after
    persistence is ``superseded_by``, set once by the hygiene job.
    """

    id: str = Field(
        default_factory=lambda: f"rec_{uuid.uuid4().hex}",
        description="Unique identifier, auto-generated as rec_{uuid4_hex}.",
    )
    content: str = Field(description="Text content of the record.")
    embedding: list[float] | None = Field(
        default=None,
        description="Optional embedding vector used for semantic scoring.",
    )
    source_kind: SourceKind = Field(
        default=SourceKind.message,
        description="Whether this is a raw message or a hygiene summary.",
    )
    timestamp: float = Field(
        default_factory=time.time,
        description="Unix epoch when the record was created.",
    )
    superseded_by: str | None = Field(
        default=None,
        description="Id of the summary record that replaced this one.",
    )
    role: str | None = Field(
        default=None,
        description="Conversation role for message records (user, agent).",
    )
    conversation_id: str | None = Field(
        default=None,
        description="Conversation the record originated from.",
    )
    summarizes: list[str] = Field(
        default_factory=list,
        description="For summary records, the ids of the originals.",
    )

    @property
    def live(self) -> bool:
        return self.superseded_by is None


class RecordFilter(BaseModel):
    """Selection criteria for ``MemoryStore.query``."""

    include_superseded: bool = False
    source_kind: SourceKind | None = None
    conversation_id: str | None = None
    older_than: float | None = Field(
        default=None,
        description="Only records with timestamp strictly below this epoch.",
    )
    since: float | None = Field(
        default=None,
        description="Only records with timestamp at or above this epoch.",
    )
    limit: int | None = Field(default=None, ge=1)

    def matches(self, record: MemoryRecord) -> bool:
        if not self.include_superseded and record.superseded_by is not None:
            return False
        if self.source_kind is not None and record.source_kind != self.source_kind:
            return False
        if self.conversation_id is not None and record.conversation_id != self.conversation_id:
            return False
        if self.older_than is not None and record.timestamp >= self.older_than:
            return False
        if self.since is not None and record.timestamp < self.since:
            return False
        return True
