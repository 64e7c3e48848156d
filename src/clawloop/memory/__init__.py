"""Memory domain: record schemas, store capability and backends."""

from __future__ import annotations

from clawloop.config import MemoryStoreConfig
from clawloop.memory.schemas import MemoryRecord
from clawloop.memory.schemas import RecordFilter
from clawloop.memory.schemas import SourceKind
from clawloop.memory.store import InMemoryMemoryStore
from clawloop.memory.store import MemoryStore

__all__ = [
    "InMemoryMemoryStore",
    "MemoryRecord",
    "MemoryStore",
    "RecordFilter",
    "SourceKind",
    "build_memory_store",
    "create_message_record",
]


def create_message_record(
    content: str,
    *,
    role: str,
    conversation_id: str | None = None,
    embedding: list[float] | None = None,
) -> MemoryRecord:
    """Factory for a conversational message record."""
    return MemoryRecord(
        content=content,
        role=role,
        conversation_id=conversation_id,
        embedding=embedding,
        source_kind=SourceKind.message,
    )


def build_memory_store(config: MemoryStoreConfig) -> MemoryStore:
    """Create the configured store backend."""
    backend = config.backend.strip().lower()
    if backend == "memory":
        return InMemoryMemoryStore()
    if backend == "redis":
        from redis.asyncio import Redis  # type: ignore[import-untyped]

        from clawloop.memory.redis_store import RedisMemoryStore

        return RedisMemoryStore(Redis.from_url(config.redis_url), prefix=config.key_prefix)
    raise ValueError(
        f"Unsupported memory backend '{config.backend}'. Supported backends: memory, redis."
    )
