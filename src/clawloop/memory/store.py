"""Memory store capability and the in-process backend.

``MemoryStore`` is the narrow contract the retriever, the hygiene job and
the turn controller depend on.  ``InMemoryMemoryStore`` keeps records in a
dict with a timestamp-ordered index; writes are serialized per record and
reads never take a lock.
"""

from __future__ import annotations

import asyncio
import bisect
import logging
import time
import uuid
from collections import defaultdict
from typing import Protocol
from typing import runtime_checkable

from clawloop.memory.schemas import MemoryRecord
from clawloop.memory.schemas import RecordFilter

logger = logging.getLogger(__name__)


@runtime_checkable
class MemoryStore(Protocol):
    """Durable keyed storage of memory records."""

    async def append(self, record: MemoryRecord) -> bool:
        """Insert *record*; return ``False`` when the id already exists."""

    async def get(self, record_id: str) -> MemoryRecord | None:
        """Return one record by id."""

    async def query(self, record_filter: RecordFilter | None = None) -> list[MemoryRecord]:
        """Return matching records ordered oldest first."""

    async def mark_superseded(self, record_id: str, superseded_by: str) -> bool:
        """Set ``superseded_by`` once; ``False`` if missing or already set elsewhere."""

    async def list_since(self, timestamp: float) -> list[MemoryRecord]:
        """Return all records with ``timestamp >= timestamp``, oldest first."""

    async def count(self, *, include_superseded: bool = False) -> int:
        """Return the number of (live) records."""

    async def acquire_lease(self, name: str, ttl_seconds: float) -> str | None:
        """Take an exclusive named lease; returns a token or ``None`` if held."""

    async def release_lease(self, name: str, token: str) -> bool:
        """Release a lease if *token* still owns it."""


class InMemoryMemoryStore:
    """Process-local store used for tests and single-process deployments."""

    def __init__(self) -> None:
        self._records: dict[str, MemoryRecord] = {}
        # (timestamp, id) pairs kept sorted for range queries
        self._timeline: list[tuple[float, str]] = []
        self._record_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._leases: dict[str, tuple[str, float]] = {}

    async def append(self, record: MemoryRecord) -> bool:
        async with self._record_locks[record.id]:
            if record.id in self._records:
                return False
            self._records[record.id] = record.model_copy(deep=True)
            bisect.insort(self._timeline, (record.timestamp, record.id))
        return True

    async def get(self, record_id: str) -> MemoryRecord | None:
        record = self._records.get(record_id)
        return record.model_copy(deep=True) if record is not None else None

    async def query(self, record_filter: RecordFilter | None = None) -> list[MemoryRecord]:
        flt = record_filter or RecordFilter()
        start = 0
        if flt.since is not None:
            start = bisect.bisect_left(self._timeline, (flt.since, ""))
        results: list[MemoryRecord] = []
        for ts, record_id in self._timeline[start:]:
            if flt.older_than is not None and ts >= flt.older_than:
                break
            record = self._records[record_id]
            if not flt.matches(record):
                continue
            results.append(record.model_copy(deep=True))
            if flt.limit is not None and len(results) >= flt.limit:
                break
        return results

    async def mark_superseded(self, record_id: str, superseded_by: str) -> bool:
        async with self._record_locks[record_id]:
            record = self._records.get(record_id)
            if record is None:
                logger.warning("mark_superseded: record %s not found", record_id)
                return False
            if record.superseded_by is not None:
                return record.superseded_by == superseded_by
            self._records[record_id] = record.model_copy(
                update={"superseded_by": superseded_by}
            )
        return True

    async def list_since(self, timestamp: float) -> list[MemoryRecord]:
        return await self.query(RecordFilter(since=timestamp, include_superseded=True))

    async def count(self, *, include_superseded: bool = False) -> int:
        if include_superseded:
            return len(self._records)
        return sum(1 for r in self._records.values() if r.superseded_by is None)

    async def acquire_lease(self, name: str, ttl_seconds: float) -> str | None:
        now = time.monotonic()
        held = self._leases.get(name)
        if held is not None and held[1] > now:
            return None
        token = uuid.uuid4().hex
        self._leases[name] = (token, now + ttl_seconds)
        return token

    async def release_lease(self, name: str, token: str) -> bool:
        held = self._leases.get(name)
        if held is None or held[0] != token:
            return False
        del self._leases[name]
        return True
