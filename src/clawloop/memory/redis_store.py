"""Redis-backed memory store.

Records are stored as JSON strings keyed by ``{prefix}:record:{id}``.
A sorted set ``{prefix}:timeline`` indexes every record by timestamp for
range queries, and the set ``{prefix}:live`` tracks ids that have not been
superseded.  Hygiene leases live at ``{prefix}:lease:{name}``.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from pydantic import ValidationError
from redis.asyncio import Redis  # type: ignore[import-untyped]
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from clawloop.errors import MemoryStoreError
from clawloop.errors import MemoryStoreErrorKind
from clawloop.memory.schemas import MemoryRecord
from clawloop.memory.schemas import RecordFilter

logger = logging.getLogger(__name__)

_FETCH_BATCH_SIZE = 200
_MAX_WATCH_RETRIES = 5


def _decode(raw: bytes | str) -> str:
    return raw.decode() if isinstance(raw, bytes) else raw


@asynccontextmanager
async def _translate_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        raise MemoryStoreError(
            MemoryStoreErrorKind.UNAVAILABLE, f"redis {operation} failed: {exc}"
        ) from exc


class RedisMemoryStore:
    """Memory store backed by a shared Redis instance."""

    def __init__(self, redis: Redis, *, prefix: str = "clawloop") -> None:
        self._redis = redis
        self._prefix = prefix
        self._timeline_key = f"{prefix}:timeline"
        self._live_key = f"{prefix}:live"

    def _record_key(self, record_id: str) -> str:
        return f"{self._prefix}:record:{record_id}"

    def _lease_key(self, name: str) -> str:
        return f"{self._prefix}:lease:{name}"

    # -- write --

    async def append(self, record: MemoryRecord) -> bool:
        """Insert a record without ever overwriting an existing id.

        ``SET NX`` claims the id; the index writes follow in one pipeline and
        the record key is removed again if indexing fails.
        """
        key = self._record_key(record.id)
        async with _translate_errors("append"):
            created = await self._redis.set(key, record.model_dump_json(), nx=True)
            if not created:
                return False
            try:
                pipe = self._redis.pipeline()
                pipe.zadd(self._timeline_key, {record.id: record.timestamp})
                if record.superseded_by is None:
                    pipe.sadd(self._live_key, record.id)
                await pipe.execute()
            except Exception:
                await self._redis.delete(key)
                raise
        return True

    async def mark_superseded(self, record_id: str, superseded_by: str) -> bool:
        key = self._record_key(record_id)
        async with _translate_errors("mark_superseded"):
            for _ in range(_MAX_WATCH_RETRIES):
                async with self._redis.pipeline(transaction=True) as pipe:
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        if raw is None:
                            logger.warning("mark_superseded: record %s not found", record_id)
                            return False
                        record = self._parse(record_id, raw)
                        if record.superseded_by is not None:
                            return record.superseded_by == superseded_by
                        updated = record.model_copy(update={"superseded_by": superseded_by})
                        pipe.multi()
                        pipe.set(key, updated.model_dump_json())
                        pipe.srem(self._live_key, record_id)
                        await pipe.execute()
                        return True
                    except WatchError:
                        continue
        raise MemoryStoreError(
            MemoryStoreErrorKind.UNAVAILABLE,
            f"mark_superseded: too much contention on {record_id}",
        )

    # -- read --

    async def get(self, record_id: str) -> MemoryRecord | None:
        async with _translate_errors("get"):
            raw = await self._redis.get(self._record_key(record_id))
        if raw is None:
            return None
        return self._parse(record_id, raw)

    async def query(self, record_filter: RecordFilter | None = None) -> list[MemoryRecord]:
        flt = record_filter or RecordFilter()
        low = "-inf" if flt.since is None else flt.since
        high = "+inf" if flt.older_than is None else f"({flt.older_than}"
        async with _translate_errors("query"):
            raw_ids = await self._redis.zrangebyscore(self._timeline_key, low, high)
            ids = [_decode(raw_id) for raw_id in raw_ids]
            results: list[MemoryRecord] = []
            for start in range(0, len(ids), _FETCH_BATCH_SIZE):
                batch = ids[start : start + _FETCH_BATCH_SIZE]
                pipe = self._redis.pipeline()
                for record_id in batch:
                    pipe.get(self._record_key(record_id))
                raw_records = await pipe.execute()
                for record_id, raw in zip(batch, raw_records):
                    if raw is None:
                        continue
                    record = self._parse(record_id, raw)
                    if not flt.matches(record):
                        continue
                    results.append(record)
                    if flt.limit is not None and len(results) >= flt.limit:
                        return results
        return results

    async def list_since(self, timestamp: float) -> list[MemoryRecord]:
        return await self.query(RecordFilter(since=timestamp, include_superseded=True))

    async def count(self, *, include_superseded: bool = False) -> int:
        async with _translate_errors("count"):
            if include_superseded:
                return await self._redis.zcard(self._timeline_key)
            return await self._redis.scard(self._live_key)

    # -- hygiene lease --

    async def acquire_lease(self, name: str, ttl_seconds: float) -> str | None:
        token = uuid.uuid4().hex
        async with _translate_errors("acquire_lease"):
            acquired = await self._redis.set(
                self._lease_key(name), token, nx=True, px=max(int(ttl_seconds * 1000), 1)
            )
        return token if acquired else None

    async def release_lease(self, name: str, token: str) -> bool:
        key = self._lease_key(name)
        async with _translate_errors("release_lease"):
            async with self._redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    current = await pipe.get(key)
                    if current is None or _decode(current) != token:
                        return False
                    pipe.multi()
                    pipe.delete(key)
                    await pipe.execute()
                    return True
                except WatchError:
                    return False

    async def clear(self) -> None:
        """Remove every key under this store's prefix (test helper)."""
        async with _translate_errors("clear"):
            batch: list = []
            async for key in self._redis.scan_iter(match=f"{self._prefix}:*"):
                batch.append(key)
                if len(batch) >= _FETCH_BATCH_SIZE:
                    await self._redis.delete(*batch)
                    batch.clear()
            if batch:
                await self._redis.delete(*batch)

    async def close(self) -> None:
        await self._redis.aclose()

    @staticmethod
    def _parse(record_id: str, raw: bytes | str) -> MemoryRecord:
        try:
            return MemoryRecord.model_validate_json(raw)
        except ValidationError as exc:
            raise MemoryStoreError(
                MemoryStoreErrorKind.CORRUPT, f"record {record_id} is unreadable: {exc}"
            ) from exc
