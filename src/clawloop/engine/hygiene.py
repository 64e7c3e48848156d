"""Memory hygiene: summarize aged records and supersede the originals.

A run selects live message records that are older than the retention age,
or the oldest ones beyond the live-record cap, groups them in timestamp
order and asks the provider gateway for one summary per group.  The
summary is appended as a new record and the originals are soft-deleted
by setting ``superseded_by``.

Runs are single-flight across processes through the store's exclusive
lease, and idempotent: the summary id is a hash of its members, members
are re-checked before each group, and an existing summary is reused.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
import uuid
from collections.abc import Callable
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from time import perf_counter

from clawloop.audit import AuditEventType
from clawloop.audit import AuditLogger
from clawloop.config import HygieneConfig
from clawloop.engine.embeddings import Embedder
from clawloop.engine.embeddings import EmbeddingError
from clawloop.engine.gateway import ProviderGateway
from clawloop.errors import ProviderError
from clawloop.memory.schemas import MemoryRecord
from clawloop.memory.schemas import RecordFilter
from clawloop.memory.schemas import SourceKind
from clawloop.memory.store import MemoryStore
from clawloop.observability import increment_counter
from clawloop.observability import record_latency

logger = logging.getLogger(__name__)

LEASE_NAME = "hygiene"

_SUMMARY_INSTRUCTIONS = (
    "Summarize the following conversation excerpts into a compact note that "
    "preserves facts, decisions, names and open questions. Reply with the "
    "summary text only.\n\n"
)


@dataclass
class HygieneReport:
    """Outcome of a single hygiene run."""

    run_id: str
    started_at: float
    lease_acquired: bool = True
    selected: int = 0
    groups_summarized: int = 0
    groups_skipped: int = 0
    records_superseded: int = 0
    summaries_reused: int = 0
    errors: list[str] = field(default_factory=list)


def summary_id_for(member_ids: Sequence[str]) -> str:
    """Deterministic summary id for a set of originals."""
    payload = "|".join(sorted(member_ids))
    return f"sum_{hashlib.sha256(payload.encode('utf-8')).hexdigest()[:24]}"


def build_summary_prompt(records: Sequence[MemoryRecord]) -> str:
    lines = [
        f"[{record.role or record.source_kind.value}] {record.content}" for record in records
    ]
    return _SUMMARY_INSTRUCTIONS + "\n".join(lines)


class HygieneScheduler:
    """Periodic, on-demand or size-triggered memory summarization."""

    def __init__(
        self,
        store: MemoryStore,
        gateway: ProviderGateway,
        config: HygieneConfig | None = None,
        *,
        embedder: Embedder | None = None,
        audit_logger: AuditLogger | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._config = config or HygieneConfig()
        if self._config.group_size < 1 or self._config.min_group_size < 1:
            raise ValueError("group sizes must be >= 1")
        self._store = store
        self._gateway = gateway
        self._embedder = embedder
        self._audit = audit_logger
        self._clock = clock or time.time
        self._task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the interval loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="clawloop-hygiene")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.interval_seconds)
            try:
                await self.run_once()
            except Exception:
                logger.exception("hygiene run failed")

    async def maybe_trigger(self) -> HygieneReport | None:
        """Run now if the live record count crossed the size threshold."""
        live = await self._store.count()
        if live <= self._config.max_live_records:
            return None
        logger.info(
            "live memory count %d above threshold %d, running hygiene",
            live,
            self._config.max_live_records,
        )
        return await self.run_once()

    # ------------------------------------------------------------------
    # One run
    # ------------------------------------------------------------------

    async def run_once(self) -> HygieneReport:
        """Execute one hygiene pass under the store lease."""
        start = perf_counter()
        report = HygieneReport(run_id=uuid.uuid4().hex, started_at=self._clock())
        token = await self._store.acquire_lease(LEASE_NAME, self._config.lease_ttl_seconds)
        if token is None:
            logger.info("hygiene lease held elsewhere, skipping run")
            report.lease_acquired = False
            increment_counter("hygiene.skipped_lease")
            return report

        try:
            selected = await self.select_candidates(report.started_at)
            report.selected = len(selected)
            for group in self._groups(selected):
                try:
                    await self._process_group(group, report)
                except ProviderError as exc:
                    # Remaining groups would hit the same providers
                    logger.warning("hygiene summarization failed: %s", exc)
                    report.errors.append(str(exc))
                    break
        finally:
            await self._store.release_lease(LEASE_NAME, token)
            record_latency(
                operation="hygiene.run",
                duration_ms=(perf_counter() - start) * 1000,
                ok=not report.errors,
            )

        if self._audit is not None:
            await self._audit.emit(
                AuditEventType.HYGIENE_RUN,
                run_id=report.run_id,
                selected=report.selected,
                groups_summarized=report.groups_summarized,
                groups_skipped=report.groups_skipped,
                records_superseded=report.records_superseded,
                summaries_reused=report.summaries_reused,
                errors=report.errors,
            )
        logger.info(
            "hygiene run %s: %d selected, %d summarized, %d superseded",
            report.run_id,
            report.selected,
            report.groups_summarized,
            report.records_superseded,
        )
        return report

    async def select_candidates(self, now: float) -> list[MemoryRecord]:
        """Live message records eligible for summarization, oldest first."""
        messages = await self._store.query(RecordFilter(source_kind=SourceKind.message))
        cutoff = now - self._config.max_age_seconds
        aged = sum(1 for record in messages if record.timestamp < cutoff)
        overflow = await self._store.count() - self._config.max_live_records
        # Both criteria select a prefix of the oldest-first list
        return messages[: max(aged, overflow, 0)]

    def _groups(self, records: list[MemoryRecord]) -> list[list[MemoryRecord]]:
        size = self._config.group_size
        return [records[i : i + size] for i in range(0, len(records), size)]

    async def _process_group(self, group: list[MemoryRecord], report: HygieneReport) -> None:
        current: list[MemoryRecord] = []
        for record in group:
            fresh = await self._store.get(record.id)
            if fresh is not None and fresh.live:
                current.append(fresh)
        if len(current) < self._config.min_group_size:
            report.groups_skipped += 1
            return

        member_ids = [record.id for record in current]
        summary_id = summary_id_for(member_ids)
        summary = await self._store.get(summary_id)
        if summary is None:
            summary = await self._summarize(summary_id, current)
            if not summary.content:
                logger.warning("empty summary for group %s, leaving originals live", summary_id)
                report.groups_skipped += 1
                return
            if not await self._store.append(summary):
                # Another writer persisted the same summary first
                report.summaries_reused += 1
        else:
            report.summaries_reused += 1

        for record_id in member_ids:
            if await self._store.mark_superseded(record_id, summary_id):
                report.records_superseded += 1
        report.groups_summarized += 1
        increment_counter("hygiene.groups_summarized")

    async def _summarize(self, summary_id: str, records: list[MemoryRecord]) -> MemoryRecord:
        response = await self._gateway.complete(build_summary_prompt(records))
        content = response.text.strip()[: self._config.summary_max_chars]
        embedding: list[float] | None = None
        if self._embedder is not None and content:
            try:
                embedding = (await self._embedder.embed([content]))[0]
            except EmbeddingError as exc:
                logger.warning("summary embedding failed for %s: %s", summary_id, exc)
        conversation_ids = {record.conversation_id for record in records}
        return MemoryRecord(
            id=summary_id,
            content=content,
            embedding=embedding,
            source_kind=SourceKind.summary,
            timestamp=max(record.timestamp for record in records),
            conversation_id=conversation_ids.pop() if len(conversation_ids) == 1 else None,
            summarizes=[record.id for record in records],
        )
