"""Async JSONL audit trail for policy decisions, tool runs and turns."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from clawloop.audit.schemas import AuditEvent
from clawloop.audit.schemas import AuditEventType
from clawloop.config import AuditConfig

logger = logging.getLogger(__name__)

REDACTED = "***"


def redact(value: Any, keys: Iterable[str]) -> Any:
    """Copy of *value* with every mapping entry named in *keys* masked."""
    lowered = {k.lower() for k in keys}
    if not lowered:
        return value
    return _redact(value, lowered)


def _redact(value: Any, keys: set[str]) -> Any:
    if isinstance(value, dict):
        return {
            k: REDACTED if str(k).lower() in keys else _redact(v, keys)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(v, keys) for v in value]
    return value


class AuditLogger:
    """Append-only JSONL audit log.

    Every decision the policy engine issues is written here so a reviewer
    can replay why a tool did or did not run.  File I/O happens in
    ``asyncio.to_thread``; an ``asyncio.Lock`` keeps lines whole.
    """

    def __init__(self, config: AuditConfig | None = None) -> None:
        self.config = config or AuditConfig()
        self._lock = asyncio.Lock()
        self._path = Path(self.config.file_path)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def emit(self, event_type: AuditEventType, **payload: Any) -> None:
        """Record one event; sensitive payload keys are masked first."""
        await self.log(
            AuditEvent(
                event_type=event_type,
                payload=redact(payload, self.config.redact_keys),
            )
        )

    async def log(self, event: AuditEvent) -> None:
        if not self.config.enabled:
            return
        line = event.model_dump_json() + "\n"
        async with self._lock:
            await asyncio.to_thread(self._write_line, line)

    def _write_line(self, line: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(line)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def read_events(
        self,
        *,
        event_type: AuditEventType | None = None,
        since: float | None = None,
        turn_id: str | None = None,
        limit: int | None = None,
    ) -> list[AuditEvent]:
        """Events in write order, filtered by type, time or turn.

        With *limit*, the most recent matching events are returned.
        """
        if not self._path.exists():
            return []
        async with self._lock:
            lines = await asyncio.to_thread(self._read_lines)

        events: list[AuditEvent] = []
        for line_no, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                event = AuditEvent.model_validate_json(line)
            except ValidationError:
                logger.warning("skipping malformed audit line %d in %s", line_no, self._path)
                continue
            if event_type is not None and event.event_type != event_type:
                continue
            if since is not None and event.timestamp < since:
                continue
            if turn_id is not None and event.payload.get("turn_id") != turn_id:
                continue
            events.append(event)
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def _read_lines(self) -> list[str]:
        with self._path.open(encoding="utf-8") as fh:
            return fh.readlines()
