"""Audit trail of runtime decisions."""

from clawloop.audit.schemas import AuditEvent
from clawloop.audit.schemas import AuditEventType
from clawloop.audit.store import AuditLogger
from clawloop.audit.store import redact

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
    "redact",
]
