"""Audit subsystem: async JSONL event logging."""

from orchestramcp.audit.schemas import AuditEvent
from orchestramcp.audit.schemas import AuditEventType
from orchestramcp.audit.store import AuditLogger

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
]
