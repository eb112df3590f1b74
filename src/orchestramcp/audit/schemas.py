"""Audit event types and data models."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field


class AuditEventType(str, Enum):
    """Categories of auditable orchestration events."""

    SERVER_REGISTERED = "SERVER_REGISTERED"
    HEALTH_CHANGED = "HEALTH_CHANGED"
    DISPATCH_FAILED = "DISPATCH_FAILED"
    FALLBACK_USED = "FALLBACK_USED"
    MEMORY_MERGED = "MEMORY_MERGED"
    WORKFLOW_FAILED = "WORKFLOW_FAILED"


class AuditEvent(BaseModel):
    """A single immutable audit log entry."""

    model_config = {"frozen": True}

    timestamp: float = Field(
        default_factory=time.time,
        description="Unix epoch when the event occurred.",
    )
    event_type: AuditEventType = Field(
        description="Category of the audited action.",
    )
    server: str | None = Field(
        default=None,
        description="Server the event concerns, when there is one.",
    )
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Event-specific data.",
    )
