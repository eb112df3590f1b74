"""Async JSONL audit logger with an in-memory tail of recent events."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from pathlib import Path

from pydantic import ValidationError

from orchestramcp.audit.schemas import AuditEvent
from orchestramcp.audit.schemas import AuditEventType
from orchestramcp.config import AuditConfig
from orchestramcp.registry.schemas import HealthStatus

logger = logging.getLogger(__name__)


def _matches(
    event: AuditEvent,
    event_type: AuditEventType | None,
    server: str | None,
    since: float | None,
) -> bool:
    if event_type is not None and event.event_type != event_type:
        return False
    if server is not None and event.server != server:
        return False
    return since is None or event.timestamp >= since


class AuditLogger:
    """Append-only JSONL audit log.

    File I/O runs in a worker thread and is serialized by one
    ``asyncio.Lock``.  The newest ``recent_events`` entries stay in memory
    so ``server_health`` can report them without touching the file.
    """

    def __init__(self, config: AuditConfig) -> None:
        self.config = config
        self._path = Path(config.file_path)
        self._lock = asyncio.Lock()
        self._recent: deque[AuditEvent] = deque(maxlen=max(config.recent_events, 1))

    async def log(self, event: AuditEvent) -> None:
        """Record *event* in the tail and append it to the file."""
        if not self.config.enabled:
            return
        self._recent.append(event)
        async with self._lock:
            await asyncio.to_thread(self._write_line, event.model_dump_json())

    async def log_health_change(
        self, server: str, previous: HealthStatus, current: HealthStatus
    ) -> None:
        """Registry ``on_health_change`` hook."""
        await self.log(
            AuditEvent(
                event_type=AuditEventType.HEALTH_CHANGED,
                server=server,
                payload={"from": previous.value, "to": current.value},
            )
        )

    def recent(self, *, event_type: AuditEventType | None = None) -> list[AuditEvent]:
        """Oldest-first view of the in-memory tail."""
        return [e for e in self._recent if _matches(e, event_type, None, None)]

    async def read_events(
        self,
        *,
        event_type: AuditEventType | None = None,
        server: str | None = None,
        since: float | None = None,
    ) -> list[AuditEvent]:
        """Load events back from the audit file, optionally filtered."""
        async with self._lock:
            events = await asyncio.to_thread(self._load)
        return [e for e in events if _matches(e, event_type, server, since)]

    # ------------------------------------------------------------------
    # Blocking helpers (worker thread)
    # ------------------------------------------------------------------

    def _write_line(self, line: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a") as fh:
            fh.write(line + "\n")

    def _load(self) -> list[AuditEvent]:
        if not self._path.exists():
            return []
        events: list[AuditEvent] = []
        with self._path.open() as fh:
            for line_no, line in enumerate(fh, start=1):
                if not line.strip():
                    continue
                try:
                    events.append(AuditEvent.model_validate_json(line))
                except ValidationError:
                    logger.warning(
                        "Skipping malformed audit line %d in %s", line_no, self._path
                    )
        return events
