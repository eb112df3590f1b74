"""Unit tests for the JSONL audit logger."""

from __future__ import annotations

import json

import pytest

from orchestramcp.audit import AuditEvent
from orchestramcp.audit import AuditEventType
from orchestramcp.audit import AuditLogger
from orchestramcp.config import AuditConfig
from orchestramcp.registry import HealthStatus


@pytest.fixture()
def audit_path(tmp_path):
    return tmp_path / "audit.jsonl"


@pytest.fixture()
def audit(audit_path):
    return AuditLogger(AuditConfig(file_path=str(audit_path), recent_events=2))


class TestAuditLogger:
    async def test_writes_one_json_line_per_event(self, audit, audit_path):
        await audit.log(
            AuditEvent(event_type=AuditEventType.SERVER_REGISTERED, server="alpha")
        )
        await audit.log(
            AuditEvent(
                event_type=AuditEventType.MEMORY_MERGED,
                payload={"kept": "mem_1", "removed": "mem_2"},
            )
        )
        lines = audit_path.read_text().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[0])["event_type"] == "SERVER_REGISTERED"
        assert json.loads(lines[1])["payload"]["removed"] == "mem_2"

    async def test_disabled_logger_writes_nothing(self, audit_path):
        audit = AuditLogger(AuditConfig(file_path=str(audit_path), enabled=False))
        await audit.log(AuditEvent(event_type=AuditEventType.DISPATCH_FAILED))
        assert not audit_path.exists()
        assert audit.recent() == []

    async def test_recent_tail_is_bounded(self, audit):
        for server in ("a", "b", "c"):
            await audit.log(
                AuditEvent(event_type=AuditEventType.SERVER_REGISTERED, server=server)
            )
        assert [e.server for e in audit.recent()] == ["b", "c"]

    async def test_health_change_hook(self, audit):
        await audit.log_health_change(
            "alpha", HealthStatus.healthy, HealthStatus.degraded
        )
        event = audit.recent(event_type=AuditEventType.HEALTH_CHANGED)[0]
        assert event.server == "alpha"
        assert event.payload == {"from": "healthy", "to": "degraded"}

    async def test_read_events_filters(self, audit):
        await audit.log(AuditEvent(event_type=AuditEventType.SERVER_REGISTERED, server="a"))
        await audit.log(
            AuditEvent(event_type=AuditEventType.DISPATCH_FAILED, server="a", timestamp=50.0)
        )
        await audit.log(AuditEvent(event_type=AuditEventType.DISPATCH_FAILED, server="b"))

        failed = await audit.read_events(event_type=AuditEventType.DISPATCH_FAILED)
        assert [e.server for e in failed] == ["a", "b"]
        only_b = await audit.read_events(server="b")
        assert len(only_b) == 1
        recent = await audit.read_events(since=100.0)
        assert all(e.timestamp >= 100.0 for e in recent)
        assert len(recent) == 2

    async def test_read_events_skips_malformed_lines(self, audit, audit_path):
        await audit.log(AuditEvent(event_type=AuditEventType.SERVER_REGISTERED))
        with open(audit_path, "a") as fh:
            fh.write("not-json\n")
        events = await audit.read_events()
        assert len(events) == 1

    async def test_read_events_without_file(self, audit):
        assert await audit.read_events() == []
