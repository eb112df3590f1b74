"""Unit tests for the workflow coordinator and the capture_knowledge steps."""

from __future__ import annotations

import asyncio

import pytest

from orchestramcp.audit import AuditEventType
from orchestramcp.audit import AuditLogger
from orchestramcp.config import GRAPH_SERVER
from orchestramcp.config import MEMORY_SERVER
from orchestramcp.config import AuditConfig
from orchestramcp.dispatch import LocalTransport
from orchestramcp.errors import DanglingReferenceError
from orchestramcp.errors import NotFoundError
from orchestramcp.errors import PartialWorkflowFailure
from orchestramcp.observability import metrics_snapshot
from orchestramcp.workflow import CAPTURE_KNOWLEDGE
from orchestramcp.workflow import WorkflowCoordinator
from orchestramcp.workflow import WorkflowStep
from orchestramcp.workflow import capture_knowledge_steps
from orchestramcp.workflow import dispatch_step


def _step(name, result=None, error=None, fatal=True, log=None):
    async def _action(context):
        if log is not None:
            log.append(name)
        if error is not None:
            raise error
        return result

    return WorkflowStep(name=name, action=_action, fatal=fatal)


@pytest.fixture()
def audit(tmp_path):
    return AuditLogger(AuditConfig(file_path=str(tmp_path / "audit.jsonl")))


@pytest.fixture()
def workflows(audit):
    return WorkflowCoordinator(audit_logger=audit)


# ---------------------------------------------------------------------------
# Step semantics
# ---------------------------------------------------------------------------


class TestWorkflowRun:
    async def test_all_steps_succeed(self, workflows):
        result = await workflows.run("demo", [_step("a", 1), _step("b", 2)])
        assert result.completed == [0, 1]
        assert result.results == {"a": 1, "b": 2}
        assert result.warnings == []
        assert metrics_snapshot()["workflow.demo"]["failures"] == 0

    async def test_fatal_failure_reports_completed_prefix(self, workflows, audit):
        ran = []
        steps = [
            _step("a", "done", log=ran),
            _step("b", error=RuntimeError("boom"), log=ran),
            _step("c", log=ran),
        ]
        with pytest.raises(PartialWorkflowFailure) as exc_info:
            await workflows.run("demo", steps)

        failure = exc_info.value
        assert failure.completed == [0]
        assert failure.failed_at == 1
        assert failure.failed_step == "b"
        assert failure.results == {"a": "done"}
        assert isinstance(failure.__cause__, RuntimeError)
        assert ran == ["a", "b"]

        details = failure.to_dict()["details"]
        assert details["error"]["error_code"] == "RuntimeError"
        events = await audit.read_events(event_type=AuditEventType.WORKFLOW_FAILED)
        assert events[0].payload["failed_step"] == "b"
        assert metrics_snapshot()["workflow.demo"]["failures"] == 1

    async def test_orchestra_error_is_embedded(self, workflows):
        steps = [_step("a", error=NotFoundError("memory", "mem_1"))]
        with pytest.raises(PartialWorkflowFailure) as exc_info:
            await workflows.run("demo", steps)
        embedded = exc_info.value.to_dict()["details"]["error"]
        assert embedded["error_code"] == "not_found"
        assert exc_info.value.completed == []

    async def test_non_fatal_failure_becomes_warning(self, workflows):
        steps = [
            _step("a", 1),
            _step("b", error=ValueError("meh"), fatal=False),
            _step("c", 3),
        ]
        result = await workflows.run("demo", steps)
        assert result.completed == [0, 2]
        assert result.failed_non_fatal == [1]
        assert result.warnings == ["b: ValueError: meh"]
        assert "b" not in result.results

    async def test_warnings_carried_into_later_fatal_failure(self, workflows):
        steps = [
            _step("a", error=ValueError("meh"), fatal=False),
            _step("b", error=RuntimeError("boom")),
        ]
        with pytest.raises(PartialWorkflowFailure) as exc_info:
            await workflows.run("demo", steps)
        assert exc_info.value.warnings == ["a: ValueError: meh"]

    async def test_steps_see_earlier_results(self, workflows):
        async def _double(context):
            return context.results["a"] * 2 + context.params["offset"]

        steps = [_step("a", 5), WorkflowStep(name="b", action=_double)]
        result = await workflows.run("demo", steps, params={"offset": 1})
        assert result.results["b"] == 11

    async def test_cancelled_step_is_a_fatal_failure(self, workflows):
        steps = [_step("a", 1), _step("b", error=asyncio.CancelledError())]
        with pytest.raises(PartialWorkflowFailure) as exc_info:
            await workflows.run("demo", steps)
        assert exc_info.value.completed == [0]
        assert exc_info.value.failed_at == 1

    async def test_outer_cancellation_propagates_after_recording(self, workflows, audit):
        started = asyncio.Event()

        async def _hang(context):
            started.set()
            await asyncio.sleep(60)

        task = asyncio.create_task(
            workflows.run("demo", [_step("a", 1), WorkflowStep(name="b", action=_hang)])
        )
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        events = audit.recent(event_type=AuditEventType.WORKFLOW_FAILED)
        assert events[0].payload["completed"] == [0]


# ---------------------------------------------------------------------------
# Dispatch-backed steps
# ---------------------------------------------------------------------------


class TestDispatchSteps:
    async def test_payload_builder_receives_context(
        self, coordinator, registry, make_descriptor, workflows
    ):
        seen = []

        async def _record(payload):
            seen.append(payload)
            return {"echo": payload}

        registry.register(make_descriptor("alpha", endpoint="local://alpha"))
        coordinator.attach("alpha", LocalTransport("alpha", {"op": _record}))

        steps = [
            dispatch_step(coordinator, "alpha", "op", {"n": 1}, name="first"),
            dispatch_step(
                coordinator,
                "alpha",
                "op",
                lambda ctx: {"n": ctx.results["first"]["echo"]["n"] + 1},
            ),
        ]
        result = await workflows.run("demo", steps)
        assert seen == [{"n": 1}, {"n": 2}]
        assert "alpha.op" in result.results

    async def test_dispatch_error_surfaces_as_step_failure(
        self, coordinator, registry, make_descriptor, workflows
    ):
        steps = [dispatch_step(coordinator, "ghost", "op", {})]
        with pytest.raises(PartialWorkflowFailure) as exc_info:
            await workflows.run("demo", steps)
        assert exc_info.value.to_dict()["details"]["error"]["error_code"] == "unknown_server"


class TestCaptureKnowledgeSteps:
    @pytest.fixture()
    def backends(self, coordinator, registry, make_descriptor):
        calls: list[tuple[str, dict]] = []

        async def _create_memory(payload):
            calls.append(("create_memory", payload))
            return {"memory": {"id": "mem_1", "title": payload["title"]}}

        async def _create_entities(payload):
            calls.append(("create_entities", payload))
            return {"entities": payload["entities"]}

        async def _create_relations(payload):
            calls.append(("create_relations", payload))
            raise DanglingReferenceError(["Ghost"])

        async def _add_observations(payload):
            calls.append(("add_observations", payload))
            return {"results": []}

        memory_ops = {"create_memory": _create_memory}
        graph_ops = {
            "create_entities": _create_entities,
            "create_relations": _create_relations,
            "add_observations": _add_observations,
        }
        registry.register(
            make_descriptor(MEMORY_SERVER, capabilities=memory_ops, endpoint="local://memory")
        )
        registry.register(
            make_descriptor(GRAPH_SERVER, capabilities=graph_ops, endpoint="local://graph")
        )
        coordinator.attach(MEMORY_SERVER, LocalTransport(MEMORY_SERVER, memory_ops))
        coordinator.attach(GRAPH_SERVER, LocalTransport(GRAPH_SERVER, graph_ops))
        return calls

    async def test_links_memory_into_entities(self, coordinator, workflows, backends):
        steps = capture_knowledge_steps(
            coordinator,
            memory={"title": "Stack", "content": "uses Redis"},
            entities=[{"name": "Redis", "entity_type": "database"}],
            relations=[],
        )
        assert [s.name for s in steps] == ["create_memory", "create_entities", "link_memory"]

        result = await workflows.run(CAPTURE_KNOWLEDGE, steps)
        assert result.completed == [0, 1, 2]
        assert backends[-1] == (
            "add_observations",
            {"observations": [{"entity_name": "Redis", "contents": ["memory:mem_1 (Stack)"]}]},
        )

    async def test_dangling_relation_halts_before_linking(
        self, coordinator, workflows, backends
    ):
        steps = capture_knowledge_steps(
            coordinator,
            memory={"title": "Stack", "content": "uses Redis"},
            entities=[{"name": "Redis", "entity_type": "database"}],
            relations=[{"from": "Redis", "to": "Ghost", "relation_type": "uses"}],
        )
        with pytest.raises(PartialWorkflowFailure) as exc_info:
            await workflows.run(CAPTURE_KNOWLEDGE, steps)

        failure = exc_info.value
        assert failure.completed == [0, 1]
        assert failure.failed_step == "create_relations"
        assert failure.results["create_memory"]["memory"]["id"] == "mem_1"
        assert [name for name, _ in backends] == [
            "create_memory",
            "create_entities",
            "create_relations",
        ]
