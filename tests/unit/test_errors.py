"""Unit tests for the error taxonomy."""

from __future__ import annotations

from orchestramcp.errors import DanglingReferenceError
from orchestramcp.errors import DispatchFailure
from orchestramcp.errors import InvalidBranchOriginError
from orchestramcp.errors import NotFoundError
from orchestramcp.errors import OrchestraError
from orchestramcp.errors import PartialWorkflowFailure
from orchestramcp.errors import ServerUnavailableError


def test_context_drops_none_values():
    error = OrchestraError("boom", server="alpha", operation=None)
    assert error.to_dict() == {
        "error_code": "orchestra_error",
        "message": "boom",
        "details": {"server": "alpha"},
    }


def test_not_found():
    error = NotFoundError("memory", "mem_1")
    assert str(error) == "memory 'mem_1' not found"
    assert error.to_dict()["error_code"] == "not_found"


def test_server_unavailable_reports_zero_attempts():
    error = ServerUnavailableError("alpha", "op")
    assert error.context["attempts"] == 0


def test_dispatch_failure_summarizes_last_error():
    error = DispatchFailure("alpha", "op", attempts=3, last_error=TimeoutError("slow"))
    assert error.context["last_error"] == "TimeoutError: slow"
    assert error.attempts == 3


def test_dangling_reference_sorts_and_dedupes():
    error = DanglingReferenceError(["b", "a", "b"])
    assert error.missing == ["a", "b"]
    assert "a, b" in error.message


def test_branch_origin_names_trunk():
    error = InvalidBranchOriginError("alt", None, 4)
    assert error.context == {
        "branch_id": "alt",
        "origin_branch": "trunk",
        "branch_from_thought": 4,
    }


class TestPartialWorkflowFailure:
    def test_embeds_orchestra_error(self):
        failure = PartialWorkflowFailure(
            "capture_knowledge",
            completed=[0, 1],
            failed_at=2,
            failed_step="create_relations",
            error=DanglingReferenceError(["Ghost"]),
        )
        details = failure.to_dict()["details"]
        assert details["completed"] == [0, 1]
        assert details["error"]["error_code"] == "dangling_reference"
        assert "warnings" not in details

    def test_embeds_plain_exception(self):
        failure = PartialWorkflowFailure(
            "demo",
            completed=[],
            failed_at=0,
            failed_step="a",
            error=ValueError("bad"),
            warnings=["x: failed"],
            results={"a": 1},
        )
        details = failure.to_dict()["details"]
        assert details["error"] == {"error_code": "ValueError", "message": "bad"}
        assert details["warnings"] == ["x: failed"]
        assert failure.results == {"a": 1}
