"""Unit tests for the sequential reasoning engine."""

from __future__ import annotations

import asyncio

import pytest
from pydantic import ValidationError

from orchestramcp.errors import InvalidBranchOriginError
from orchestramcp.errors import InvalidRevisionTargetError
from orchestramcp.errors import NotFoundError
from orchestramcp.reasoning import SequentialReasoningEngine
from orchestramcp.reasoning import ThoughtNode
from orchestramcp.reasoning import ThoughtSession


def _node(text: str, number: int, total: int = 3, more: bool = True, **kwargs) -> ThoughtNode:
    return ThoughtNode(
        thought=text,
        thought_number=number,
        total_thoughts=total,
        next_thought_needed=more,
        **kwargs,
    )


@pytest.fixture()
def engine():
    return SequentialReasoningEngine()


# ---------------------------------------------------------------------------
# Node validation
# ---------------------------------------------------------------------------


class TestThoughtNode:
    def test_rejects_empty_thought(self):
        with pytest.raises(ValidationError):
            _node("", 1)

    def test_rejects_zero_numbers(self):
        with pytest.raises(ValidationError):
            _node("x", 0)
        with pytest.raises(ValidationError):
            _node("x", 1, total=0)
        with pytest.raises(ValidationError):
            _node("x", 1, revises_thought=0)

    def test_nodes_are_frozen(self):
        node = _node("x", 1)
        with pytest.raises(ValidationError):
            node.thought = "y"


# ---------------------------------------------------------------------------
# Trunk
# ---------------------------------------------------------------------------


class TestTrunk:
    def test_sequence_numbers_are_strictly_increasing(self):
        session = ThoughtSession()
        assert session.submit(_node("a", 1)).thought_number == 1
        assert session.submit(_node("b", 2)).thought_number == 2
        # A stale number is bumped past the tip.
        assert session.submit(_node("c", 1)).thought_number == 3
        # Gaps are kept as supplied.
        assert session.submit(_node("d", 7, total=8)).thought_number == 7
        assert session.sequences[None] == [1, 2, 3, 7]

    def test_total_hint_only_grows(self):
        session = ThoughtSession()
        ack = session.submit(_node("a", 1, total=5))
        assert ack.total_thoughts == 5
        ack = session.submit(_node("b", 2, total=2))
        assert ack.total_thoughts == 5
        ack = session.submit(_node("c", 6, total=2))
        assert ack.total_thoughts == 6

    def test_completion_requires_reaching_hint(self):
        session = ThoughtSession()
        session.submit(_node("a", 1, total=3))
        ack = session.submit(_node("b", 2, total=3, more=False))
        assert ack.branch_complete is False
        assert ack.more_needed is True

        ack = session.submit(_node("c", 3, total=3, more=False))
        assert ack.branch_complete is True
        assert ack.more_needed is False

    def test_completed_branch_reopens_on_new_thought(self):
        session = ThoughtSession()
        session.submit(_node("a", 1, total=1, more=False))
        assert None in session.completed
        ack = session.submit(_node("b", 2, total=2, more=True))
        assert ack.branch_complete is False
        assert None not in session.completed

    def test_history_length_counts_all_nodes(self):
        session = ThoughtSession()
        session.submit(_node("a", 1))
        ack = session.submit(_node("b", 2, branch_id="alt", branch_from_thought=1))
        assert ack.history_length == 2


# ---------------------------------------------------------------------------
# Branches
# ---------------------------------------------------------------------------


class TestBranches:
    async def test_branch_lineage_includes_fork_ancestors(self, engine):
        await engine.submit("s", _node("step1", 1, total=3))
        ack = await engine.submit(
            "s", _node("alt step", 2, branch_from_thought=1, branch_id="alt")
        )
        assert ack.branch_id == "alt"
        assert ack.thought_number == 2
        assert ack.known_branches == ["alt"]

        lineage = engine.lineage("s", "alt")
        assert [(n.branch_id, n.thought_number) for n in lineage] == [
            (None, 1),
            ("alt", 2),
        ]

    async def test_trunk_nodes_after_fork_are_hidden(self, engine):
        await engine.submit("s", _node("t1", 1))
        await engine.submit("s", _node("t2", 2))
        await engine.submit("s", _node("t3", 3))
        await engine.submit("s", _node("b", 2, branch_id="alt", branch_from_thought=1))

        thoughts = [n.thought for n in engine.lineage("s", "alt")]
        assert thoughts == ["t1", "b"]

    async def test_siblings_do_not_see_each_other(self, engine):
        await engine.submit("s", _node("t1", 1))
        await engine.submit("s", _node("left", 2, branch_id="left", branch_from_thought=1))
        await engine.submit("s", _node("t2", 2))
        await engine.submit("s", _node("right", 3, branch_id="right", branch_from_thought=2))

        assert [n.thought for n in engine.lineage("s", "left")] == ["t1", "left"]
        assert [n.thought for n in engine.lineage("s", "right")] == ["t1", "t2", "right"]

    async def test_branch_without_origin_forks_from_current_tip(self, engine):
        await engine.submit("s", _node("t1", 1))
        await engine.submit("s", _node("t2", 2))
        ack = await engine.submit("s", _node("b", 1, branch_id="alt"))
        assert ack.thought_number == 3
        assert [n.thought for n in engine.lineage("s", "alt")] == ["t1", "t2", "b"]

    async def test_nested_branch(self, engine):
        await engine.submit("s", _node("t1", 1))
        await engine.submit("s", _node("a2", 2, branch_id="a", branch_from_thought=1))
        await engine.submit("s", _node("a3", 3, branch_id="a"))
        await engine.submit("s", _node("b4", 4, branch_id="b", branch_from_thought=2))

        assert [n.thought for n in engine.lineage("s", "b")] == ["t1", "a2", "b4"]

    async def test_origin_must_be_visible_in_parent(self, engine):
        await engine.submit("s", _node("t1", 1))
        with pytest.raises(InvalidBranchOriginError) as exc_info:
            await engine.submit(
                "s", _node("b", 2, branch_id="alt", branch_from_thought=5)
            )
        assert exc_info.value.context["origin_branch"] == "trunk"
        with pytest.raises(NotFoundError):
            engine.lineage("s", "alt")

    async def test_revision_within_lineage(self, engine):
        await engine.submit("s", _node("t1", 1))
        await engine.submit("s", _node("t2", 2))
        ack = await engine.submit(
            "s", _node("t1 again", 3, is_revision=True, revises_thought=1)
        )
        assert ack.thought_number == 3

    async def test_revision_outside_lineage_rejected(self, engine):
        await engine.submit("s", _node("t1", 1))
        await engine.submit("s", _node("t2", 2))
        await engine.submit("s", _node("t3", 3))
        with pytest.raises(InvalidRevisionTargetError):
            await engine.submit(
                "s",
                _node(
                    "revise t3",
                    2,
                    branch_id="alt",
                    branch_from_thought=1,
                    is_revision=True,
                    revises_thought=3,
                ),
            )
        # The failed submission left no branch behind.
        assert len(engine.lineage("s")) == 3
        with pytest.raises(NotFoundError):
            engine.lineage("s", "alt")

    async def test_revision_of_missing_trunk_thought(self, engine):
        await engine.submit("s", _node("t1", 1))
        with pytest.raises(InvalidRevisionTargetError) as exc_info:
            await engine.submit("s", _node("r", 2, is_revision=True, revises_thought=4))
        assert exc_info.value.context["branch_id"] == "trunk"


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    async def test_sessions_are_independent(self, engine):
        await engine.submit("one", _node("a", 1))
        await engine.submit("one", _node("b", 2))
        ack = await engine.submit("two", _node("x", 1))
        assert ack.history_length == 1
        assert sorted(engine.session_ids) == ["one", "two"]

    async def test_concurrent_submissions_are_serialized(self, engine):
        await asyncio.gather(
            *(engine.submit("s", _node(f"t{i}", 1)) for i in range(10))
        )
        numbers = [n.thought_number for n in engine.lineage("s")]
        assert numbers == list(range(1, 11))

    async def test_close_session(self, engine):
        await engine.submit("s", _node("a", 1))
        assert await engine.close_session("s") is True
        assert await engine.close_session("s") is False
        with pytest.raises(NotFoundError):
            engine.lineage("s")

    async def test_reset_drops_everything(self, engine):
        await engine.submit("a", _node("x", 1))
        await engine.submit("b", _node("y", 1))
        await engine.reset()
        assert engine.session_ids == []
