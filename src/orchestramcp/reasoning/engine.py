"""Sequential reasoning engine.

A session is an arena of thought nodes indexed by ``(branch_id,
sequence_number)``; the trunk has ``branch_id=None``.  Branch origins are
kept as back-references ``branch -> (parent_branch, origin_number)`` in a
branch directory, so a branch lineage is the branch's own nodes plus its
ancestors' nodes up to each fork point.  Sibling branches never see each
other's nodes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field

from orchestramcp.errors import InvalidBranchOriginError
from orchestramcp.errors import InvalidRevisionTargetError
from orchestramcp.errors import NotFoundError
from orchestramcp.locks import KeyedLock
from orchestramcp.reasoning.schemas import ThoughtAck
from orchestramcp.reasoning.schemas import ThoughtNode

logger = logging.getLogger(__name__)

DEFAULT_SESSION = "default"

BranchKey = str | None


@dataclass
class ThoughtSession:
    """Reasoning state for one session; mutated only through ``submit``."""

    nodes: dict[tuple[BranchKey, int], ThoughtNode] = field(default_factory=dict)
    sequences: dict[BranchKey, list[int]] = field(default_factory=dict)
    origins: dict[str, tuple[BranchKey, int]] = field(default_factory=dict)
    hints: dict[BranchKey, int] = field(default_factory=dict)
    completed: set[BranchKey] = field(default_factory=set)
    current: BranchKey = None

    @property
    def known_branches(self) -> list[str]:
        return list(self.origins)

    def lineage_keys(self, branch: BranchKey) -> list[tuple[BranchKey, int]]:
        """Visible ``(branch, number)`` keys for *branch*, oldest ancestor first."""
        segments: list[list[tuple[BranchKey, int]]] = []
        cutoff: int | None = None
        while True:
            numbers = self.sequences.get(branch, [])
            segments.append(
                [(branch, n) for n in numbers if cutoff is None or n <= cutoff]
            )
            if branch is None:
                break
            branch, cutoff = self.origins[branch]
        return [key for segment in reversed(segments) for key in segment]

    def visible_numbers(self, branch: BranchKey) -> set[int]:
        return {number for _, number in self.lineage_keys(branch)}

    def _last_number(self, branch: BranchKey) -> int:
        numbers = self.sequences.get(branch)
        if numbers:
            return numbers[-1]
        if branch is None:
            return 0
        return self.origins[branch][1]

    def _tip(self, branch: BranchKey) -> int:
        keys = self.lineage_keys(branch)
        return keys[-1][1] if keys else 0

    def submit(self, node: ThoughtNode) -> ThoughtAck:
        """Validate and append *node*; the session is unchanged on error."""
        branch = node.branch_id
        new_origin: tuple[BranchKey, int] | None = None
        if branch is not None and branch not in self.origins:
            parent = self.current
            origin = node.branch_from_thought
            if origin is None:
                origin = self._tip(parent)
            elif origin not in self.visible_numbers(parent):
                raise InvalidBranchOriginError(branch, parent, origin)
            new_origin = (parent, origin)

        if node.revises_thought is not None:
            visible = self.visible_numbers(branch) if new_origin is None else (
                {n for n in self.visible_numbers(new_origin[0]) if n <= new_origin[1]}
            )
            if node.revises_thought not in visible:
                raise InvalidRevisionTargetError(branch, node.revises_thought)

        if new_origin is not None:
            self.origins[branch] = new_origin
            logger.debug(
                "Opened branch %s from %s@%d",
                branch,
                new_origin[0] or "trunk",
                new_origin[1],
            )

        last = self._last_number(branch)
        number = node.thought_number if node.thought_number > last else last + 1
        stored = node.model_copy(update={"thought_number": number})
        self.nodes[(branch, number)] = stored
        self.sequences.setdefault(branch, []).append(number)
        self.current = branch

        hint = max(self.hints.get(branch, 0), node.total_thoughts, number)
        self.hints[branch] = hint
        if not node.next_thought_needed and number >= hint:
            self.completed.add(branch)
        else:
            self.completed.discard(branch)

        return ThoughtAck(
            thought_number=number,
            branch_id=branch,
            total_thoughts=hint,
            more_needed=node.next_thought_needed or number < hint,
            branch_complete=branch in self.completed,
            known_branches=self.known_branches,
            history_length=len(self.nodes),
        )


class SequentialReasoningEngine:
    """Owns every reasoning session.

    Submissions to one session are processed strictly in arrival order;
    independent sessions share no state and proceed in parallel.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, ThoughtSession] = {}
        self._locks = KeyedLock()

    @property
    def session_ids(self) -> list[str]:
        return list(self._sessions)

    async def submit(
        self, session_id: str, node: ThoughtNode
    ) -> ThoughtAck:
        async with self._locks.hold(session_id):
            session = self._sessions.get(session_id)
            if session is None:
                session = ThoughtSession()
                self._sessions[session_id] = session
            return session.submit(node)

    async def close_session(self, session_id: str) -> bool:
        """Destroy a session; returns ``False`` if it did not exist."""
        async with self._locks.hold(session_id):
            return self._sessions.pop(session_id, None) is not None

    async def reset(self) -> None:
        """Drop every session."""
        for session_id in list(self._sessions):
            await self.close_session(session_id)

    def lineage(self, session_id: str, branch_id: str | None = None) -> list[ThoughtNode]:
        """Nodes visible from *branch_id*, oldest ancestor first."""
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError("session", session_id)
        if branch_id is not None and branch_id not in session.origins:
            raise NotFoundError("branch", branch_id)
        return [session.nodes[key] for key in session.lineage_keys(branch_id)]
