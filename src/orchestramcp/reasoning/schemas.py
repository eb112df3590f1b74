"""Sequential reasoning data models."""

from __future__ import annotations

from pydantic import BaseModel
from pydantic import Field


class ThoughtNode(BaseModel):
    """One step of a reasoning chain.

    As submitted, ``thought_number`` is the caller's numbering; once stored
    it is the sequence number the engine resolved for the branch.
    """

    model_config = {"frozen": True}

    thought: str = Field(min_length=1, description="The reasoning step text.")
    thought_number: int = Field(ge=1, description="1-based sequence number.")
    total_thoughts: int = Field(
        ge=1,
        description="Expected total for the branch. Advisory, revisable upward.",
    )
    next_thought_needed: bool = Field(
        description="Whether the caller intends to continue the branch.",
    )
    is_revision: bool = Field(
        default=False,
        description="True when this step reconsiders an earlier one.",
    )
    revises_thought: int | None = Field(
        default=None,
        ge=1,
        description="Sequence number of the step being revised.",
    )
    branch_from_thought: int | None = Field(
        default=None,
        ge=1,
        description="Origin sequence number when opening a new branch.",
    )
    branch_id: str | None = Field(
        default=None,
        min_length=1,
        description="Branch identifier; omitted for the trunk.",
    )


class ThoughtAck(BaseModel):
    """Acknowledgment returned for every accepted submission."""

    thought_number: int
    branch_id: str | None = None
    total_thoughts: int
    more_needed: bool
    branch_complete: bool
    known_branches: list[str] = Field(default_factory=list)
    history_length: int
