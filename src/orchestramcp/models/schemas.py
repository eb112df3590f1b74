"""Pydantic models for the MCP interface.

Input models validate operation payloads on the in-process servers, so the
same checks apply whether a call arrives through a dedicated tool or
through ``call_server_tool``.  Result models shape tool responses; every
result carries ``status`` / ``error_code`` / ``message`` / ``details``.
FastMCP v2 serializes Pydantic models automatically.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel
from pydantic import Field

from orchestramcp.graph.schemas import Entity
from orchestramcp.graph.schemas import ObservationAddition
from orchestramcp.graph.schemas import ObservationDeletion
from orchestramcp.graph.schemas import Relation
from orchestramcp.memory.schemas import MemoryPatch
from orchestramcp.reasoning.engine import DEFAULT_SESSION
from orchestramcp.reasoning.schemas import ThoughtNode

# ---------------------------------------------------------------------------
# Memory inputs
# ---------------------------------------------------------------------------


class CreateMemoryInput(BaseModel):
    """Input for create_memory."""

    title: str = Field(min_length=1, description="Short human-readable title.")
    content: str = Field(min_length=1, description="Free-text body.")
    tags: list[str] = Field(default_factory=list, description="Tags; normalized on store.")
    corpus_names: list[str] = Field(
        default_factory=list,
        description="Corpus / scope names, e.g. 'user/project'.",
    )
    user_triggered: bool = Field(
        default=False,
        description="True when the user explicitly asked to remember this.",
    )


class SearchMemoryInput(BaseModel):
    """Input for search_memory."""

    query: str = Field(description="Free-text query; tokens also match tags.")
    tags: list[str] | None = Field(
        default=None,
        description="Only return records sharing at least one of these tags.",
    )
    limit: int = Field(default=20, ge=1, le=200, description="Max records returned.")


class UpdateMemoryInput(BaseModel):
    memory_id: str = Field(min_length=1)
    patch: MemoryPatch


class MergeMemoriesInput(BaseModel):
    memory_id: str = Field(min_length=1)
    merge_with_id: str = Field(min_length=1)


class MemoryIdInput(BaseModel):
    memory_id: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Graph inputs
# ---------------------------------------------------------------------------


class CreateEntitiesInput(BaseModel):
    entities: list[Entity] = Field(default_factory=list)


class RelationsInput(BaseModel):
    """Input for create_relations and delete_relations."""

    relations: list[Relation] = Field(default_factory=list)


class AddObservationsInput(BaseModel):
    observations: list[ObservationAddition] = Field(default_factory=list)


class DeleteEntitiesInput(BaseModel):
    entity_names: list[str] = Field(default_factory=list)


class DeleteObservationsInput(BaseModel):
    deletions: list[ObservationDeletion] = Field(default_factory=list)


class SearchNodesInput(BaseModel):
    query: str = Field(description="Case-insensitive substring to match.")


class OpenNodesInput(BaseModel):
    names: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Reasoning / workflow inputs
# ---------------------------------------------------------------------------


class SequentialThinkingInput(ThoughtNode):
    """ThoughtNode plus the session it belongs to."""

    session_id: str = Field(
        default=DEFAULT_SESSION,
        min_length=1,
        description="Reasoning session; sessions are fully independent.",
    )

    def to_node(self) -> ThoughtNode:
        return ThoughtNode.model_validate(self.model_dump(exclude={"session_id"}))


class SessionInput(BaseModel):
    session_id: str = Field(default=DEFAULT_SESSION, min_length=1)
    branch_id: str | None = None


class CaptureKnowledgeInput(CreateMemoryInput):
    """A memory plus the entities and relations it describes."""

    entities: list[Entity] = Field(default_factory=list)
    relations: list[Relation] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class ToolResult(BaseModel):
    """Common envelope of every tool response."""

    status: str = Field(default="ok", description="'ok' or 'error'.")
    error_code: str | None = Field(
        default=None,
        description="Stable machine-readable error code when status is 'error'.",
    )
    message: str | None = Field(default=None, description="Human-readable diagnostic.")
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Structured context: server, operation, attempts, ...",
    )


class MemoryResult(ToolResult):
    memory: dict[str, Any] | None = None


class SearchMemoryResult(ToolResult):
    memories: list[dict[str, Any]] = Field(default_factory=list)
    total_found: int = 0
    returned: int = 0
    truncated: bool = False


class DeleteResult(ToolResult):
    deleted: bool = False


class EntitiesResult(ToolResult):
    entities: list[dict[str, Any]] = Field(default_factory=list)


class RelationsResult(ToolResult):
    relations: list[dict[str, Any]] = Field(default_factory=list)


class ObservationsResult(ToolResult):
    results: list[dict[str, Any]] = Field(default_factory=list)


class GraphResult(ToolResult):
    entities: list[dict[str, Any]] = Field(default_factory=list)
    relations: list[dict[str, Any]] = Field(default_factory=list)


class ThoughtResult(ToolResult):
    thought_number: int | None = None
    branch_id: str | None = None
    total_thoughts: int | None = None
    more_needed: bool | None = None
    branch_complete: bool | None = None
    known_branches: list[str] = Field(default_factory=list)
    history_length: int | None = None


class CaptureKnowledgeResult(ToolResult):
    memory: dict[str, Any] | None = None
    entities: list[dict[str, Any]] = Field(default_factory=list)
    relations: list[dict[str, Any]] = Field(default_factory=list)
    completed: list[int] = Field(default_factory=list)
    failed_at: int | None = None
    warnings: list[str] = Field(default_factory=list)


class ServerCallResult(ToolResult):
    server: str
    operation: str
    result: Any = None
    attempts: int = 0
    fallback_used: bool = False


class ServerHealthResult(ToolResult):
    servers: list[dict[str, Any]] = Field(default_factory=list)
    metrics: dict[str, dict[str, float | int]] = Field(default_factory=dict)
    recent_events: list[dict[str, Any]] = Field(default_factory=list)
