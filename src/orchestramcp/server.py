"""OrchestraMCP: FastMCP v2 server fronting several capability servers.

Every tool is realized through the ``DispatchCoordinator``.  The memory
store (Redis), the knowledge graph store (Neo4j) and the sequential
reasoning engine are registered as in-process servers; further servers
come from the JSON configuration file and are called over MCP.  Call
``configure(...)`` before using the server.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from time import perf_counter
from typing import Any

from fastmcp import FastMCP
from neo4j import AsyncDriver
from neo4j import AsyncGraphDatabase
from pydantic import ValidationError
from redis.asyncio import Redis  # type: ignore[import-untyped]

from orchestramcp.audit import AuditEvent
from orchestramcp.audit import AuditEventType
from orchestramcp.audit import AuditLogger
from orchestramcp.config import AuditConfig
from orchestramcp.config import DispatchPolicy
from orchestramcp.config import GRAPH_SERVER
from orchestramcp.config import MEMORY_SERVER
from orchestramcp.config import MemoryStoreConfig
from orchestramcp.config import REASONING_SERVER
from orchestramcp.config import RegistryConfig
from orchestramcp.config import get_config_path
from orchestramcp.config import get_neo4j_url
from orchestramcp.config import get_redis_url
from orchestramcp.config import load_server_config
from orchestramcp.dispatch import DispatchCoordinator
from orchestramcp.dispatch import DispatchResult
from orchestramcp.dispatch import LocalTransport
from orchestramcp.dispatch.transports import build_transport
from orchestramcp.errors import PartialWorkflowFailure
from orchestramcp.graph import KnowledgeGraphStore
from orchestramcp.graph import init_graph_schema
from orchestramcp.local_servers import LOCAL_SERVER_CATEGORIES
from orchestramcp.local_servers import graph_handlers
from orchestramcp.local_servers import local_descriptor
from orchestramcp.local_servers import memory_handlers
from orchestramcp.local_servers import reasoning_handlers
from orchestramcp.memory import MemoryStore
from orchestramcp.models.schemas import CaptureKnowledgeInput
from orchestramcp.models.schemas import CaptureKnowledgeResult
from orchestramcp.models.schemas import DeleteResult
from orchestramcp.models.schemas import EntitiesResult
from orchestramcp.models.schemas import GraphResult
from orchestramcp.models.schemas import MemoryResult
from orchestramcp.models.schemas import ObservationsResult
from orchestramcp.models.schemas import RelationsResult
from orchestramcp.models.schemas import SearchMemoryResult
from orchestramcp.models.schemas import ServerCallResult
from orchestramcp.models.schemas import ServerHealthResult
from orchestramcp.models.schemas import ThoughtResult
from orchestramcp.models.schemas import ToolResult
from orchestramcp.observability import metrics_snapshot
from orchestramcp.observability import record_operation
from orchestramcp.reasoning import SequentialReasoningEngine
from orchestramcp.registry import ServerRegistry
from orchestramcp.workflow import CAPTURE_KNOWLEDGE
from orchestramcp.workflow import WorkflowCoordinator
from orchestramcp.workflow import capture_knowledge_steps

logger = logging.getLogger(__name__)

mcp = FastMCP("OrchestraMCP")

# ---------------------------------------------------------------------------
# Process-wide state (set via configure())
# ---------------------------------------------------------------------------

_registry: ServerRegistry | None = None
_coordinator: DispatchCoordinator | None = None
_workflows: WorkflowCoordinator | None = None
_memory_store: MemoryStore | None = None
_graph_store: KnowledgeGraphStore | None = None
_graph_driver: AsyncDriver | None = None
_reasoning: SequentialReasoningEngine | None = None
_audit_logger: AuditLogger | None = None


async def configure(
    redis_url: str | None = None,
    neo4j_url: str | None = None,
    *,
    neo4j_auth: tuple[str, str] | None = None,
    servers_config_path: str | None = None,
    dispatch_policy: DispatchPolicy | None = None,
    registry_config: RegistryConfig | None = None,
    memory_config: MemoryStoreConfig | None = None,
    audit_config: AuditConfig | None = None,
    transport_factory=build_transport,
) -> None:
    """Build the registry, stores and coordinators.

    The server file (``servers_config_path`` or ``ORCHESTRAMCP_CONFIG``) is
    loaded and validated here, so malformed configuration fails at start.
    Must be called before the MCP tools can function.
    """
    global _registry, _coordinator, _workflows, _memory_store, _graph_store
    global _graph_driver, _reasoning, _audit_logger

    path = servers_config_path or get_config_path()
    external = load_server_config(path) if path else []

    await _close_backends()

    _audit_logger = AuditLogger(audit_config or AuditConfig())
    _registry = ServerRegistry(
        registry_config, on_health_change=_audit_logger.log_health_change
    )
    _coordinator = DispatchCoordinator(
        _registry,
        policy=dispatch_policy,
        audit_logger=_audit_logger,
        transport_factory=transport_factory,
    )
    _workflows = WorkflowCoordinator(_audit_logger)

    _memory_store = MemoryStore(Redis.from_url(redis_url or get_redis_url()), memory_config)
    _graph_driver = AsyncGraphDatabase.driver(neo4j_url or get_neo4j_url(), auth=neo4j_auth)
    await init_graph_schema(_graph_driver)
    _graph_store = KnowledgeGraphStore(_graph_driver)
    _reasoning = SequentialReasoningEngine()

    local = {
        MEMORY_SERVER: memory_handlers(_memory_store),
        GRAPH_SERVER: graph_handlers(_graph_store),
        REASONING_SERVER: reasoning_handlers(_reasoning),
    }
    for name, handlers in local.items():
        _registry.register(local_descriptor(name, LOCAL_SERVER_CATEGORIES[name], handlers))
        _coordinator.attach(name, LocalTransport(name, handlers))

    for descriptor in external:
        _registry.register(descriptor)
        await _audit_logger.log(
            AuditEvent(
                event_type=AuditEventType.SERVER_REGISTERED,
                server=descriptor.name,
                payload={
                    "endpoint": descriptor.endpoint,
                    "category": descriptor.category.value,
                    "capabilities": sorted(descriptor.capabilities),
                },
            )
        )


async def reload_servers(path: str | None = None) -> list[str]:
    """Replace the configured (non built-in) servers from the server file.

    Built-in servers and their health are kept.  Returns the registered
    server names.
    """
    registry = _get_registry()
    coordinator = _get_coordinator()
    source = path or get_config_path()
    external = load_server_config(source) if source else []

    builtins = [registry.get(name) for name in LOCAL_SERVER_CATEGORIES]
    previous = set(registry.names()) - set(LOCAL_SERVER_CATEGORIES)
    registry.replace_all([*builtins, *external])
    for name in previous:
        coordinator.detach(name)
    return registry.names()


async def _close_backends() -> None:
    global _memory_store, _graph_store, _graph_driver
    if _memory_store is not None:
        try:
            await _memory_store.close()
        except RuntimeError:
            # Tests may reconfigure across event loops.
            logger.debug("Redis client already bound to a closed loop")
        _memory_store = None
    if _graph_driver is not None:
        try:
            await _graph_driver.close()
        except RuntimeError:
            # Tests may reconfigure across event loops.
            logger.debug("Neo4j driver already bound to a closed loop")
        _graph_driver = None
        _graph_store = None


async def shutdown() -> None:
    """Close backend clients and release server resources."""
    global _registry, _coordinator, _workflows, _reasoning, _audit_logger
    await _close_backends()
    _registry = None
    _coordinator = None
    _workflows = None
    _reasoning = None
    _audit_logger = None


async def _reset_state() -> None:
    """Clear both stores and every reasoning session (test helper)."""
    if _memory_store is not None:
        await _memory_store.clear()
    if _graph_store is not None:
        await _graph_store.clear()
    if _reasoning is not None:
        await _reasoning.reset()


def _get_registry() -> ServerRegistry:
    if _registry is None:
        raise RuntimeError("OrchestraMCP not configured. Call configure() first.")
    return _registry


def _get_coordinator() -> DispatchCoordinator:
    if _coordinator is None:
        raise RuntimeError("OrchestraMCP not configured. Call configure() first.")
    return _coordinator


def _get_workflows() -> WorkflowCoordinator:
    if _workflows is None:
        raise RuntimeError("OrchestraMCP not configured. Call configure() first.")
    return _workflows


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _validation_message(exc: ValidationError) -> str:
    err = exc.errors()[0] if exc.errors() else {}
    return str(err.get("msg", "Invalid input"))


def _envelope_details(envelope: DispatchResult) -> dict[str, Any]:
    details: dict[str, Any] = {
        "server": envelope.server,
        "operation": envelope.operation,
        "attempts": envelope.attempts,
    }
    if envelope.fallback_used:
        details["fallback_used"] = True
    return details


def _render(result_cls: type[ToolResult], envelope: DispatchResult) -> ToolResult:
    """Turn a dispatch envelope into the tool's result model."""
    if not envelope.ok:
        return result_cls(status="error", **envelope.error_payload())
    value = envelope.value if isinstance(envelope.value, dict) else {}
    return result_cls(**value, details=_envelope_details(envelope))


async def _call(
    tool: str,
    result_cls: type[ToolResult],
    server: str,
    operation: str,
    payload: dict[str, Any],
) -> tuple[ToolResult, DispatchResult]:
    start = perf_counter()
    ok = False
    try:
        envelope = await _get_coordinator().invoke(server, operation, payload)
        ok = envelope.ok
        return _render(result_cls, envelope), envelope
    finally:
        record_operation(
            operation=f"mcp.{tool}",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


# ---------------------------------------------------------------------------
# Memory tools
# ---------------------------------------------------------------------------


@mcp.tool
async def create_memory(
    title: str,
    content: str,
    tags: list[str] | None = None,
    corpus_names: list[str] | None = None,
    user_triggered: bool = False,
) -> MemoryResult:
    """Store a durable memory record.

    Args:
        title: Short human-readable title.
        content: Free-text body.
        tags: Tags; stored lowercase with underscores.
        corpus_names: Corpus / scope names, e.g. "user/project".
        user_triggered: True when the user explicitly asked to remember this.
    """
    result, _ = await _call(
        "create_memory",
        MemoryResult,
        MEMORY_SERVER,
        "create_memory",
        {
            "title": title,
            "content": content,
            "tags": tags or [],
            "corpus_names": corpus_names or [],
            "user_triggered": user_triggered,
        },
    )
    return result


@mcp.tool
async def search_memory(
    query: str,
    tags: list[str] | None = None,
    limit: int = 20,
) -> SearchMemoryResult:
    """Search memories, ranked by tag overlap, text matches, then recency.

    Args:
        query: Free-text query; its words also match tags.
        tags: Only return records sharing at least one of these tags.
        limit: Max records returned.
    """
    result, _ = await _call(
        "search_memory",
        SearchMemoryResult,
        MEMORY_SERVER,
        "search_memory",
        {"query": query, "tags": tags, "limit": limit},
    )
    return result


@mcp.tool
async def update_memory(memory_id: str, patch: dict) -> MemoryResult:
    """Update the fields present in *patch* (title, content, tags, corpus_names, user_triggered)."""
    result, _ = await _call(
        "update_memory",
        MemoryResult,
        MEMORY_SERVER,
        "update_memory",
        {"memory_id": memory_id, "patch": patch},
    )
    return result


@mcp.tool
async def merge_memories(memory_id: str, merge_with_id: str) -> MemoryResult:
    """Merge two memories into the earlier-created one and delete the other."""
    result, envelope = await _call(
        "merge_memories",
        MemoryResult,
        MEMORY_SERVER,
        "merge_memories",
        {"memory_id": memory_id, "merge_with_id": merge_with_id},
    )
    if envelope.ok and _audit_logger is not None and result.memory is not None:
        kept = result.memory["id"]
        await _audit_logger.log(
            AuditEvent(
                event_type=AuditEventType.MEMORY_MERGED,
                server=MEMORY_SERVER,
                payload={
                    "kept": kept,
                    "removed": merge_with_id if kept == memory_id else memory_id,
                },
            )
        )
    return result


@mcp.tool
async def delete_memory(memory_id: str) -> DeleteResult:
    """Delete a memory; deleting an unknown id is not an error."""
    result, _ = await _call(
        "delete_memory", DeleteResult, MEMORY_SERVER, "delete_memory", {"memory_id": memory_id}
    )
    return result


# ---------------------------------------------------------------------------
# Knowledge graph tools
# ---------------------------------------------------------------------------


@mcp.tool
async def create_entities(entities: list[dict]) -> EntitiesResult:
    """Create entities, merging observations into existing ones by name.

    Args:
        entities: Items of {name, entity_type, observations}.
    """
    result, _ = await _call(
        "create_entities",
        EntitiesResult,
        GRAPH_SERVER,
        "create_entities",
        {"entities": entities},
    )
    return result


@mcp.tool
async def create_relations(relations: list[dict]) -> RelationsResult:
    """Create relations between existing entities; returns the new ones.

    Args:
        relations: Items of {from, to, relation_type}.
    """
    result, _ = await _call(
        "create_relations",
        RelationsResult,
        GRAPH_SERVER,
        "create_relations",
        {"relations": relations},
    )
    return result


@mcp.tool
async def add_observations(observations: list[dict]) -> ObservationsResult:
    """Append observations to existing entities.

    Args:
        observations: Items of {entity_name, contents}.
    """
    result, _ = await _call(
        "add_observations",
        ObservationsResult,
        GRAPH_SERVER,
        "add_observations",
        {"observations": observations},
    )
    return result


@mcp.tool
async def delete_entities(entity_names: list[str]) -> ToolResult:
    """Delete entities and every relation attached to them."""
    result, _ = await _call(
        "delete_entities",
        ToolResult,
        GRAPH_SERVER,
        "delete_entities",
        {"entity_names": entity_names},
    )
    return result


@mcp.tool
async def delete_observations(deletions: list[dict]) -> ToolResult:
    """Remove observations by exact text.

    Args:
        deletions: Items of {entity_name, observations}.
    """
    result, _ = await _call(
        "delete_observations",
        ToolResult,
        GRAPH_SERVER,
        "delete_observations",
        {"deletions": deletions},
    )
    return result


@mcp.tool
async def delete_relations(relations: list[dict]) -> ToolResult:
    """Delete relations given as {from, to, relation_type}."""
    result, _ = await _call(
        "delete_relations",
        ToolResult,
        GRAPH_SERVER,
        "delete_relations",
        {"relations": relations},
    )
    return result


@mcp.tool
async def search_nodes(query: str) -> GraphResult:
    """Find entities whose name, type or observations contain *query* (case-insensitive)."""
    result, _ = await _call(
        "search_nodes", GraphResult, GRAPH_SERVER, "search_nodes", {"query": query}
    )
    return result


@mcp.tool
async def open_nodes(names: list[str]) -> GraphResult:
    """Return the named entities and the relations among them."""
    result, _ = await _call(
        "open_nodes", GraphResult, GRAPH_SERVER, "open_nodes", {"names": names}
    )
    return result


@mcp.tool
async def read_graph() -> GraphResult:
    """Return a snapshot of every entity and relation."""
    result, _ = await _call("read_graph", GraphResult, GRAPH_SERVER, "read_graph", {})
    return result


# ---------------------------------------------------------------------------
# Reasoning tool
# ---------------------------------------------------------------------------


@mcp.tool
async def sequential_thinking(
    thought: str,
    thought_number: int,
    total_thoughts: int,
    next_thought_needed: bool,
    branch_from_thought: int | None = None,
    branch_id: str | None = None,
    is_revision: bool = False,
    revises_thought: int | None = None,
    session_id: str = "default",
) -> ThoughtResult:
    """Record one step of a branchable, revisable reasoning chain.

    Args:
        thought: The reasoning step.
        thought_number: Sequence number of this step within its branch.
        total_thoughts: Expected total; may be revised upward at any time.
        next_thought_needed: Whether another step will follow.
        branch_from_thought: Fork point when opening a new branch.
        branch_id: Branch identifier; omit for the trunk.
        is_revision: Whether this step reconsiders an earlier one.
        revises_thought: Sequence number of the step being revised.
        session_id: Independent reasoning session.
    """
    result, _ = await _call(
        "sequential_thinking",
        ThoughtResult,
        REASONING_SERVER,
        "sequential_thinking",
        {
            "thought": thought,
            "thought_number": thought_number,
            "total_thoughts": total_thoughts,
            "next_thought_needed": next_thought_needed,
            "branch_from_thought": branch_from_thought,
            "branch_id": branch_id,
            "is_revision": is_revision,
            "revises_thought": revises_thought,
            "session_id": session_id,
        },
    )
    return result


# ---------------------------------------------------------------------------
# Workflow / orchestration tools
# ---------------------------------------------------------------------------


@mcp.tool
async def capture_knowledge(
    title: str,
    content: str,
    tags: list[str] | None = None,
    corpus_names: list[str] | None = None,
    user_triggered: bool = False,
    entities: list[dict] | None = None,
    relations: list[dict] | None = None,
) -> CaptureKnowledgeResult:
    """Store a memory and mirror it into the knowledge graph.

    Creates the memory, then the entities and relations, then links the
    memory to each entity as an observation.  Steps already completed are
    not undone when a later one fails; the result lists what completed.
    """
    start = perf_counter()
    ok = False
    try:
        try:
            validated = CaptureKnowledgeInput.model_validate(
                {
                    "title": title,
                    "content": content,
                    "tags": tags or [],
                    "corpus_names": corpus_names or [],
                    "user_triggered": user_triggered,
                    "entities": entities or [],
                    "relations": relations or [],
                }
            )
        except ValidationError as exc:
            return CaptureKnowledgeResult(
                status="error",
                error_code="validation_error",
                message=_validation_message(exc),
            )

        steps = capture_knowledge_steps(
            _get_coordinator(),
            memory=validated.model_dump(
                include={"title", "content", "tags", "corpus_names", "user_triggered"}
            ),
            entities=[entity.model_dump() for entity in validated.entities],
            relations=[relation.model_dump(by_alias=True) for relation in validated.relations],
        )
        try:
            outcome = await _get_workflows().run(CAPTURE_KNOWLEDGE, steps)
        except PartialWorkflowFailure as exc:
            return CaptureKnowledgeResult(
                status="error",
                **exc.to_dict(),
                memory=exc.results.get("create_memory", {}).get("memory"),
                completed=exc.completed,
                failed_at=exc.failed_at,
                warnings=exc.warnings,
            )

        results = outcome.results
        ok = True
        return CaptureKnowledgeResult(
            memory=results["create_memory"]["memory"],
            entities=results["create_entities"]["entities"],
            relations=results.get("create_relations", {}).get("relations", []),
            completed=outcome.completed,
            warnings=outcome.warnings,
        )
    finally:
        record_operation(
            operation="mcp.capture_knowledge",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def call_server_tool(
    server: str,
    operation: str,
    arguments: dict | None = None,
) -> ServerCallResult:
    """Invoke any operation on any registered server through the dispatcher."""
    start = perf_counter()
    envelope = await _get_coordinator().invoke(server, operation, arguments or {})
    record_operation(
        operation="mcp.call_server_tool",
        duration_ms=(perf_counter() - start) * 1000,
        ok=envelope.ok,
    )
    if not envelope.ok:
        return ServerCallResult(
            status="error",
            server=server,
            operation=operation,
            attempts=envelope.attempts,
            fallback_used=envelope.fallback_used,
            **envelope.error_payload(),
        )
    return ServerCallResult(
        server=server,
        operation=operation,
        result=envelope.value,
        attempts=envelope.attempts,
        fallback_used=envelope.fallback_used,
        details=_envelope_details(envelope),
    )


@mcp.tool
async def server_health() -> ServerHealthResult:
    """Report every server's health, dispatch metrics and recent events."""
    registry = _get_registry()
    recent = _audit_logger.recent() if _audit_logger is not None else []
    return ServerHealthResult(
        servers=[view.model_dump(mode="json") for view in registry.snapshot()],
        metrics=metrics_snapshot(),
        recent_events=[event.model_dump(mode="json") for event in recent],
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the OrchestraMCP server.")
    parser.add_argument("--config", default=None, help="JSON server file.")
    parser.add_argument("--redis-url", default=None)
    parser.add_argument("--neo4j-url", default=None)
    parser.add_argument(
        "--transport", default="stdio", choices=["stdio", "http", "sse"]
    )
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args()


async def _main(args: argparse.Namespace) -> None:
    await configure(
        redis_url=args.redis_url,
        neo4j_url=args.neo4j_url,
        servers_config_path=args.config,
    )
    try:
        await mcp.run_async(transport=args.transport)
    finally:
        await shutdown()


def main() -> None:
    args = _parse_args()
    logging.basicConfig(level=args.log_level.upper())
    asyncio.run(_main(args))


if __name__ == "__main__":
    main()
