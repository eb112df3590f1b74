"""In-process capability servers.

The memory store, the knowledge graph store and the reasoning engine are
exposed as handler tables and registered like any other server, so every
tool call goes through the same dispatch path.  Handlers validate their
payload and return JSON-ready values.
"""

from __future__ import annotations

from typing import Any

from orchestramcp.config import GRAPH_SERVER
from orchestramcp.config import MEMORY_SERVER
from orchestramcp.config import REASONING_SERVER
from orchestramcp.dispatch.transports import Handler
from orchestramcp.graph.schemas import GraphSnapshot
from orchestramcp.graph.store import KnowledgeGraphStore
from orchestramcp.memory.schemas import MemoryRecord
from orchestramcp.memory.store import MemoryStore
from orchestramcp.models.schemas import AddObservationsInput
from orchestramcp.models.schemas import CreateEntitiesInput
from orchestramcp.models.schemas import CreateMemoryInput
from orchestramcp.models.schemas import DeleteEntitiesInput
from orchestramcp.models.schemas import DeleteObservationsInput
from orchestramcp.models.schemas import MemoryIdInput
from orchestramcp.models.schemas import MergeMemoriesInput
from orchestramcp.models.schemas import OpenNodesInput
from orchestramcp.models.schemas import RelationsInput
from orchestramcp.models.schemas import SearchMemoryInput
from orchestramcp.models.schemas import SearchNodesInput
from orchestramcp.models.schemas import SequentialThinkingInput
from orchestramcp.models.schemas import SessionInput
from orchestramcp.models.schemas import UpdateMemoryInput
from orchestramcp.reasoning.engine import SequentialReasoningEngine
from orchestramcp.registry.schemas import ServerCategory
from orchestramcp.registry.schemas import ServerDescriptor


def local_descriptor(
    name: str, category: ServerCategory, handlers: dict[str, Handler]
) -> ServerDescriptor:
    """Descriptor for an in-process server; capabilities are its handler names."""
    return ServerDescriptor(
        name=name,
        endpoint=f"local://{name}",
        capabilities=set(handlers),
        category=category,
    )


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


def memory_handlers(store: MemoryStore) -> dict[str, Handler]:
    async def create_memory(payload: dict[str, Any]) -> dict[str, Any]:
        data = CreateMemoryInput.model_validate(payload)
        record = await store.create(MemoryRecord(**data.model_dump()))
        return {"memory": record.model_dump()}

    async def search_memory(payload: dict[str, Any]) -> dict[str, Any]:
        data = SearchMemoryInput.model_validate(payload)
        results = await store.search(data.query, data.tags)
        records = await results.to_list(limit=data.limit)
        return {
            "memories": [record.model_dump() for record in records],
            "total_found": len(results),
            "returned": len(records),
            "truncated": len(results) > len(records),
        }

    async def update_memory(payload: dict[str, Any]) -> dict[str, Any]:
        data = UpdateMemoryInput.model_validate(payload)
        record = await store.update(data.memory_id, data.patch)
        return {"memory": record.model_dump()}

    async def merge_memories(payload: dict[str, Any]) -> dict[str, Any]:
        data = MergeMemoriesInput.model_validate(payload)
        record = await store.merge(data.memory_id, data.merge_with_id)
        return {"memory": record.model_dump()}

    async def delete_memory(payload: dict[str, Any]) -> dict[str, Any]:
        data = MemoryIdInput.model_validate(payload)
        return {"deleted": await store.delete(data.memory_id)}

    async def get_memory(payload: dict[str, Any]) -> dict[str, Any]:
        data = MemoryIdInput.model_validate(payload)
        record = await store.get(data.memory_id)
        return {"memory": record.model_dump() if record is not None else None}

    return {
        "create_memory": create_memory,
        "search_memory": search_memory,
        "update_memory": update_memory,
        "merge_memories": merge_memories,
        "delete_memory": delete_memory,
        "get_memory": get_memory,
    }


# ---------------------------------------------------------------------------
# Knowledge graph
# ---------------------------------------------------------------------------


def graph_handlers(store: KnowledgeGraphStore) -> dict[str, Handler]:
    def _relations(relations) -> list[dict[str, Any]]:
        return [relation.model_dump(by_alias=True) for relation in relations]

    def _graph(snapshot: GraphSnapshot) -> dict[str, Any]:
        return snapshot.to_dict()

    async def create_entities(payload: dict[str, Any]) -> dict[str, Any]:
        data = CreateEntitiesInput.model_validate(payload)
        entities = await store.create_entities(data.entities)
        return {"entities": [entity.model_dump() for entity in entities]}

    async def create_relations(payload: dict[str, Any]) -> dict[str, Any]:
        data = RelationsInput.model_validate(payload)
        return {"relations": _relations(await store.create_relations(data.relations))}

    async def add_observations(payload: dict[str, Any]) -> dict[str, Any]:
        data = AddObservationsInput.model_validate(payload)
        return {"results": await store.add_observations(data.observations)}

    async def delete_entities(payload: dict[str, Any]) -> dict[str, Any]:
        data = DeleteEntitiesInput.model_validate(payload)
        await store.delete_entities(data.entity_names)
        return {}

    async def delete_observations(payload: dict[str, Any]) -> dict[str, Any]:
        data = DeleteObservationsInput.model_validate(payload)
        await store.delete_observations(data.deletions)
        return {}

    async def delete_relations(payload: dict[str, Any]) -> dict[str, Any]:
        data = RelationsInput.model_validate(payload)
        await store.delete_relations(data.relations)
        return {}

    async def search_nodes(payload: dict[str, Any]) -> dict[str, Any]:
        data = SearchNodesInput.model_validate(payload)
        return _graph(await store.search_nodes(data.query))

    async def open_nodes(payload: dict[str, Any]) -> dict[str, Any]:
        data = OpenNodesInput.model_validate(payload)
        return _graph(await store.open_nodes(data.names))

    async def read_graph(payload: dict[str, Any]) -> dict[str, Any]:
        return _graph(await store.read_graph())

    return {
        "create_entities": create_entities,
        "create_relations": create_relations,
        "add_observations": add_observations,
        "delete_entities": delete_entities,
        "delete_observations": delete_observations,
        "delete_relations": delete_relations,
        "search_nodes": search_nodes,
        "open_nodes": open_nodes,
        "read_graph": read_graph,
    }


# ---------------------------------------------------------------------------
# Sequential reasoning
# ---------------------------------------------------------------------------


def reasoning_handlers(engine: SequentialReasoningEngine) -> dict[str, Handler]:
    async def sequential_thinking(payload: dict[str, Any]) -> dict[str, Any]:
        data = SequentialThinkingInput.model_validate(payload)
        ack = await engine.submit(data.session_id, data.to_node())
        return ack.model_dump()

    async def close_session(payload: dict[str, Any]) -> dict[str, Any]:
        data = SessionInput.model_validate(payload)
        return {"closed": await engine.close_session(data.session_id)}

    async def read_lineage(payload: dict[str, Any]) -> dict[str, Any]:
        data = SessionInput.model_validate(payload)
        nodes = engine.lineage(data.session_id, data.branch_id)
        return {"thoughts": [node.model_dump() for node in nodes]}

    return {
        "sequential_thinking": sequential_thinking,
        "close_session": close_session,
        "read_lineage": read_lineage,
    }


LOCAL_SERVER_CATEGORIES = {
    MEMORY_SERVER: ServerCategory.memory,
    GRAPH_SERVER: ServerCategory.graph,
    REASONING_SERVER: ServerCategory.reasoning,
}
