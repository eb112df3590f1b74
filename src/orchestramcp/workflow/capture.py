"""``capture_knowledge``: record a memory and mirror it into the graph."""

from __future__ import annotations

from typing import Any

from orchestramcp.config import GRAPH_SERVER
from orchestramcp.config import MEMORY_SERVER
from orchestramcp.dispatch.coordinator import DispatchCoordinator
from orchestramcp.workflow.coordinator import WorkflowContext
from orchestramcp.workflow.coordinator import WorkflowStep
from orchestramcp.workflow.coordinator import dispatch_step

CAPTURE_KNOWLEDGE = "capture_knowledge"


def memory_reference(record: dict[str, Any]) -> str:
    """Observation text linking an entity to the memory it came from."""
    return f"memory:{record['id']} ({record['title']})"


def capture_knowledge_steps(
    coordinator: DispatchCoordinator,
    *,
    memory: dict[str, Any],
    entities: list[dict[str, Any]],
    relations: list[dict[str, Any]],
) -> list[WorkflowStep]:
    """Steps: create memory, entities and relations (fatal), then link.

    The link step appends a ``memory:<id>`` observation to every entity and
    only logs on failure.
    """
    entity_names = [entity["name"] for entity in entities]

    def _links(context: WorkflowContext) -> dict[str, Any]:
        reference = memory_reference(context.results["create_memory"]["memory"])
        return {
            "observations": [
                {"entity_name": name, "contents": [reference]} for name in entity_names
            ]
        }

    steps = [
        dispatch_step(
            coordinator, MEMORY_SERVER, "create_memory", memory, name="create_memory"
        ),
        dispatch_step(
            coordinator,
            GRAPH_SERVER,
            "create_entities",
            {"entities": entities},
            name="create_entities",
        ),
    ]
    if relations:
        steps.append(
            dispatch_step(
                coordinator,
                GRAPH_SERVER,
                "create_relations",
                {"relations": relations},
                name="create_relations",
            )
        )
    if entity_names:
        steps.append(
            dispatch_step(
                coordinator,
                GRAPH_SERVER,
                "add_observations",
                _links,
                name="link_memory",
                fatal=False,
            )
        )
    return steps
