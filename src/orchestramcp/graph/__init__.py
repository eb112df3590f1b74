"""Graph domain: Neo4j knowledge graph storage and schema management.

Exports are loaded lazily so importing the models does not pull in the
driver-backed store.
"""

from __future__ import annotations

from importlib import import_module

__all__ = [
    "Entity",
    "GraphSnapshot",
    "KnowledgeGraphStore",
    "ObservationAddition",
    "ObservationDeletion",
    "Relation",
    "init_graph_schema",
]


_EXPORT_TO_MODULE = {
    "Entity": "orchestramcp.graph.schemas",
    "GraphSnapshot": "orchestramcp.graph.schemas",
    "ObservationAddition": "orchestramcp.graph.schemas",
    "ObservationDeletion": "orchestramcp.graph.schemas",
    "Relation": "orchestramcp.graph.schemas",
    "init_graph_schema": "orchestramcp.graph.schema",
    "KnowledgeGraphStore": "orchestramcp.graph.store",
}


def __getattr__(name: str):
    module_name = _EXPORT_TO_MODULE.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module = import_module(module_name)
    return getattr(module, name)
