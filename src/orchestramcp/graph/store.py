"""Neo4j-backed knowledge graph store.

Entities are ``(:Entity {name, entity_type, observations})`` nodes; every
relation is a ``[:RELATES_TO {relation_type}]`` edge so the label can be
matched as a parameter instead of being interpolated into Cypher.
Multi-statement operations run in managed transactions, so a rejected
call leaves the graph untouched.
"""

from __future__ import annotations

import logging
import time

from neo4j import AsyncDriver
from neo4j import AsyncManagedTransaction

from orchestramcp.errors import DanglingReferenceError
from orchestramcp.errors import NotFoundError
from orchestramcp.graph.schemas import Entity
from orchestramcp.graph.schemas import GraphSnapshot
from orchestramcp.graph.schemas import ObservationAddition
from orchestramcp.graph.schemas import ObservationDeletion
from orchestramcp.graph.schemas import Relation
from orchestramcp.graph.schemas import dedupe_observations
from orchestramcp.locks import KeyedLock

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Cypher
# ---------------------------------------------------------------------------

_ENTITY_FIELDS = (
    "e.name AS name, e.entity_type AS entity_type, e.observations AS observations"
)

_MERGE_ENTITY = (
    "MERGE (e:Entity {name: $name}) "
    "ON CREATE SET e.entity_type = $entity_type, e.observations = [], "
    "e.created_at = $now "
    "WITH e "
    "SET e.observations = e.observations + "
    "[o IN $observations WHERE NOT o IN e.observations], "
    "e.updated_at = $now "
    f"RETURN {_ENTITY_FIELDS}"
)

_MISSING_ENTITIES = (
    "UNWIND $names AS name "
    "OPTIONAL MATCH (e:Entity {name: name}) "
    "WITH name, e WHERE e IS NULL "
    "RETURN collect(name) AS missing"
)

_CREATE_RELATIONS = (
    "UNWIND $rels AS rel "
    "MATCH (a:Entity {name: rel.source}), (b:Entity {name: rel.target}) "
    "OPTIONAL MATCH (a)-[existing:RELATES_TO {relation_type: rel.relation_type}]->(b) "
    "WITH a, b, rel, existing WHERE existing IS NULL "
    "CREATE (a)-[:RELATES_TO {relation_type: rel.relation_type, created_at: $now}]->(b) "
    "RETURN rel.source AS source, rel.target AS target, rel.relation_type AS relation_type"
)

_APPEND_OBSERVATIONS = (
    "UNWIND $additions AS add "
    "MATCH (e:Entity {name: add.entity_name}) "
    "WITH e, add, [o IN add.contents WHERE NOT o IN e.observations] AS fresh "
    "SET e.observations = e.observations + fresh, e.updated_at = $now "
    "RETURN e.name AS entity_name, fresh AS added_observations"
)

_DELETE_ENTITIES = (
    "UNWIND $names AS name "
    "MATCH (e:Entity {name: name}) "
    "DETACH DELETE e"
)

_DELETE_OBSERVATIONS = (
    "UNWIND $deletions AS del "
    "MATCH (e:Entity {name: del.entity_name}) "
    "SET e.observations = [o IN e.observations WHERE NOT o IN del.observations], "
    "e.updated_at = $now"
)

_DELETE_RELATIONS = (
    "UNWIND $rels AS rel "
    "MATCH (a:Entity {name: rel.source})"
    "-[r:RELATES_TO {relation_type: rel.relation_type}]->"
    "(b:Entity {name: rel.target}) "
    "DELETE r"
)

_ALL_ENTITIES = f"MATCH (e:Entity) RETURN {_ENTITY_FIELDS} ORDER BY e.created_at, e.name"

_SEARCH_ENTITIES = (
    "MATCH (e:Entity) "
    "WHERE toLower(e.name) CONTAINS $query "
    "OR toLower(e.entity_type) CONTAINS $query "
    "OR any(o IN e.observations WHERE toLower(o) CONTAINS $query) "
    f"RETURN {_ENTITY_FIELDS} ORDER BY e.created_at, e.name"
)

_NAMED_ENTITIES = (
    "MATCH (e:Entity) WHERE e.name IN $names "
    f"RETURN {_ENTITY_FIELDS} ORDER BY e.created_at, e.name"
)

_RELATION_FIELDS = (
    "RETURN a.name AS source, b.name AS target, r.relation_type AS relation_type "
    "ORDER BY r.created_at, source, target, relation_type"
)

_ALL_RELATIONS = f"MATCH (a:Entity)-[r:RELATES_TO]->(b:Entity) {_RELATION_FIELDS}"

_RELATIONS_AMONG = (
    "MATCH (a:Entity)-[r:RELATES_TO]->(b:Entity) "
    "WHERE a.name IN $names AND b.name IN $names "
    f"{_RELATION_FIELDS}"
)


def _relation_params(relations: list[Relation]) -> list[dict]:
    return [
        {
            "source": r.from_entity,
            "target": r.to_entity,
            "relation_type": r.relation_type,
        }
        for r in relations
    ]


def _relation_lock_key(relation: Relation) -> str:
    return "rel:" + "\x1f".join(relation.key)


def _unique_relations(relations: list[Relation]) -> list[Relation]:
    seen: dict[tuple[str, str, str], Relation] = {}
    for relation in relations:
        seen.setdefault(relation.key, relation)
    return list(seen.values())


async def _rows(tx: AsyncManagedTransaction, query: str, **params: object) -> tuple[dict, ...]:
    result = await tx.run(query, **params)
    return tuple([record.data() async for record in result])


# ---------------------------------------------------------------------------
# KnowledgeGraphStore
# ---------------------------------------------------------------------------


class KnowledgeGraphStore:
    """Async entity/relation store over Neo4j.

    Writes to the same entity name (or relation triple) are serialized
    in-process; reads run concurrently.
    """

    def __init__(self, driver: AsyncDriver) -> None:
        self._driver = driver
        self._locks = KeyedLock()

    # ----- Entities -----

    async def create_entities(self, entities: list[Entity]) -> list[Entity]:
        """Create each entity, or merge its observations into an existing one.

        An existing entity keeps its ``entity_type``; new observations are
        appended after the stored ones, skipping exact duplicates.
        """
        stored: list[Entity] = []
        for entity in entities:
            async with self._locks.hold(entity.name):
                async with self._driver.session() as session:
                    result = await session.run(
                        _MERGE_ENTITY,
                        name=entity.name,
                        entity_type=entity.entity_type,
                        observations=dedupe_observations(entity.observations),
                        now=time.time(),
                    )
                    record = await result.single()
            stored.append(Entity.model_validate(record.data()))
        logger.debug("Upserted %d entit(ies)", len(stored))
        return stored

    async def add_observations(
        self, additions: list[ObservationAddition]
    ) -> list[dict]:
        """Append observations to existing entities; all-or-nothing per call."""
        names = [addition.entity_name for addition in additions]

        async def _write(tx: AsyncManagedTransaction) -> tuple[dict, ...]:
            missing = await self._missing(tx, names)
            if missing:
                raise NotFoundError("entity", missing[0])
            return await _rows(
                tx,
                _APPEND_OBSERVATIONS,
                additions=[
                    {
                        "entity_name": a.entity_name,
                        "contents": dedupe_observations(a.contents),
                    }
                    for a in additions
                ],
                now=time.time(),
            )

        async with self._locks.hold_many(names):
            async with self._driver.session() as session:
                rows = await session.execute_write(_write)
        return list(rows)

    async def delete_entities(self, names: list[str]) -> None:
        """Delete entities and their relations; unknown names are ignored."""
        async with self._locks.hold_many(names):
            async with self._driver.session() as session:
                await session.execute_write(
                    lambda tx: _rows(tx, _DELETE_ENTITIES, names=list(names))
                )

    async def delete_observations(self, deletions: list[ObservationDeletion]) -> None:
        names = [deletion.entity_name for deletion in deletions]
        params = [d.model_dump() for d in deletions]
        async with self._locks.hold_many(names):
            async with self._driver.session() as session:
                await session.execute_write(
                    lambda tx: _rows(
                        tx, _DELETE_OBSERVATIONS, deletions=params, now=time.time()
                    )
                )

    # ----- Relations -----

    async def create_relations(self, relations: list[Relation]) -> list[Relation]:
        """Create relations between existing entities; return only new ones.

        Raises ``DanglingReferenceError`` (and creates nothing) when any
        endpoint is missing.  Triples that already exist are skipped.
        """
        unique = _unique_relations(relations)
        if not unique:
            return []
        names = sorted({n for r in unique for n in (r.from_entity, r.to_entity)})

        async def _write(tx: AsyncManagedTransaction) -> tuple[dict, ...]:
            missing = await self._missing(tx, names)
            if missing:
                raise DanglingReferenceError(missing)
            return await _rows(
                tx, _CREATE_RELATIONS, rels=_relation_params(unique), now=time.time()
            )

        async with self._locks.hold_many(_relation_lock_key(r) for r in unique):
            async with self._driver.session() as session:
                rows = await session.execute_write(_write)
        created = [
            Relation(
                from_entity=row["source"],
                to_entity=row["target"],
                relation_type=row["relation_type"],
            )
            for row in rows
        ]
        logger.debug("Created %d of %d relation(s)", len(created), len(unique))
        return created

    async def delete_relations(self, relations: list[Relation]) -> None:
        unique = _unique_relations(relations)
        async with self._locks.hold_many(_relation_lock_key(r) for r in unique):
            async with self._driver.session() as session:
                await session.execute_write(
                    lambda tx: _rows(tx, _DELETE_RELATIONS, rels=_relation_params(unique))
                )

    # ----- Queries -----

    async def search_nodes(self, query: str) -> GraphSnapshot:
        """Entities whose name, type or any observation contains *query*.

        Matching is a case-insensitive substring test.  Relations are
        included only when both endpoints are in the result.
        """

        async def _read(tx: AsyncManagedTransaction) -> GraphSnapshot:
            entities = await _rows(tx, _SEARCH_ENTITIES, query=query.lower())
            names = [row["name"] for row in entities]
            relations = await _rows(tx, _RELATIONS_AMONG, names=names)
            return GraphSnapshot(entities, relations)

        async with self._driver.session() as session:
            return await session.execute_read(_read)

    async def open_nodes(self, names: list[str]) -> GraphSnapshot:
        async def _read(tx: AsyncManagedTransaction) -> GraphSnapshot:
            entities = await _rows(tx, _NAMED_ENTITIES, names=list(names))
            found = [row["name"] for row in entities]
            relations = await _rows(tx, _RELATIONS_AMONG, names=found)
            return GraphSnapshot(entities, relations)

        async with self._driver.session() as session:
            return await session.execute_read(_read)

    async def read_graph(self) -> GraphSnapshot:
        """Snapshot the whole graph in a single read transaction."""

        async def _read(tx: AsyncManagedTransaction) -> GraphSnapshot:
            entities = await _rows(tx, _ALL_ENTITIES)
            relations = await _rows(tx, _ALL_RELATIONS)
            return GraphSnapshot(entities, relations)

        async with self._driver.session() as session:
            return await session.execute_read(_read)

    # ----- internal -----

    @staticmethod
    async def _missing(tx: AsyncManagedTransaction, names: list[str]) -> list[str]:
        result = await tx.run(_MISSING_ENTITIES, names=list(names))
        record = await result.single()
        return list(record["missing"]) if record is not None else []

    async def clear(self) -> None:
        """Remove every entity and relation (test helper)."""
        async with self._driver.session() as session:
            await session.run("MATCH (e:Entity) DETACH DELETE e")

    async def close(self) -> None:
        await self._driver.close()
