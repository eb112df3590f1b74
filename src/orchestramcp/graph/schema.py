"""Neo4j schema initialization: constraints and indexes.

All statements use ``IF NOT EXISTS`` so they are safe to run repeatedly.
"""

from __future__ import annotations

from neo4j import AsyncDriver

_CONSTRAINTS = [
    "CREATE CONSTRAINT entity_unique_name IF NOT EXISTS "
    "FOR (e:Entity) REQUIRE e.name IS UNIQUE",
]

_INDEXES = [
    "CREATE INDEX entity_type IF NOT EXISTS FOR (e:Entity) ON (e.entity_type)",
    "CREATE INDEX relation_type IF NOT EXISTS "
    "FOR ()-[r:RELATES_TO]-() ON (r.relation_type)",
]


async def init_graph_schema(driver: AsyncDriver) -> None:
    """Create all constraints and indexes (idempotent).

    Runs each statement on its own, since Neo4j does not batch schema
    commands with other work.
    """
    async with driver.session() as session:
        for stmt in _CONSTRAINTS + _INDEXES:
            await session.run(stmt)
