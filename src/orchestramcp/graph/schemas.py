"""Knowledge graph data models."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from dataclasses import field

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator


def dedupe_observations(observations: list[str]) -> list[str]:
    """Drop exact-text duplicates; the first occurrence keeps its position."""
    return list(dict.fromkeys(observations))


class Entity(BaseModel):
    """A named node with an ordered, append-only list of observations."""

    name: str = Field(
        min_length=1,
        description="Unique entity name within the graph.",
    )
    entity_type: str = Field(
        description="Free-form classification, e.g. person, project, tool.",
    )
    observations: list[str] = Field(
        default_factory=list,
        description="Text facts about the entity, in insertion order.",
    )

    @field_validator("observations")
    @classmethod
    def _dedupe(cls, value: list[str]) -> list[str]:
        return dedupe_observations(value)


class Relation(BaseModel):
    """A directed, typed edge between two existing entities."""

    model_config = {"frozen": True, "populate_by_name": True}

    from_entity: str = Field(
        alias="from",
        min_length=1,
        description="Name of the source entity.",
    )
    to_entity: str = Field(
        alias="to",
        min_length=1,
        description="Name of the target entity.",
    )
    relation_type: str = Field(
        min_length=1,
        description="Relation label in active voice, e.g. works_at.",
    )

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.from_entity, self.to_entity, self.relation_type)


class ObservationAddition(BaseModel):
    """Observations to append to one existing entity."""

    entity_name: str
    contents: list[str] = Field(default_factory=list)


class ObservationDeletion(BaseModel):
    """Observations to remove (by exact text) from one entity."""

    entity_name: str
    observations: list[str] = Field(default_factory=list)


@dataclass(frozen=True)
class GraphSnapshot:
    """Detached copy of (part of) the graph.

    Rows are captured when the snapshot is taken; models are built on
    iteration.  Later graph mutations are never reflected here.
    """

    entity_rows: tuple[dict, ...] = field(default_factory=tuple)
    relation_rows: tuple[dict, ...] = field(default_factory=tuple)

    def iter_entities(self) -> Iterator[Entity]:
        for row in self.entity_rows:
            yield Entity(
                name=row["name"],
                entity_type=row["entity_type"],
                observations=list(row.get("observations") or []),
            )

    def iter_relations(self) -> Iterator[Relation]:
        for row in self.relation_rows:
            yield Relation(
                from_entity=row["source"],
                to_entity=row["target"],
                relation_type=row["relation_type"],
            )

    @property
    def entity_names(self) -> list[str]:
        return [row["name"] for row in self.entity_rows]

    def to_dict(self) -> dict:
        return {
            "entities": [e.model_dump() for e in self.iter_entities()],
            "relations": [r.model_dump(by_alias=True) for r in self.iter_relations()],
        }
