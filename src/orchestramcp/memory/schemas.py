"""Memory domain data models."""

from __future__ import annotations

import re
import time
import uuid

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

_TAG_SEPARATOR_RE = re.compile(r"[^a-z0-9_]+")


def normalize_tag(tag: str) -> str:
    """Lowercase *tag* and collapse separators into single underscores."""
    return _TAG_SEPARATOR_RE.sub("_", tag.strip().lower()).strip("_")


def _unique(values: list[str]) -> list[str]:
    return [value for value in dict.fromkeys(values) if value]


def new_memory_id() -> str:
    return f"mem_{uuid.uuid4().hex}"


class MemoryRecord(BaseModel):
    """A durable piece of knowledge held by the memory store."""

    id: str = Field(
        default_factory=new_memory_id,
        description="Unique identifier, assigned by the store as mem_{uuid4_hex}.",
    )
    title: str = Field(
        description="Short human-readable title.",
    )
    content: str = Field(
        description="Free-text body of the memory.",
    )
    tags: list[str] = Field(
        default_factory=list,
        description="Normalized tags (lowercase, underscores), deduplicated.",
    )
    corpus_names: list[str] = Field(
        default_factory=list,
        description="Corpus / scope names the record belongs to.",
    )
    user_triggered: bool = Field(
        default=False,
        description="True when a user asked for the memory, False when system-triggered.",
    )
    created_at: float = Field(
        default_factory=time.time,
        description="Unix epoch when the record was created.",
    )
    updated_at: float = Field(
        default_factory=time.time,
        description="Unix epoch of the last update or merge.",
    )

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: list[str]) -> list[str]:
        return _unique([normalize_tag(tag) for tag in value])

    @field_validator("corpus_names")
    @classmethod
    def _dedupe_corpus_names(cls, value: list[str]) -> list[str]:
        return _unique([name.strip() for name in value])


class MemoryPatch(BaseModel):
    """Partial update for a memory record; only fields that are set apply."""

    title: str | None = None
    content: str | None = None
    tags: list[str] | None = None
    corpus_names: list[str] | None = None
    user_triggered: bool | None = None

    def changes(self) -> dict:
        return {
            key: value
            for key, value in self.model_dump(exclude_unset=True).items()
            if value is not None
        }
