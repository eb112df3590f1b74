"""Memory domain: durable records with tag and keyword retrieval."""

from __future__ import annotations

from orchestramcp.memory.schemas import MemoryPatch
from orchestramcp.memory.schemas import MemoryRecord
from orchestramcp.memory.schemas import normalize_tag
from orchestramcp.memory.store import MemorySearchResults
from orchestramcp.memory.store import MemoryStore

__all__ = [
    "MemoryPatch",
    "MemoryRecord",
    "MemorySearchResults",
    "MemoryStore",
    "normalize_tag",
]
