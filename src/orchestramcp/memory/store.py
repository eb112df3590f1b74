"""Redis-backed memory store.

Records are stored as JSON strings keyed by ``{prefix}:memory:{id}``.
A sorted set ``{prefix}:updated`` tracks last-update time (score = epoch).
Sets ``{prefix}:keyword:{word}`` index title/content tokens and sets
``{prefix}:tag:{tag}`` index tags, so search can rank candidates without
loading them.  Records have no TTL.
"""

from __future__ import annotations

import logging
import re
import time
from collections import Counter
from collections.abc import AsyncIterator
from collections.abc import Iterable

from redis.asyncio import Redis  # type: ignore[import-untyped]

from orchestramcp.config import MemoryStoreConfig
from orchestramcp.errors import NotFoundError
from orchestramcp.errors import PayloadValidationError
from orchestramcp.locks import KeyedLock
from orchestramcp.memory.schemas import MemoryPatch
from orchestramcp.memory.schemas import MemoryRecord
from orchestramcp.memory.schemas import new_memory_id
from orchestramcp.memory.schemas import normalize_tag

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"[a-z0-9]+")
_CLEAR_BATCH_SIZE = 100


def _tokenize(text: str) -> set[str]:
    """Extract lowercase alphanumeric tokens from *text*."""
    return set(_WORD_RE.findall(text.lower()))


def _record_tokens(record: MemoryRecord) -> set[str]:
    return _tokenize(f"{record.title} {record.content}")


def _decode(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value


def _merged_content(keep: MemoryRecord, other: MemoryRecord) -> str:
    return f"{keep.content}\n\n--- merged from {other.id} ({other.title}) ---\n{other.content}"


class MemorySearchResults:
    """Ranked search results, materialized lazily in batches.

    The ranking is fixed when the search runs.  Each ``async for`` starts
    again from the top; records deleted since the search are skipped.
    """

    def __init__(self, store: MemoryStore, ranked_ids: list[str], batch_size: int) -> None:
        self._store = store
        self._ids = ranked_ids
        self._batch_size = max(batch_size, 1)

    @property
    def ids(self) -> list[str]:
        return list(self._ids)

    def __len__(self) -> int:
        return len(self._ids)

    def __aiter__(self) -> AsyncIterator[MemoryRecord]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[MemoryRecord]:
        for offset in range(0, len(self._ids), self._batch_size):
            batch = self._ids[offset : offset + self._batch_size]
            for record in await self._store.get_many(batch):
                if record is not None:
                    yield record

    async def to_list(self, limit: int | None = None) -> list[MemoryRecord]:
        records: list[MemoryRecord] = []
        async for record in self:
            records.append(record)
            if limit is not None and len(records) >= limit:
                break
        return records


class MemoryStore:
    """Durable record store with tag/keyword search, update and merge."""

    def __init__(self, redis: Redis, config: MemoryStoreConfig | None = None) -> None:
        self._redis = redis
        self.config = config or MemoryStoreConfig()
        self._locks = KeyedLock()
        prefix = self.config.key_prefix
        self._record_key = f"{prefix}:memory"
        self._updated_key = f"{prefix}:updated"
        self._keyword_key = f"{prefix}:keyword"
        self._tag_key = f"{prefix}:tag"

    # -- keys / indexing --

    def _key(self, memory_id: str) -> str:
        return f"{self._record_key}:{memory_id}"

    def _add_to_indexes(self, pipe, record: MemoryRecord) -> None:
        pipe.zadd(self._updated_key, {record.id: record.updated_at})
        for word in _record_tokens(record):
            pipe.sadd(f"{self._keyword_key}:{word}", record.id)
        for tag in record.tags:
            pipe.sadd(f"{self._tag_key}:{tag}", record.id)

    def _remove_from_indexes(self, pipe, record: MemoryRecord) -> None:
        pipe.zrem(self._updated_key, record.id)
        for word in _record_tokens(record):
            pipe.srem(f"{self._keyword_key}:{word}", record.id)
        for tag in record.tags:
            pipe.srem(f"{self._tag_key}:{tag}", record.id)

    # -- write --

    async def create(self, record: MemoryRecord) -> MemoryRecord:
        """Store *record* under a freshly assigned id and return the stored copy."""
        now = time.time()
        stored = record.model_copy(
            update={"id": new_memory_id(), "created_at": now, "updated_at": now}
        )
        async with self._locks.hold(stored.id):
            pipe = self._redis.pipeline()
            pipe.set(self._key(stored.id), stored.model_dump_json())
            self._add_to_indexes(pipe, stored)
            await pipe.execute()
        logger.debug("Created memory id=%s tags=%s", stored.id, stored.tags)
        return stored

    async def update(self, memory_id: str, patch: MemoryPatch) -> MemoryRecord:
        """Apply the fields present in *patch*; last writer wins per record."""
        async with self._locks.hold(memory_id):
            current = await self.get(memory_id)
            if current is None:
                raise NotFoundError("memory", memory_id)
            updated = MemoryRecord.model_validate(
                {
                    **current.model_dump(),
                    **patch.changes(),
                    "updated_at": self._bumped(current),
                }
            )
            await self._replace(current, updated)
        return updated

    async def merge(self, id_a: str, id_b: str) -> MemoryRecord:
        """Fold two records into the earlier-created one and delete the other."""
        if id_a == id_b:
            raise PayloadValidationError(
                "Cannot merge a memory with itself", memory_id=id_a
            )
        async with self._locks.hold_many([id_a, id_b]):
            first = await self.get(id_a)
            if first is None:
                raise NotFoundError("memory", id_a)
            second = await self.get(id_b)
            if second is None:
                raise NotFoundError("memory", id_b)

            keep, other = (first, second)
            if second.created_at < first.created_at:
                keep, other = second, first

            merged = MemoryRecord.model_validate(
                {
                    **keep.model_dump(),
                    "content": _merged_content(keep, other),
                    "tags": [*keep.tags, *other.tags],
                    "corpus_names": [*keep.corpus_names, *other.corpus_names],
                    "updated_at": self._bumped(keep, other),
                }
            )

            pipe = self._redis.pipeline()
            self._remove_from_indexes(pipe, keep)
            self._remove_from_indexes(pipe, other)
            pipe.delete(self._key(other.id))
            pipe.set(self._key(merged.id), merged.model_dump_json())
            self._add_to_indexes(pipe, merged)
            await pipe.execute()

        logger.info("Merged memory %s into %s", other.id, keep.id)
        return merged

    async def delete(self, memory_id: str) -> bool:
        """Delete a record; deleting an absent id is a no-op returning ``False``."""
        async with self._locks.hold(memory_id):
            current = await self.get(memory_id)
            pipe = self._redis.pipeline()
            pipe.delete(self._key(memory_id))
            pipe.zrem(self._updated_key, memory_id)
            if current is not None:
                self._remove_from_indexes(pipe, current)
            await pipe.execute()
        return current is not None

    async def _replace(self, current: MemoryRecord, updated: MemoryRecord) -> None:
        pipe = self._redis.pipeline()
        self._remove_from_indexes(pipe, current)
        pipe.set(self._key(updated.id), updated.model_dump_json())
        self._add_to_indexes(pipe, updated)
        await pipe.execute()

    @staticmethod
    def _bumped(*records: MemoryRecord) -> float:
        # Strictly after every input so update order stays visible in ranking.
        return max(time.time(), *(r.updated_at + 1e-6 for r in records))

    # -- read --

    async def get(self, memory_id: str) -> MemoryRecord | None:
        data = await self._redis.get(self._key(memory_id))
        if data is None:
            return None
        return MemoryRecord.model_validate_json(data)

    async def get_many(self, memory_ids: list[str]) -> list[MemoryRecord | None]:
        if not memory_ids:
            return []
        pipe = self._redis.pipeline(transaction=False)
        for memory_id in memory_ids:
            pipe.get(self._key(memory_id))
        raw_results = await pipe.execute()
        return [
            MemoryRecord.model_validate_json(raw) if raw is not None else None
            for raw in raw_results
        ]

    async def count(self) -> int:
        return await self._redis.zcard(self._updated_key)

    async def search(
        self, query: str, tags: Iterable[str] | None = None
    ) -> MemorySearchResults:
        """Rank records by (tag overlap, text matches, most recent update).

        Tag overlap counts record tags equal to an explicit query tag, a
        query token, or the normalized whole query.  With explicit *tags*,
        only records sharing at least one of them are returned.
        """
        words = sorted(_tokenize(query))
        required = {normalize_tag(tag) for tag in tags or []} - {""}
        probe = set(required) | {normalize_tag(word) for word in words}
        whole = normalize_tag(query)
        if whole:
            probe.add(whole)
        probe_tags = sorted(probe)

        if not words and not probe_tags:
            return MemorySearchResults(self, [], self.config.search_batch_size)

        pipe = self._redis.pipeline(transaction=False)
        for word in words:
            pipe.smembers(f"{self._keyword_key}:{word}")
        for tag in probe_tags:
            pipe.smembers(f"{self._tag_key}:{tag}")
        members = await pipe.execute()

        text_hits: Counter[str] = Counter()
        tag_hits: Counter[str] = Counter()
        required_hits: set[str] = set()
        for ids in members[: len(words)]:
            text_hits.update({_decode(i) for i in ids})
        for tag, ids in zip(probe_tags, members[len(words) :]):
            decoded = {_decode(i) for i in ids}
            tag_hits.update(decoded)
            if tag in required:
                required_hits |= decoded

        candidates = set(text_hits) | set(tag_hits)
        if required:
            candidates &= required_hits
        if not candidates:
            return MemorySearchResults(self, [], self.config.search_batch_size)

        ordered = sorted(candidates)
        scores = await self._redis.zmscore(self._updated_key, ordered)
        updated = {
            memory_id: score for memory_id, score in zip(ordered, scores) if score is not None
        }
        ranked = sorted(
            updated,
            key=lambda memory_id: (
                -tag_hits[memory_id],
                -text_hits[memory_id],
                -updated[memory_id],
            ),
        )
        return MemorySearchResults(self, ranked, self.config.search_batch_size)

    async def clear(self) -> None:
        """Remove all records and indexes (test helper).

        Deletes in batches to avoid loading all keys into memory at once.
        """
        batch: list = []
        async for key in self._redis.scan_iter(match=f"{self.config.key_prefix}:*"):
            batch.append(key)
            if len(batch) >= _CLEAR_BATCH_SIZE:
                await self._redis.delete(*batch)
                batch.clear()
        if batch:
            await self._redis.delete(*batch)

    async def close(self) -> None:
        await self._redis.aclose()
