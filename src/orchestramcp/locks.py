"""Per-key asyncio locks.

Serializes writers on the same key (server name, memory id, entity name)
while letting unrelated keys proceed concurrently.  Lock objects are
dropped once no task holds or waits on them.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from collections.abc import Iterable
from contextlib import asynccontextmanager


class KeyedLock:
    """A family of asyncio locks addressed by string key."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[str]) -> AsyncIterator[None]:
        """Acquire several keys in sorted order to avoid lock-order deadlocks."""
        ordered = sorted(set(keys))
        async with _nested(self, ordered):
            yield

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


@asynccontextmanager
async def _nested(keyed: KeyedLock, keys: list[str]) -> AsyncIterator[None]:
    if not keys:
        yield
        return
    async with keyed.hold(keys[0]):
        async with _nested(keyed, keys[1:]):
            yield
