from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Hashable

CacheKey = tuple[Hashable, ...]


@dataclass
class CacheEntry:
    value: Any
    stale: bool = False


def family_of(key: CacheKey) -> str:
    """``("appointment", id)`` and ``("appointments", ...)`` share the family ``appointment``."""
    head = str(key[0]) if key else ""
    return head[:-1] if head.endswith("s") else head


class SnapshotCache:
    """Snapshots the client has fetched, keyed by view.

    Entity snapshots live under ``(kind, entity_id)``; list or summary views
    use any other key in the same family, such as ``("appointments", ...)``.
    Snapshots are only ever replaced wholesale with what the service returned.

    Each key is guarded by one ``asyncio.Lock`` while something holds or
    waits on it. Transitions and refetches of the same key queue behind it;
    different keys never wait on one another. The lock is dropped once the
    last holder releases it.
    """

    def __init__(self):
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._locks: dict[CacheKey, asyncio.Lock] = {}
        self._holders: dict[CacheKey, int] = {}

    def get(self, key: CacheKey) -> CacheEntry | None:
        return self._entries.get(key)

    def put(self, key: CacheKey, value: Any) -> None:
        self._entries[key] = CacheEntry(value=value)

    def mark_stale(self, key: CacheKey) -> None:
        entry = self._entries.get(key)
        if entry is not None:
            entry.stale = True

    def invalidate(self, family: str, keep: CacheKey | None = None) -> list[CacheKey]:
        """Mark the views that depend on ``family`` stale; returns the keys touched.

        Entity snapshots of the family (``(family, id)``) are left alone:
        they only go stale through their own conflict.
        """
        touched = []
        for key, entry in self._entries.items():
            if key == keep or family_of(key) != family or key[0] == family:
                continue
            entry.stale = True
            touched.append(key)
        return touched

    @asynccontextmanager
    async def lock(self, key: CacheKey) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]

    async def fetch(self, key: CacheKey, loader: Callable[[], Awaitable[Any]]) -> Any:
        # Waits for any transition holding the key before reading.
        async with self.lock(key):
            value = await loader()
            self.put(key, value)
            return value
