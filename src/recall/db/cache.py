"""Bounded in-memory hot cache for chunk vectors."""

from __future__ import annotations

from collections import OrderedDict

from recall.db.models import EmbeddedChunk


class HotCache:
    """Fixed-capacity chunk map with FIFO eviction by insertion order.

    Re-inserting an existing id replaces the entry in place without refreshing
    its position: eviction follows first insertion, not last access. The cache
    is a read-through accelerator; durable storage can always rebuild it.
    """

    def __init__(self, capacity: int = 10_000) -> None:
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self.capacity = capacity
        self._entries: OrderedDict[str, EmbeddedChunk] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, chunk_id: object) -> bool:
        return chunk_id in self._entries

    def get(self, chunk_id: str) -> EmbeddedChunk | None:
        return self._entries.get(chunk_id)

    def put(self, chunk: EmbeddedChunk) -> None:
        if self.capacity == 0:
            return
        if chunk.id in self._entries:
            self._entries[chunk.id] = chunk
            return
        while len(self._entries) >= self.capacity:
            self._entries.popitem(last=False)
        self._entries[chunk.id] = chunk

    def discard(self, chunk_id: str) -> None:
        self._entries.pop(chunk_id, None)

    def values(self) -> list[EmbeddedChunk]:
        return list(self._entries.values())

    def clear(self) -> None:
        self._entries.clear()
