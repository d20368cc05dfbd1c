"""Application cache – ResponseStore port and in-memory implementation."""
from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Protocol, runtime_checkable

from cachesync.kernel.time import Clock, SystemClock

__all__ = ["CacheEntry", "InMemoryResponseStore", "ResponseStore"]


@dataclass(frozen=True)
class CacheEntry:
    """A computed response. Replaced, never mutated."""

    key: str
    value: Any
    created_at: datetime
    tags: frozenset[str] = frozenset()


@runtime_checkable
class ResponseStore(Protocol):
    """Port: where cache entries physically live.

    Implementations raise :class:`~cachesync.kernel.errors.TransientStoreError`
    for failures a retry may fix.
    """

    async def get(self, key: str) -> CacheEntry | None: ...
    async def set(self, entry: CacheEntry, ttl: float | None = None) -> None: ...
    async def delete_many(self, keys: Iterable[str]) -> int: ...


class InMemoryResponseStore:
    """Process-local LRU store with optional per-entry TTL.

    *on_evict* is called with the key of every entry dropped for capacity or
    expiry, so the owning cache can forget its tags.
    """

    def __init__(
        self,
        max_entries: int = 10_000,
        *,
        clock: Clock | None = None,
        on_evict: Callable[[str], Any] | None = None,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._max_entries = max_entries
        self._clock = clock or SystemClock()
        self._on_evict = on_evict
        self._lock = threading.Lock()
        self._data: OrderedDict[str, tuple[float | None, CacheEntry]] = OrderedDict()

    def bind_evictions(self, on_evict: Callable[[str], Any]) -> None:
        self._on_evict = on_evict

    async def get(self, key: str) -> CacheEntry | None:
        expired = False
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            expires_at, entry = item
            if expires_at is not None and self._clock.timestamp() >= expires_at:
                del self._data[key]
                expired = True
            else:
                self._data.move_to_end(key)
        if expired:
            self._evicted([key])
            return None
        return entry

    async def set(self, entry: CacheEntry, ttl: float | None = None) -> None:
        expires_at = self._clock.timestamp() + ttl if ttl is not None else None
        evicted: list[str] = []
        with self._lock:
            self._data[entry.key] = (expires_at, entry)
            self._data.move_to_end(entry.key)
            while len(self._data) > self._max_entries:
                oldest, _ = self._data.popitem(last=False)
                evicted.append(oldest)
        self._evicted(evicted)

    async def delete_many(self, keys: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._data.pop(key, None) is not None:
                    removed += 1
        return removed

    async def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def _evicted(self, keys: list[str]) -> None:
        if self._on_evict is None:
            return
        for key in keys:
            self._on_evict(key)
