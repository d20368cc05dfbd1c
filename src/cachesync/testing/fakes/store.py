"""Testing fakes – FlakyResponseStore."""
from __future__ import annotations

from typing import Iterable

from cachesync.application.cache.store import CacheEntry, InMemoryResponseStore
from cachesync.kernel.errors import TransientStoreError

__all__ = ["FlakyResponseStore"]


class FlakyResponseStore:
    """Wraps an :class:`InMemoryResponseStore` and fails on demand.

    Flip ``fail_get`` / ``fail_set`` / ``fail_delete`` for blanket failures, or
    add keys to ``failing_keys`` to make only deletes touching them fail.
    """

    def __init__(self, inner: InMemoryResponseStore | None = None) -> None:
        self.inner = inner or InMemoryResponseStore()
        self.fail_get = False
        self.fail_set = False
        self.fail_delete = False
        self.failing_keys: set[str] = set()
        self.get_calls = 0
        self.set_calls = 0
        self.delete_calls: list[list[str]] = []

    async def get(self, key: str) -> CacheEntry | None:
        self.get_calls += 1
        if self.fail_get:
            raise TransientStoreError("flaky", f"get {key} failed")
        return await self.inner.get(key)

    async def set(self, entry: CacheEntry, ttl: float | None = None) -> None:
        self.set_calls += 1
        if self.fail_set:
            raise TransientStoreError("flaky", f"set {entry.key} failed")
        await self.inner.set(entry, ttl=ttl)

    async def delete_many(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        self.delete_calls.append(keys)
        if self.fail_delete or self.failing_keys.intersection(keys):
            raise TransientStoreError("flaky", f"delete of {keys} failed")
        return await self.inner.delete_many(keys)

    def __len__(self) -> int:
        return len(self.inner)
