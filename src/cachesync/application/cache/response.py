"""Application cache – ResponseCache (tagged cache-aside with in-flight dedup)."""
from __future__ import annotations

import asyncio
import concurrent.futures
import functools
import threading
import time
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from cachesync.application.cache.store import CacheEntry, InMemoryResponseStore, ResponseStore
from cachesync.application.cache.tags import Reservation, TagRegistry
from cachesync.kernel.errors import TransientStoreError
from cachesync.kernel.time import Clock, SystemClock
from cachesync.observability.logging import get_logger
from cachesync.observability.metrics import Metrics, NoopMetrics

__all__ = ["ResponseCache", "cached"]

T = TypeVar("T")
logger = get_logger(__name__)


class ResponseCache:
    """Server-wide store of computed responses addressed by key and tags.

    * :meth:`get_or_compute` runs at most one computation per key at a time;
      concurrent callers, on any thread or event loop, wait for the leader.
    * A failed computation is never cached and fails every waiter.
    * A result whose tags were purged while it was being computed is
      returned to its callers but not cached.
    * Store failures on the read path degrade to a miss, on the write path to
      an uncached result.
    """

    def __init__(
        self,
        store: ResponseStore | None = None,
        registry: TagRegistry | None = None,
        *,
        ttl: float | None = None,
        clock: Clock | None = None,
        metrics: Metrics | None = None,
    ) -> None:
        self._registry = registry or TagRegistry()
        if store is None:
            store = InMemoryResponseStore(clock=clock, on_evict=self._registry.discard)
        self._store = store
        self._ttl = ttl
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._inflight: dict[str, concurrent.futures.Future[Any]] = {}
        self._pending_deletes: set[str] = set()

        metrics = metrics or NoopMetrics()
        self._hits = metrics.counter("response_cache_hits_total")
        self._misses = metrics.counter("response_cache_misses_total")
        self._compute_seconds = metrics.histogram("response_cache_compute_seconds")

    @property
    def registry(self) -> TagRegistry:
        return self._registry

    @property
    def store(self) -> ResponseStore:
        return self._store

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def get_entry(self, key: str) -> CacheEntry | None:
        if not self._registry.contains(key):
            return None
        try:
            entry = await self._store.get(key)
        except TransientStoreError as exc:
            logger.warning("response_cache_read_failed", key=key, error=repr(exc))
            return None
        if entry is None:
            # expired or evicted underneath us
            self._registry.discard(key)
        return entry

    async def get(self, key: str) -> Any | None:
        entry = await self.get_entry(key)
        return entry.value if entry is not None else None

    async def get_or_compute(
        self,
        key: str,
        tags: Iterable[str],
        compute_fn: Callable[[], Awaitable[T]],
    ) -> T:
        tags = frozenset(tags)
        entry = await self.get_entry(key)
        if entry is not None:
            self._hits.add()
            return entry.value

        while True:
            with self._lock:
                future = self._inflight.get(key)
                leader = future is None
                if leader:
                    future = concurrent.futures.Future()
                    self._inflight[key] = future

            if leader:
                return await self._compute_as_leader(key, tags, compute_fn, future)

            try:
                return await asyncio.shield(asyncio.wrap_future(future))
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if future.cancelled() and current is not None and not current.cancelling():
                    # the leader was cancelled, not us: take over
                    continue
                raise

    async def _compute_as_leader(
        self,
        key: str,
        tags: frozenset[str],
        compute_fn: Callable[[], Awaitable[T]],
        future: concurrent.futures.Future[Any],
    ) -> T:
        reservation = self._registry.reserve(key, tags)
        try:
            # another leader may have finished between our miss and our lock
            entry = await self.get_entry(key)
            if entry is not None:
                self._registry.release(reservation)
                self._hits.add()
                self._resolve(key, future, value=entry.value)
                return entry.value

            self._misses.add()
            started = time.perf_counter()
            value = await compute_fn()
            self._compute_seconds.record(time.perf_counter() - started)
        except asyncio.CancelledError:
            self._registry.release(reservation)
            self._resolve(key, future, cancelled=True)
            raise
        except BaseException as exc:
            self._registry.release(reservation)
            self._resolve(key, future, error=exc)
            raise

        try:
            await self._store_entry(key, value, reservation)
        finally:
            self._resolve(key, future, value=value)
        return value

    async def _store_entry(self, key: str, value: Any, reservation: Reservation) -> None:
        entry = CacheEntry(key=key, value=value, created_at=self._clock.now(), tags=reservation.tags)
        try:
            await self._store.set(entry, ttl=self._ttl)
        except TransientStoreError as exc:
            self._registry.release(reservation)
            logger.warning("response_cache_write_failed", key=key, error=repr(exc))
            return
        if self._registry.commit(reservation):
            return
        logger.debug("response_cache_result_superseded", key=key, tags=sorted(reservation.tags))
        await self._delete_from_store([key])

    def _resolve(
        self,
        key: str,
        future: concurrent.futures.Future[Any],
        *,
        value: Any = None,
        error: BaseException | None = None,
        cancelled: bool = False,
    ) -> None:
        with self._lock:
            if self._inflight.get(key) is future:
                del self._inflight[key]
        if cancelled:
            future.cancel()
        elif error is not None:
            future.set_exception(error)
        else:
            future.set_result(value)

    # ------------------------------------------------------------------
    # Purge path
    # ------------------------------------------------------------------

    async def purge_tag(self, tag: str) -> list[str]:
        """Purge one tag; return the keys that were live before the call.

        Entries stop being served as soon as the registry drops them. If the
        physical delete then fails, the keys are kept for the next purge to
        retry and :class:`TransientStoreError` is raised.
        """
        await self._retry_pending_deletes()
        keys = self._registry.purge([tag])
        if keys:
            await self._delete_from_store(keys, raise_on_failure=True)
        return keys

    async def purge(self, tags: Iterable[str]) -> list[str]:
        removed: set[str] = set()
        for tag in dict.fromkeys(tags):
            removed.update(await self.purge_tag(tag))
        return sorted(removed)

    async def delete(self, key: str) -> None:
        self._registry.discard(key)
        await self._delete_from_store([key], raise_on_failure=True)

    async def _delete_from_store(self, keys: list[str], *, raise_on_failure: bool = False) -> None:
        try:
            await self._store.delete_many(keys)
        except TransientStoreError:
            with self._lock:
                self._pending_deletes.update(keys)
            logger.warning("response_cache_delete_deferred", keys=keys)
            if raise_on_failure:
                raise

    async def _retry_pending_deletes(self) -> None:
        with self._lock:
            pending = sorted(self._pending_deletes)
        pending = [k for k in pending if not self._registry.contains(k)]
        if not pending:
            return
        try:
            await self._store.delete_many(pending)
        except TransientStoreError as exc:
            logger.warning("response_cache_delete_retry_failed", keys=pending, error=repr(exc))
            return
        with self._lock:
            self._pending_deletes.difference_update(pending)

    @property
    def pending_deletes(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._pending_deletes)


def cached(
    cache: ResponseCache,
    key_fn: Callable[..., str] | None = None,
    tags: Iterable[str] | Callable[..., Iterable[str]] = (),
):
    """Decorator: route an async function through :meth:`ResponseCache.get_or_compute`.

    *key_fn* and a callable *tags* receive the wrapped function's arguments.
    """

    def decorator(fn: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            key = key_fn(*args, **kwargs) if key_fn else f"{fn.__qualname__}:{args}:{sorted(kwargs.items())}"
            entry_tags = tags(*args, **kwargs) if callable(tags) else tags
            return await cache.get_or_compute(key, entry_tags, lambda: fn(*args, **kwargs))

        wrapper._response_cache = cache  # type: ignore[attr-defined]
        return wrapper

    return decorator
