"""Application realtime – Controller.

Owns the Table Caches of one session scope and their subscriptions. A
Controller is an explicitly constructed, reference-counted object; nothing
about it is module-level state, so two sessions (or two tests) never share
a cache.

Typical use::

    controller = Controller(stream)
    async with await controller.subscribe_all(specs) as handle:
        rows = controller.read("submissions")
        result = await controller.mutate_optimistic(
            "submissions", OptimisticChange.update({"id": 1, "score": 9}), save
        )
"""
from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Mapping

from cachesync.application.realtime.events import ChangeEvent
from cachesync.application.realtime.stream import ChangeStreamClient, SubscriptionHandle
from cachesync.application.realtime.table import Fetcher, OptimisticChange, TableCache
from cachesync.config import CacheSyncSettings
from cachesync.kernel.errors import ForbiddenError, SubscriptionClosedError, ValidationError
from cachesync.kernel.time import Clock
from cachesync.observability.logging import get_logger
from cachesync.observability.metrics import Metrics
from cachesync.resilience.retry import RetryPolicy

__all__ = [
    "AccessCheck",
    "Controller",
    "ControllerHandle",
    "MutationResult",
    "TableSpec",
]

logger = get_logger(__name__)

AccessCheck = Callable[[str, str], bool]
CommitFn = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class TableSpec:
    """One table of interest.

    *name* addresses the cache inside the Controller; *table* defaults to it
    and names the database table, so one table can be mirrored under two
    filters.
    """

    name: str
    fetcher: Fetcher
    filter: Mapping[str, Any] = field(default_factory=dict)
    key_field: str = "id"
    sort_key: str | Callable[[Mapping[str, Any]], Any] | None = None
    table: str | None = None


@dataclass(frozen=True)
class MutationResult:
    """Outcome of :meth:`Controller.mutate_optimistic`.

    The speculative change is always applied first; ``committed`` says whether
    it was kept (``True``) or rolled back (``False``).
    """

    table: str
    change: OptimisticChange
    committed: bool
    value: Any = None
    error: BaseException | None = None

    @property
    def rolled_back(self) -> bool:
        return not self.committed

    def unwrap(self) -> Any:
        """Return the commit value or re-raise the commit failure."""
        if self.error is not None:
            raise self.error
        return self.value


class ControllerHandle:
    """Scoped ownership of a :meth:`Controller.subscribe_all` call.

    Releasing the handle drops one reference on the Controller; the last
    release tears it down. Use it as an async context manager so the release
    runs on every exit path.
    """

    def __init__(self, controller: "Controller", tables: Iterable[str]) -> None:
        self._controller = controller
        self.tables: tuple[str, ...] = tuple(tables)
        self._released = False

    @property
    def controller(self) -> "Controller":
        return self._controller

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        await self._controller.release()

    dispose = release

    async def __aenter__(self) -> "ControllerHandle":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.release()


class Controller:
    def __init__(
        self,
        stream: ChangeStreamClient,
        *,
        access_check: AccessCheck | None = None,
        tombstone_ttl: float = 300.0,
        refetch_policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        metrics: Metrics | None = None,
    ) -> None:
        self._stream = stream
        self._access_check = access_check
        self._tombstone_ttl = tombstone_ttl
        self._refetch_policy = refetch_policy
        self._clock = clock
        self._metrics = metrics
        self._caches: dict[str, TableCache] = {}
        self._subscriptions: dict[str, SubscriptionHandle] = {}
        self._refs = 0
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        stream: ChangeStreamClient,
        settings: CacheSyncSettings,
        **kwargs: Any,
    ) -> "Controller":
        kwargs.setdefault(
            "refetch_policy",
            RetryPolicy(
                max_attempts=settings.refetch_max_attempts,
                attempt_timeout=settings.refetch_timeout_seconds,
            ),
        )
        return cls(stream, tombstone_ttl=settings.tombstone_ttl_seconds, **kwargs)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def tables(self) -> list[str]:
        return list(self._caches)

    # ------------------------------------------------------------------
    # Reference counting
    # ------------------------------------------------------------------

    def retain(self) -> "Controller":
        if self._closed:
            raise SubscriptionClosedError("Controller has been torn down")
        self._refs += 1
        return self

    async def release(self) -> None:
        if self._closed:
            return
        self._refs -= 1
        if self._refs <= 0:
            await self.teardown()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe_all(self, specs: Iterable[TableSpec]) -> ControllerHandle:
        """Subscribe to every table, then load each cache; return a handle owning one reference."""
        self.retain()
        specs = list(specs)
        added: list[str] = []
        try:
            for spec in specs:
                if spec.name in self._caches:
                    raise ValidationError(
                        f"Table '{spec.name}' is already subscribed",
                        errors=[{"field": "name", "message": "duplicate table"}],
                    )
                cache = TableCache(
                    spec.name,
                    spec.fetcher,
                    table=spec.table,
                    key_field=spec.key_field,
                    filter=spec.filter,
                    sort_key=spec.sort_key,
                    tombstone_ttl=self._tombstone_ttl,
                    retry_policy=self._refetch_policy,
                    clock=self._clock,
                    metrics=self._metrics,
                )
                self._caches[spec.name] = cache
                added.append(spec.name)
                # subscribe before loading so nothing committed during the load is missed
                self._subscriptions[spec.name] = await self._stream.subscribe(
                    cache.table,
                    spec.filter,
                    on_event=self._deliverer(spec.name),
                    on_resync=cache.refetch,
                )
            loaded = await asyncio.gather(*(self._caches[name].refetch() for name in added))
        except BaseException:
            await self._drop(added)
            self._refs -= 1
            raise
        for name, ok in zip(added, loaded):
            if not ok:
                logger.warning("controller_initial_load_failed", table=name)
        logger.info("controller_subscribed", tables=added)
        return ControllerHandle(self, added)

    @contextlib.asynccontextmanager
    async def scoped(self, specs: Iterable[TableSpec]) -> AsyncIterator["Controller"]:
        handle = await self.subscribe_all(specs)
        try:
            yield self
        finally:
            await handle.release()

    def _deliverer(self, name: str) -> Callable[[ChangeEvent], bool]:
        def deliver(event: ChangeEvent) -> bool:
            handle = self._subscriptions.get(name)
            # closed subscriptions never touch the cache
            if self._closed or handle is None or handle.closed:
                return False
            return self._caches[name].apply_event(event)

        return deliver

    async def _drop(self, names: Iterable[str]) -> None:
        handles = []
        for name in names:
            handle = self._subscriptions.pop(name, None)
            if handle is not None:
                handle.close()
                handles.append(handle)
            cache = self._caches.pop(name, None)
            if cache is not None:
                cache.close()
        for handle in handles:
            await self._stream.unsubscribe(handle)

    # ------------------------------------------------------------------
    # Reads and writes
    # ------------------------------------------------------------------

    def cache(self, table: str) -> TableCache:
        try:
            return self._caches[table]
        except KeyError:
            raise ValidationError(
                f"Table '{table}' is not subscribed",
                errors=[{"field": "table", "message": "unknown table"}],
            ) from None

    def read(self, table: str) -> list[dict[str, Any]]:
        """Snapshot of *table*. After teardown this is the last state before it."""
        cache = self.cache(table)
        self._authorize("read", table)
        return cache.snapshot()

    async def mutate_optimistic(
        self,
        table: str,
        change: OptimisticChange,
        commit_fn: CommitFn,
    ) -> MutationResult:
        """Apply *change* locally, then commit it.

        On success the pending row stays until the next authoritative event
        supersedes it; if *commit_fn* returns a :class:`ChangeEvent` that event
        is applied right away. On failure the change is rolled back and the
        error is returned in the result rather than raised.
        """
        if self._closed:
            raise SubscriptionClosedError("Controller has been torn down")
        cache = self.cache(table)
        self._authorize("write", table)
        speculation = cache.apply_speculative(change)
        try:
            value = await commit_fn()
        except asyncio.CancelledError:
            cache.rollback(speculation)
            raise
        except Exception as exc:
            cache.rollback(speculation)
            logger.warning("controller_mutation_rolled_back", table=table, error=repr(exc))
            return MutationResult(table=table, change=change, committed=False, error=exc)

        if isinstance(value, ChangeEvent):
            cache.apply_event(value)
            if value.key(cache.key_field) != speculation.key:
                # the server stored the row under another key
                cache.rollback(speculation)
        cache.confirm(speculation)
        return MutationResult(table=table, change=change, committed=True, value=value)

    def _authorize(self, action: str, table: str) -> None:
        if self._access_check is None:
            return
        if not self._access_check(action, table):
            logger.warning("controller_access_denied", action=action, table=table)
            raise ForbiddenError(action=action, resource=table)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def teardown(self) -> None:
        """Close every subscription and cache, then leave the transport.

        Flags are set before the first await, so no event delivered after
        this call starts can change what :meth:`read` would have returned.
        """
        if self._closed:
            return
        self._closed = True
        self._refs = 0
        handles = list(self._subscriptions.values())
        for handle in handles:
            handle.close()
        for cache in self._caches.values():
            cache.close()
        self._subscriptions.clear()
        for handle in handles:
            await self._stream.unsubscribe(handle)
        logger.info("controller_torn_down", tables=list(self._caches))
