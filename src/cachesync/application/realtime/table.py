"""Application realtime – TableCache.

A local mirror of the rows of one table (optionally narrowed by a
column-equality filter), kept current by applying :class:`ChangeEvent`
deliveries and replaced wholesale by :meth:`TableCache.refetch`.

Reconciliation rules:

1. an event whose ``commit_order`` is not newer than what the cache already
   reflects for that key is discarded;
2. ``insert``/``update`` upsert the row;
3. ``delete`` removes the row and leaves a tombstone for ``tombstone_ttl``
   seconds, so a late insert with an older ``commit_order`` cannot resurrect it;
4. ``refetch`` swaps in a complete snapshot and its watermark in one
   assignment; events at or below the watermark are discarded afterwards.
   Speculative changes still in flight are applied again on top of the newer
   of their confirmed state and the snapshot.

All mutation is synchronous. The only await is the fetcher round trip.
"""
from __future__ import annotations

import itertools
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Sequence

from cachesync.application.realtime.events import ChangeEvent, Operation, matches_filter
from cachesync.kernel.errors import (
    ConfigurationError,
    StaleEventError,
    SubscriptionClosedError,
    ValidationError,
)
from cachesync.kernel.time import Clock, SystemClock
from cachesync.observability.logging import get_logger
from cachesync.observability.metrics import Metrics, NoopMetrics
from cachesync.resilience.retry import RetryPolicy

__all__ = [
    "PENDING_FIELD",
    "Fetcher",
    "OptimisticChange",
    "Speculation",
    "TableCache",
    "TableCacheEntry",
    "TableSnapshot",
    "paginated",
]

logger = get_logger(__name__)

PENDING_FIELD = "__db_pending"


@dataclass(frozen=True)
class TableSnapshot:
    """Authoritative rows plus the highest ``commit_order`` they reflect."""

    rows: Sequence[Mapping[str, Any]]
    watermark: int


@dataclass(frozen=True)
class TableCacheEntry:
    key: Any
    row: Mapping[str, Any]
    commit_order: int
    pending: bool = False


@dataclass(frozen=True)
class OptimisticChange:
    """A local change applied before the server confirms it.

    For ``delete`` only the key column of *row* is needed; for ``update`` the
    given columns are merged into the current row.
    """

    operation: Operation
    row: Mapping[str, Any]

    @classmethod
    def insert(cls, row: Mapping[str, Any]) -> "OptimisticChange":
        return cls(Operation.INSERT, row)

    @classmethod
    def update(cls, row: Mapping[str, Any]) -> "OptimisticChange":
        return cls(Operation.UPDATE, row)

    @classmethod
    def delete(cls, row: Mapping[str, Any]) -> "OptimisticChange":
        return cls(Operation.DELETE, row)


@dataclass(eq=False)
class Speculation:
    """Undo record of one :meth:`TableCache.apply_speculative` call.

    Until it is settled (rolled back or confirmed) a speculation is in flight:
    a refetch keeps *previous* as the confirmed state of the key and applies
    *change* again on top of it.
    """

    key: Any
    previous: TableCacheEntry | None
    version: int
    position: int | None = None
    change: OptimisticChange | None = None
    settled: bool = field(default=False)


Fetcher = Callable[[], Awaitable[TableSnapshot]]
Listener = Callable[[list[dict[str, Any]], list[dict[str, Any]], list[dict[str, Any]]], Any]


def paginated(
    fetch_page: Callable[[int, int], Awaitable[TableSnapshot]],
    page_size: int = 1000,
) -> Fetcher:
    """Build a fetcher that reads ``fetch_page(offset, limit)`` until a short page.

    The combined watermark is the lowest page watermark, so changes committed
    while later pages were being read are not discarded.
    """
    if page_size < 1:
        raise ValueError("page_size must be >= 1")

    async def fetch() -> TableSnapshot:
        rows: list[Mapping[str, Any]] = []
        watermark: int | None = None
        for offset in itertools.count(0, page_size):
            page = await fetch_page(offset, page_size)
            rows.extend(page.rows)
            watermark = page.watermark if watermark is None else min(watermark, page.watermark)
            if len(page.rows) < page_size:
                break
        return TableSnapshot(rows=rows, watermark=watermark or 0)

    return fetch


class TableCache:
    def __init__(
        self,
        name: str,
        fetcher: Fetcher | None = None,
        *,
        table: str | None = None,
        key_field: str = "id",
        filter: Mapping[str, Any] | None = None,
        sort_key: str | Callable[[Mapping[str, Any]], Any] | None = None,
        tombstone_ttl: float = 300.0,
        retry_policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        metrics: Metrics | None = None,
    ) -> None:
        self._name = name
        self._table = table or name
        self._fetcher = fetcher
        self._key_field = key_field
        self._filter = dict(filter or {})
        self._sort_key = sort_key
        self._tombstone_ttl = tombstone_ttl
        self._retry = retry_policy or RetryPolicy(max_attempts=5)
        self._clock = clock or SystemClock()

        self._entries: dict[Any, TableCacheEntry] = {}
        self._tombstones: dict[Any, tuple[int, float]] = {}
        self._tombstone_expiry: deque[tuple[float, Any]] = deque()
        self._watermark: int | None = None
        self._versions: dict[Any, int] = {}
        self._speculations: dict[Any, Speculation] = {}
        self._version_seq = itertools.count(1)
        self._listeners: list[Listener] = []
        self._closed = False

        metrics = metrics or NoopMetrics()
        self._discarded = metrics.counter("table_cache_events_discarded_total")
        self._refetch_failures = metrics.counter("table_cache_refetch_failures_total")

    @property
    def name(self) -> str:
        return self._name

    @property
    def table(self) -> str:
        return self._table

    @property
    def key_field(self) -> str:
        return self._key_field

    @property
    def filter(self) -> dict[str, Any]:
        return dict(self._filter)

    @property
    def watermark(self) -> int | None:
        return self._watermark

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def tombstone_count(self) -> int:
        return len(self._tombstones)

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> list[dict[str, Any]]:
        """Rows in cache order (or sorted by ``sort_key``); fresh copies every call."""
        rows = [self._render(entry) for entry in self._entries.values()]
        if self._sort_key is None:
            return rows
        if callable(self._sort_key):
            return sorted(rows, key=self._sort_key)
        column = self._sort_key
        return sorted(rows, key=lambda row: row.get(column))

    def get(self, key: Any) -> dict[str, Any] | None:
        entry = self._entries.get(key)
        return self._render(entry) if entry is not None else None

    def entry(self, key: Any) -> TableCacheEntry | None:
        return self._entries.get(key)

    def listen(self, callback: Listener) -> Callable[[], None]:
        """Call *callback(rows, entered, left)* after every visible change."""
        self._listeners.append(callback)

        def unlisten() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unlisten

    # ------------------------------------------------------------------
    # Authoritative changes
    # ------------------------------------------------------------------

    def apply_event(self, event: ChangeEvent) -> bool:
        """Apply *event*; return ``False`` when it was discarded."""
        if self._closed or event.table != self._table:
            return False
        self._sweep_tombstones()
        key = event.key(self._key_field)
        try:
            self._check_order(key, event.commit_order)
        except StaleEventError as exc:
            logger.debug(
                "table_cache_event_discarded",
                table=self._table,
                key=key,
                commit_order=event.commit_order,
                current=exc.current,
            )
            self._discarded.add(labels={"table": self._table})
            return False

        before = self._entries.get(key)
        if event.operation is Operation.DELETE or not matches_filter(event.row, self._filter):
            # a row updated out of the filter leaves the cache like a delete
            self._entries.pop(key, None)
            expires_at = self._clock.timestamp() + self._tombstone_ttl
            self._tombstones[key] = (event.commit_order, expires_at)
            self._tombstone_expiry.append((expires_at, key))
            after = None
        else:
            after = TableCacheEntry(key=key, row=dict(event.row or {}), commit_order=event.commit_order)
            self._entries[key] = after
            self._tombstones.pop(key, None)
        self._speculations.pop(key, None)
        self._touch(key)
        self._changed(before, after)
        return True

    def _sweep_tombstones(self) -> None:
        now = self._clock.timestamp()
        expiry = self._tombstone_expiry
        while expiry and expiry[0][0] <= now:
            expires_at, key = expiry.popleft()
            tombstone = self._tombstones.get(key)
            # a later delete of the same key queued its own expiry
            if tombstone is not None and tombstone[1] == expires_at:
                del self._tombstones[key]

    def _confirmed_order(self, key: Any) -> int | None:
        candidates = []
        entry = self._entries.get(key)
        if entry is not None:
            candidates.append(entry.commit_order)
        speculation = self._speculations.get(key)
        if speculation is not None and speculation.previous is not None:
            # the row hidden by a pending delete still counts
            candidates.append(speculation.previous.commit_order)
        tombstone = self._tombstones.get(key)
        if tombstone is not None:
            order, expires_at = tombstone
            if self._clock.timestamp() < expires_at:
                candidates.append(order)
            else:
                del self._tombstones[key]
        if self._watermark is not None:
            candidates.append(self._watermark)
        return max(candidates) if candidates else None

    def _check_order(self, key: Any, commit_order: int) -> None:
        current = self._confirmed_order(key)
        if current is not None and commit_order <= current:
            raise StaleEventError(self._table, key, commit_order, current)

    async def refetch(self) -> bool:
        """Replace the cache with a fresh snapshot.

        Returns ``False`` and keeps the previous rows if every attempt failed,
        if the snapshot is older than the current watermark, or if the cache
        was closed while fetching.
        """
        if self._fetcher is None:
            raise ConfigurationError(f"Table cache '{self._name}' has no fetcher")
        if self._closed:
            return False
        try:
            snapshot = await self._retry.execute_async(self._fetcher, operation=f"refetch:{self._name}")
        except Exception as exc:
            self._refetch_failures.add(labels={"table": self._table})
            logger.warning("table_cache_refetch_failed", table=self._table, error=repr(exc))
            return False
        if self._closed:
            return False
        if self._watermark is not None and snapshot.watermark < self._watermark:
            logger.debug(
                "table_cache_snapshot_outdated",
                table=self._table,
                watermark=snapshot.watermark,
                current=self._watermark,
            )
            return False
        self._swap(snapshot)
        return True

    def _swap(self, snapshot: TableSnapshot) -> None:
        watermark = snapshot.watermark
        entries: dict[Any, TableCacheEntry] = {}
        for row in snapshot.rows:
            if not matches_filter(row, self._filter):
                continue
            if self._key_field not in row:
                raise ValidationError(
                    f"Snapshot row for {self._table} has no {self._key_field!r} column",
                    errors=[{"field": self._key_field, "message": "missing key column"}],
                )
            key = row[self._key_field]
            entries[key] = TableCacheEntry(key=key, row=dict(row), commit_order=watermark)

        in_flight = {
            key: speculation
            for key, speculation in self._speculations.items()
            if self._versions.get(key) == speculation.version
        }

        # changes applied while the fetch was in flight are newer than the snapshot
        now = self._clock.timestamp()
        for key, entry in self._entries.items():
            if key not in in_flight and entry.commit_order > watermark:
                entries[key] = entry
        tombstones = {
            key: (order, expires_at)
            for key, (order, expires_at) in self._tombstones.items()
            if order > watermark and expires_at > now
        }
        for key in tombstones:
            entries.pop(key, None)

        for key, speculation in in_flight.items():
            base = speculation.previous
            if base is None or base.commit_order <= watermark:
                base = entries.get(key)
            self._reapply(entries, tombstones, watermark, speculation, base)

        previous = self._entries
        self._entries, self._tombstones, self._watermark = entries, tombstones, watermark
        self._tombstone_expiry = deque(
            sorted(((expires_at, key) for key, (_, expires_at) in tombstones.items()), key=lambda item: item[0])
        )
        self._versions = {key: self._versions[key] for key in in_flight}
        self._speculations = in_flight

        entered = [self._render(e) for k, e in entries.items() if k not in previous]
        left = [self._render(e) for k, e in previous.items() if k not in entries]
        logger.debug("table_cache_refetched", table=self._table, rows=len(entries), watermark=watermark)
        self._notify(entered, left)

    def _reapply(
        self,
        entries: dict[Any, TableCacheEntry],
        tombstones: dict[Any, tuple[int, float]],
        watermark: int,
        speculation: Speculation,
        base: TableCacheEntry | None,
    ) -> None:
        """Rebase an in-flight *speculation* onto *base* inside a new snapshot."""
        key = speculation.key
        change = speculation.change
        speculation.previous = base
        speculation.position = None
        if base is None:
            entries.pop(key, None)
        else:
            entries[key] = base
        if change is None:
            return

        if change.operation is Operation.DELETE:
            if base is not None:
                speculation.position = list(entries).index(key)
                del entries[key]
            return
        orders = [watermark]
        if base is not None:
            orders.append(base.commit_order)
        if key in tombstones:
            orders.append(tombstones[key][0])
        row = dict(change.row)
        if change.operation is Operation.UPDATE and base is not None:
            row = {**base.row, **row}
        entries[key] = TableCacheEntry(key=key, row=row, commit_order=max(orders), pending=True)

    # ------------------------------------------------------------------
    # Speculative changes
    # ------------------------------------------------------------------

    def apply_speculative(self, change: OptimisticChange) -> Speculation:
        """Apply *change* locally as a pending row; undo it with :meth:`rollback`.

        A pending row keeps the last confirmed ``commit_order`` of its key, so
        the next authoritative event for that key replaces it.
        """
        if self._closed:
            raise SubscriptionClosedError(f"Table cache '{self._name}' is closed")
        if self._key_field not in change.row:
            raise ValidationError(
                f"Change for {self._table} has no {self._key_field!r} column",
                errors=[{"field": self._key_field, "message": "missing key column"}],
            )
        key = change.row[self._key_field]
        previous = self._entries.get(key)
        position: int | None = None

        if change.operation is Operation.DELETE:
            after = None
            if previous is not None:
                position = list(self._entries).index(key)
                del self._entries[key]
        else:
            confirmed = self._confirmed_order(key)
            row = dict(change.row)
            if change.operation is Operation.UPDATE and previous is not None:
                row = {**previous.row, **row}
            after = TableCacheEntry(
                key=key,
                row=row,
                commit_order=confirmed if confirmed is not None else -1,
                pending=True,
            )
            self._entries[key] = after

        speculation = Speculation(
            key=key,
            previous=previous,
            version=self._touch(key),
            position=position,
            change=change,
        )
        self._speculations[key] = speculation
        self._changed(previous, after)
        return speculation

    def confirm(self, speculation: Speculation) -> None:
        """Settle *speculation* after its commit succeeded.

        The pending row stays until an authoritative event or the next
        refetch replaces it; a refetch no longer applies it again.
        """
        speculation.settled = True
        if self._speculations.get(speculation.key) is speculation:
            del self._speculations[speculation.key]

    def rollback(self, speculation: Speculation) -> bool:
        """Restore the state *speculation* replaced.

        No-op (``False``) once the key has changed since, e.g. because an
        authoritative event superseded the speculation. A refetch does not:
        it keeps the confirmed state the speculation replaced.
        """
        if self._closed or speculation.settled:
            return False
        speculation.settled = True
        key = speculation.key
        if self._speculations.get(key) is speculation:
            del self._speculations[key]
        if self._versions.get(key) != speculation.version:
            logger.debug("table_cache_rollback_superseded", table=self._table, key=key)
            return False

        current = self._entries.get(key)
        previous = speculation.previous
        if previous is None:
            self._entries.pop(key, None)
        elif current is None and speculation.position is not None:
            items = list(self._entries.items())
            items.insert(min(speculation.position, len(items)), (key, previous))
            self._entries = dict(items)
        else:
            self._entries[key] = previous
        self._versions.pop(key, None)
        self._changed(current, previous)
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Make every further mutation a no-op."""
        self._closed = True
        self._listeners.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _touch(self, key: Any) -> int:
        version = next(self._version_seq)
        self._versions[key] = version
        return version

    def _render(self, entry: TableCacheEntry) -> dict[str, Any]:
        row = dict(entry.row)
        if entry.pending:
            row[PENDING_FIELD] = True
        return row

    def _changed(self, before: TableCacheEntry | None, after: TableCacheEntry | None) -> None:
        if before is None and after is None:
            return
        entered = [self._render(after)] if before is None and after is not None else []
        left = [self._render(before)] if after is None and before is not None else []
        self._notify(entered, left)

    def _notify(self, entered: list[dict[str, Any]], left: list[dict[str, Any]]) -> None:
        if not self._listeners:
            return
        rows = self.snapshot()
        for listener in list(self._listeners):
            listener(rows, entered, left)
