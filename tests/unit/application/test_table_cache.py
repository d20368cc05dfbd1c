"""Unit tests for TableCache reconciliation."""
from __future__ import annotations

import asyncio

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from cachesync.application.realtime import (
    PENDING_FIELD,
    ChangeEvent,
    OptimisticChange,
    Operation,
    TableCache,
    TableSnapshot,
    paginated,
)
from cachesync.kernel.errors import (
    ConfigurationError,
    SubscriptionClosedError,
    TransientStoreError,
    ValidationError,
)
from cachesync.resilience.retry import ConstantBackoff, NoJitter, RetryPolicy
from cachesync.testing.generators import event_history_strategy
from cachesync.testing.fakes import FakeClock, FakeMetricsRegistry


async def _no_sleep(_: float) -> None:
    return None


def _policy(attempts: int = 2) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=attempts,
        backoff=ConstantBackoff(0),
        jitter=NoJitter(),
        attempt_timeout=1.0,
        sleep=_no_sleep,
    )


class _Fetcher:
    """Returns queued snapshots (or raises queued exceptions) in order."""

    def __init__(self, *results) -> None:
        self.results = list(results)
        self.calls = 0

    async def __call__(self) -> TableSnapshot:
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, BaseException):
            raise result
        return result


def _insert(key, commit_order, table="grades", **cols):
    return ChangeEvent(table, Operation.INSERT, {"id": key, **cols}, commit_order)


def _update(key, commit_order, table="grades", **cols):
    return ChangeEvent(table, Operation.UPDATE, {"id": key, **cols}, commit_order)


def _delete(key, commit_order, table="grades"):
    return ChangeEvent(table, Operation.DELETE, None, commit_order, previous_row={"id": key})


def _cache(*snapshots, **kwargs) -> TableCache:
    kwargs.setdefault("clock", FakeClock())
    kwargs.setdefault("retry_policy", _policy())
    fetcher = _Fetcher(*snapshots) if snapshots else None
    return TableCache("grades", fetcher, **kwargs)


def _loaded(rows, watermark=5, **kwargs) -> TableCache:
    cache = _cache(TableSnapshot(rows=rows, watermark=watermark), **kwargs)
    assert asyncio.run(cache.refetch())
    return cache


# ---------------------------------------------------------------------------
# Commit-order reconciliation
# ---------------------------------------------------------------------------

class TestCommitOrder:
    def test_newer_update_wins_over_late_older_one(self):
        cache = _loaded([{"id": 1, "score": 1}])
        assert cache.apply_event(_update(1, 10, score=10))
        assert not cache.apply_event(_update(1, 9, score=9))
        assert cache.get(1) == {"id": 1, "score": 10}

    def test_duplicate_delivery_is_discarded(self):
        cache = _loaded([])
        assert cache.apply_event(_insert(1, 6))
        assert not cache.apply_event(_insert(1, 6))

    def test_delete_before_late_insert(self):
        cache = _loaded([])
        assert cache.apply_event(_delete(7, 20))
        assert not cache.apply_event(_insert(7, 15))
        assert cache.get(7) is None

    def test_tombstone_expires(self):
        clock = FakeClock()
        cache = _loaded([], clock=clock, tombstone_ttl=60)
        cache.apply_event(_delete(7, 20))
        clock.advance(seconds=61)
        assert cache.apply_event(_insert(7, 15))
        assert cache.get(7) == {"id": 7}

    def test_expired_tombstones_are_swept(self):
        clock = FakeClock()
        cache = _loaded([], clock=clock, tombstone_ttl=1.0)
        for key in range(1000):
            assert cache.apply_event(_delete(key, 10 + key))
            clock.advance(seconds=5)
        assert cache.tombstone_count <= 1

    def test_redeleted_key_keeps_its_newer_tombstone(self):
        clock = FakeClock()
        cache = _loaded([], clock=clock, tombstone_ttl=10)
        cache.apply_event(_delete(7, 20))
        clock.advance(seconds=6)
        cache.apply_event(_delete(7, 21))
        clock.advance(seconds=6)
        cache.apply_event(_insert(8, 22))
        assert cache.tombstone_count == 1
        assert not cache.apply_event(_insert(7, 15))

    def test_events_at_or_below_watermark_are_discarded(self):
        metrics = FakeMetricsRegistry()
        cache = _loaded([{"id": 1}], watermark=50, metrics=metrics)
        assert not cache.apply_event(_insert(2, 50))
        assert not cache.apply_event(_update(1, 12))
        assert cache.apply_event(_insert(2, 51))
        metrics.assert_counter_total("table_cache_events_discarded_total", 2)

    def test_other_table_is_ignored(self):
        cache = _loaded([])
        assert not cache.apply_event(_insert(1, 10, table="users"))
        assert len(cache) == 0

    def test_aliased_table(self):
        cache = TableCache("my_grades", table="grades", clock=FakeClock())
        assert cache.apply_event(_insert(1, 1))
        assert cache.name == "my_grades"
        assert cache.table == "grades"

    def test_event_without_key_column(self):
        cache = _loaded([])
        with pytest.raises(ValidationError):
            cache.apply_event(ChangeEvent("grades", Operation.INSERT, {"name": "x"}, 9))

    @settings(max_examples=75, deadline=None)
    @given(
        st.lists(
            st.tuples(st.sampled_from(list(Operation)), st.integers(0, 1000)),
            min_size=1,
            max_size=12,
            unique_by=lambda t: t[1],
        ),
        st.randoms(use_true_random=False),
    )
    def test_state_follows_highest_commit_order(self, changes, rnd):
        events = [
            _delete(1, order) if op is Operation.DELETE else ChangeEvent("grades", op, {"id": 1, "v": order}, order)
            for op, order in changes
        ]
        rnd.shuffle(events)
        cache = TableCache("grades", clock=FakeClock())
        for event in events:
            cache.apply_event(event)

        latest = max(events, key=lambda e: e.commit_order)
        if latest.operation is Operation.DELETE:
            assert cache.get(1) is None
        else:
            assert cache.get(1) == {"id": 1, "v": latest.commit_order}

    @settings(max_examples=75, deadline=None)
    @given(event_history_strategy())
    def test_every_key_converges_to_its_latest_event(self, events):
        cache = TableCache("grades", clock=FakeClock())
        for event in events:
            cache.apply_event(event)

        latest: dict = {}
        for event in sorted(events, key=lambda e: e.commit_order):
            latest[event.key()] = event
        for key, event in latest.items():
            expected = None if event.operation is Operation.DELETE else dict(event.row)
            assert cache.get(key) == expected


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

class TestFilter:
    def test_rows_outside_filter_are_not_cached(self):
        cache = _loaded([{"id": 1, "course": 1}, {"id": 2, "course": 2}], filter={"course": 1})
        assert [r["id"] for r in cache.snapshot()] == [1]
        cache.apply_event(_insert(3, 6, course=2))
        assert cache.get(3) is None

    def test_update_out_of_filter_removes_row(self):
        cache = _loaded([{"id": 1, "course": 1}], filter={"course": 1})
        assert cache.apply_event(_update(1, 6, course=2))
        assert cache.get(1) is None
        # the move is remembered like a delete
        assert not cache.apply_event(_update(1, 5, course=1))


# ---------------------------------------------------------------------------
# Refetch
# ---------------------------------------------------------------------------

class TestRefetch:
    def test_initial_load(self):
        cache = _loaded([{"id": 1}, {"id": 2}], watermark=9)
        assert cache.watermark == 9
        assert cache.snapshot() == [{"id": 1}, {"id": 2}]
        assert cache.entry(1).commit_order == 9

    def test_without_fetcher(self):
        with pytest.raises(ConfigurationError):
            asyncio.run(_cache().refetch())

    def test_failure_keeps_previous_rows(self):
        metrics = FakeMetricsRegistry()
        fetcher = _Fetcher(TableSnapshot(rows=[{"id": 1}], watermark=5), TransientStoreError("db"))
        cache = TableCache("grades", fetcher, retry_policy=_policy(3), clock=FakeClock(), metrics=metrics)
        assert asyncio.run(cache.refetch())
        assert not asyncio.run(cache.refetch())
        assert fetcher.calls == 4
        assert cache.snapshot() == [{"id": 1}]
        metrics.assert_counter_total("table_cache_refetch_failures_total", 1)

    def test_outdated_snapshot_is_rejected(self):
        fetcher = _Fetcher(
            TableSnapshot(rows=[{"id": 1}], watermark=8),
            TableSnapshot(rows=[], watermark=4),
        )
        cache = TableCache("grades", fetcher, retry_policy=_policy(), clock=FakeClock())
        asyncio.run(cache.refetch())
        assert not asyncio.run(cache.refetch())
        assert cache.watermark == 8
        assert cache.get(1) == {"id": 1}

    def test_newer_events_survive_swap(self):
        fetcher = _Fetcher(
            TableSnapshot(rows=[{"id": 1, "v": "a"}, {"id": 2, "v": "a"}], watermark=5),
            TableSnapshot(rows=[{"id": 1, "v": "b"}, {"id": 2, "v": "b"}], watermark=6),
        )
        cache = TableCache("grades", fetcher, retry_policy=_policy(), clock=FakeClock())
        asyncio.run(cache.refetch())
        cache.apply_event(_update(1, 7, v="event"))
        cache.apply_event(_delete(2, 8))
        cache.apply_event(_insert(3, 9, v="event"))

        assert asyncio.run(cache.refetch())
        assert cache.snapshot() == [{"id": 1, "v": "event"}, {"id": 3, "v": "event"}]
        assert cache.watermark == 6
        assert not cache.apply_event(_insert(2, 7))

    def test_swap_drops_confirmed_pending_rows(self):
        cache = _cache(
            TableSnapshot(rows=[{"id": 1}], watermark=5),
            TableSnapshot(rows=[{"id": 1}], watermark=6),
        )
        asyncio.run(cache.refetch())
        cache.confirm(cache.apply_speculative(OptimisticChange.insert({"id": 2})))
        asyncio.run(cache.refetch())
        assert cache.get(2) is None

    def test_swap_keeps_in_flight_speculation(self):
        cache = _cache(
            TableSnapshot(rows=[{"id": 1}], watermark=5),
            TableSnapshot(rows=[{"id": 1}], watermark=6),
        )
        asyncio.run(cache.refetch())
        speculation = cache.apply_speculative(OptimisticChange.insert({"id": 2}))
        asyncio.run(cache.refetch())
        assert cache.get(2) == {"id": 2, PENDING_FIELD: True}
        assert cache.rollback(speculation)
        assert cache.snapshot() == [{"id": 1}]

    def test_rollback_after_refetch_restores_newer_confirmed_row(self):
        cache = _cache(
            TableSnapshot(rows=[{"id": 1, "v": "c5"}], watermark=5),
            TableSnapshot(rows=[{"id": 1, "v": "c8"}], watermark=8),
        )
        asyncio.run(cache.refetch())
        cache.apply_event(_update(1, 10, v="c10"))
        speculation = cache.apply_speculative(OptimisticChange.update({"id": 1, "v": "local"}))

        assert asyncio.run(cache.refetch())
        assert cache.get(1) == {"id": 1, "v": "local", PENDING_FIELD: True}
        assert cache.rollback(speculation)
        assert cache.snapshot() == [{"id": 1, "v": "c10"}]
        assert cache.entry(1).commit_order == 10

    def test_rollback_after_refetch_takes_newer_snapshot_row(self):
        cache = _cache(
            TableSnapshot(rows=[{"id": 1, "v": "c5"}], watermark=5),
            TableSnapshot(rows=[{"id": 1, "v": "c8"}], watermark=8),
        )
        asyncio.run(cache.refetch())
        speculation = cache.apply_speculative(OptimisticChange.update({"id": 1, "v": "local"}))

        assert asyncio.run(cache.refetch())
        assert cache.get(1) == {"id": 1, "v": "local", PENDING_FIELD: True}
        assert cache.rollback(speculation)
        assert cache.snapshot() == [{"id": 1, "v": "c8"}]

    def test_pending_delete_survives_older_refetch(self):
        cache = _cache(
            TableSnapshot(rows=[{"id": 1, "v": "c5"}], watermark=5),
            TableSnapshot(rows=[{"id": 1, "v": "c8"}], watermark=8),
        )
        asyncio.run(cache.refetch())
        cache.apply_event(_update(1, 10, v="c10"))
        speculation = cache.apply_speculative(OptimisticChange.delete({"id": 1}))

        assert asyncio.run(cache.refetch())
        assert cache.get(1) is None
        assert not cache.apply_event(_update(1, 9, v="c9"))
        assert cache.rollback(speculation)
        assert cache.snapshot() == [{"id": 1, "v": "c10"}]

    def test_snapshot_row_without_key(self):
        cache = _cache(TableSnapshot(rows=[{"name": "x"}], watermark=1))
        with pytest.raises(ValidationError):
            asyncio.run(cache.refetch())

    def test_refetch_after_close(self):
        cache = _cache(TableSnapshot(rows=[{"id": 1}], watermark=1))
        cache.close()
        assert not asyncio.run(cache.refetch())

    def test_sort_key(self):
        cache = _loaded([{"id": 1, "name": "b"}, {"id": 2, "name": "a"}], sort_key="name")
        assert [r["id"] for r in cache.snapshot()] == [2, 1]

    def test_snapshot_returns_copies(self):
        cache = _loaded([{"id": 1}])
        cache.snapshot()[0]["id"] = 99
        assert cache.get(1) == {"id": 1}


class TestPaginated:
    def test_reads_until_short_page_and_keeps_lowest_watermark(self):
        rows = [{"id": i} for i in range(5)]
        watermarks = iter([10, 8, 9])
        offsets: list[int] = []

        async def fetch_page(offset: int, limit: int) -> TableSnapshot:
            offsets.append(offset)
            return TableSnapshot(rows=rows[offset : offset + limit], watermark=next(watermarks))

        snapshot = asyncio.run(paginated(fetch_page, page_size=2)())
        assert offsets == [0, 2, 4]
        assert snapshot.rows == rows
        assert snapshot.watermark == 8

    def test_invalid_page_size(self):
        with pytest.raises(ValueError):
            paginated(lambda offset, limit: None, page_size=0)


# ---------------------------------------------------------------------------
# Speculative changes
# ---------------------------------------------------------------------------

class TestSpeculation:
    def test_pending_marker(self):
        cache = _loaded([{"id": 1, "score": 1}])
        cache.apply_speculative(OptimisticChange.update({"id": 1, "score": 2}))
        assert cache.get(1) == {"id": 1, "score": 2, PENDING_FIELD: True}
        assert cache.entry(1).commit_order == 5

    def test_rollback_restores_exact_state(self):
        cache = _loaded([{"id": 1, "score": 1}, {"id": 2}, {"id": 3}])
        before = cache.snapshot()
        for change in (
            OptimisticChange.update({"id": 1, "score": 7}),
            OptimisticChange.delete({"id": 2}),
            OptimisticChange.insert({"id": 4}),
        ):
            speculation = cache.apply_speculative(change)
            assert cache.snapshot() != before
            assert cache.rollback(speculation)
            assert cache.snapshot() == before

    def test_rollback_is_single_use(self):
        cache = _loaded([{"id": 1}])
        speculation = cache.apply_speculative(OptimisticChange.delete({"id": 1}))
        assert cache.rollback(speculation)
        assert not cache.rollback(speculation)

    def test_authoritative_event_supersedes_speculation(self):
        cache = _loaded([])
        speculation = cache.apply_speculative(OptimisticChange.insert({"id": 9, "v": "local"}))
        assert cache.apply_event(_insert(9, 10, v="server"))
        assert not cache.rollback(speculation)
        assert cache.get(9) == {"id": 9, "v": "server"}

    def test_pending_row_without_confirmed_order(self):
        cache = TableCache("grades", clock=FakeClock())
        cache.apply_speculative(OptimisticChange.insert({"id": 1}))
        assert cache.entry(1).commit_order == -1
        assert cache.apply_event(_insert(1, 0))
        assert not cache.entry(1).pending

    def test_change_without_key(self):
        with pytest.raises(ValidationError):
            _loaded([]).apply_speculative(OptimisticChange.insert({"name": "x"}))

    def test_closed_cache_rejects_speculation(self):
        cache = _loaded([])
        cache.close()
        with pytest.raises(SubscriptionClosedError):
            cache.apply_speculative(OptimisticChange.insert({"id": 1}))
        assert not cache.apply_event(_insert(1, 10))


# ---------------------------------------------------------------------------
# Listeners
# ---------------------------------------------------------------------------

class TestListeners:
    def test_entered_and_left(self):
        cache = _loaded([{"id": 1}])
        seen: list[tuple] = []
        unlisten = cache.listen(lambda rows, entered, left: seen.append((rows, entered, left)))

        cache.apply_event(_insert(2, 6))
        cache.apply_event(_update(2, 7, x=1))
        cache.apply_event(_delete(1, 8))
        unlisten()
        cache.apply_event(_delete(2, 9))

        assert seen == [
            ([{"id": 1}, {"id": 2}], [{"id": 2}], []),
            ([{"id": 1}, {"id": 2, "x": 1}], [], []),
            ([{"id": 2, "x": 1}], [], [{"id": 1}]),
        ]

    def test_refetch_notifies(self):
        fetcher = _Fetcher(
            TableSnapshot(rows=[{"id": 1}], watermark=1),
            TableSnapshot(rows=[{"id": 2}], watermark=2),
        )
        cache = TableCache("grades", fetcher, retry_policy=_policy(), clock=FakeClock())
        asyncio.run(cache.refetch())
        seen: list[tuple] = []
        cache.listen(lambda rows, entered, left: seen.append((rows, entered, left)))
        asyncio.run(cache.refetch())
        assert seen == [([{"id": 2}], [{"id": 2}], [{"id": 1}])]
