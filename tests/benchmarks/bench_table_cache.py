"""Benchmark: TableCache event application and snapshot reads.

``apply_event`` runs for every delivery on the change stream, so its cost
bounds the event rate a session can absorb. ``snapshot`` runs on every read.
"""

from __future__ import annotations

import itertools

from cachesync.application.realtime import ChangeEvent, Operation, TableCache


def _loaded(size: int) -> TableCache:
    cache = TableCache("grades")
    for i in range(size):
        cache.apply_event(ChangeEvent("grades", Operation.INSERT, {"id": i, "score": i}, i + 1))
    return cache


def test_apply_update_event(benchmark):
    cache = _loaded(1000)
    orders = itertools.count(10_000)

    def run():
        order = next(orders)
        return cache.apply_event(ChangeEvent("grades", Operation.UPDATE, {"id": order % 1000, "score": order}, order))

    assert benchmark(run) is True


def test_discard_stale_event(benchmark):
    cache = _loaded(1000)
    stale = ChangeEvent("grades", Operation.UPDATE, {"id": 5, "score": 0}, 1)

    assert benchmark(cache.apply_event, stale) is False


def test_snapshot_1000_rows(benchmark):
    cache = _loaded(1000)
    rows = benchmark(cache.snapshot)
    assert len(rows) == 1000


def test_snapshot_sorted(benchmark):
    cache = TableCache("grades", sort_key="score")
    for i in range(1000):
        cache.apply_event(ChangeEvent("grades", Operation.INSERT, {"id": i, "score": -i}, i + 1))
    rows = benchmark(cache.snapshot)
    assert rows[0]["score"] == -999
