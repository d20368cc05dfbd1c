"""Unit tests for the debounced invalidation queue and its worker."""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from cachesync.application.cache import (
    InMemoryInvalidationQueue,
    InvalidationWorker,
    WorkerReport,
)
from cachesync.config import CacheSyncSettings
from cachesync.kernel.errors import UpstreamError, ValidationError
from cachesync.observability.correlation import CorrelationContext, RequestContext
from cachesync.testing.fakes import FakeClock


class _Revalidator:
    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[str] = []
        self.contexts: list[RequestContext | None] = []

    async def __call__(self, tag: str) -> dict:
        self.calls.append(tag)
        self.contexts.append(CorrelationContext.get())
        if tag in self.failing:
            raise UpstreamError("revalidation", "boom", status_code=502)
        return {"revalidated": True}


def _setup(*, failing=None, debounce=5.0, retention=3600.0):
    clock = FakeClock()
    queue = InMemoryInvalidationQueue(bucket_seconds=1.0, clock=clock)
    revalidate = _Revalidator(failing)
    worker = InvalidationWorker(
        queue, revalidate, debounce_seconds=debounce, retention_seconds=retention, clock=clock
    )
    return clock, queue, revalidate, worker


class TestInMemoryInvalidationQueue:
    def test_same_bucket_collapses(self):
        clock = FakeClock()
        queue = InMemoryInvalidationQueue(clock=clock)

        async def run():
            await queue.enqueue("course:1")
            clock.advance(seconds=0.2)
            return await queue.enqueue("course:1")

        bucket = asyncio.run(run())
        assert bucket.invalidation_count == 2
        assert len(queue) == 1

    def test_new_bucket_per_interval(self):
        clock = FakeClock()
        queue = InMemoryInvalidationQueue(clock=clock)

        async def run():
            await queue.enqueue("course:1")
            clock.advance(seconds=1)
            await queue.enqueue("course:1")

        asyncio.run(run())
        assert len(queue) == 2

    def test_bucket_start_is_floored(self):
        clock = FakeClock()
        clock.advance(seconds=0.7)
        queue = InMemoryInvalidationQueue(clock=clock)
        bucket = asyncio.run(queue.enqueue("t"))
        assert bucket.time_bucket == FakeClock().now()
        assert bucket.created_at == clock.now()

    def test_rejects_invalid_tag(self):
        with pytest.raises(ValidationError):
            asyncio.run(InMemoryInvalidationQueue().enqueue("bad tag"))

    def test_pending_is_ordered_and_limited(self):
        clock = FakeClock()
        queue = InMemoryInvalidationQueue(clock=clock)

        async def run():
            await queue.enqueue("b")
            await queue.enqueue("a")
            clock.advance(seconds=1)
            await queue.enqueue("c")
            return await queue.pending(clock.now() + timedelta(seconds=1), limit=2)

        assert [b.tag for b in asyncio.run(run())] == ["a", "b"]

    def test_invalid_bucket_size(self):
        with pytest.raises(ValueError):
            InMemoryInvalidationQueue(bucket_seconds=0)


class TestInvalidationWorker:
    def test_waits_for_debounce_window(self):
        clock, queue, revalidate, worker = _setup()
        asyncio.run(queue.enqueue("course:1"))

        clock.advance(seconds=3)
        report = asyncio.run(worker.run_once())
        assert report.processed == 0
        assert revalidate.calls == []

        clock.advance(seconds=3)
        report = asyncio.run(worker.run_once())
        assert report.processed == 1
        assert revalidate.calls == ["course:1"]

    def test_one_call_per_tag_across_buckets(self):
        clock, queue, revalidate, worker = _setup()

        async def run():
            for _ in range(3):
                await queue.enqueue("course:1")
                await queue.enqueue("course:2")
                clock.advance(seconds=1)
            clock.advance(seconds=10)
            return await worker.run_once()

        report = asyncio.run(run())
        assert sorted(revalidate.calls) == ["course:1", "course:2"]
        assert report.processed == 2
        assert report.successful == 2
        assert report.failed == 0

    def test_run_shares_one_correlation_id(self):
        clock, queue, revalidate, worker = _setup()

        async def run():
            await queue.enqueue("course:1")
            await queue.enqueue("course:2")
            clock.advance(seconds=10)
            await worker.run_once()

        asyncio.run(run())
        first, second = revalidate.contexts
        assert first is not None and first.source == "invalidation_worker"
        assert second.correlation_id == first.correlation_id

    def test_processed_buckets_are_not_repeated(self):
        clock, queue, revalidate, worker = _setup()

        async def run():
            await queue.enqueue("t")
            clock.advance(seconds=10)
            await worker.run_once()
            return await worker.run_once()

        assert asyncio.run(run()).processed == 0
        assert revalidate.calls == ["t"]

    def test_failed_tag_stays_pending(self):
        clock, queue, revalidate, worker = _setup(failing={"bad"})

        async def run():
            await queue.enqueue("bad")
            await queue.enqueue("good")
            clock.advance(seconds=10)
            first = await worker.run_once()
            revalidate.failing.clear()
            second = await worker.run_once()
            return first, second

        first, second = asyncio.run(run())
        assert first.failed == 1
        assert "bad" in first.errors
        assert first.to_dict()["errors"] == first.errors
        assert second.processed == 1
        assert revalidate.calls.count("bad") == 2
        assert revalidate.calls.count("good") == 1

    def test_rearm_same_bucket(self):
        clock, queue, revalidate, worker = _setup(debounce=0.0)

        async def run():
            bucket = await queue.enqueue("t")
            clock.advance(seconds=2)
            await worker.run_once()
            assert not bucket.pending
            # a late trigger landing in an already processed bucket
            clock.advance(seconds=-1.5)
            again = await queue.enqueue("t")
            clock.advance(seconds=1.5)
            await worker.run_once()
            return again

        again = asyncio.run(run())
        assert again.invalidation_count == 2
        assert revalidate.calls == ["t", "t"]

    def test_cleanup_after_retention(self):
        clock, queue, revalidate, worker = _setup(retention=60)

        async def run():
            await queue.enqueue("t")
            clock.advance(seconds=10)
            await worker.run_once()
            clock.advance(seconds=61)
            return await worker.run_once()

        report = asyncio.run(run())
        assert report.cleaned_up == 1
        assert len(queue) == 0

    def test_pending_buckets_survive_cleanup(self):
        clock, queue, revalidate, worker = _setup(failing={"t"}, retention=1)

        async def run():
            await queue.enqueue("t")
            clock.advance(seconds=10)
            return await worker.run_once()

        assert asyncio.run(run()).cleaned_up == 0
        assert len(queue) == 1

    def test_report_to_dict(self):
        report = WorkerReport(processed=1, successful=1, cleaned_up=2, timestamp=FakeClock().now())
        assert report.to_dict() == {
            "processed": 1,
            "successful": 1,
            "failed": 0,
            "cleanedUp": 2,
            "timestamp": "2026-01-01T12:00:00+00:00",
        }

    def test_run_forever_until_stopped(self):
        clock, queue, revalidate, worker = _setup(debounce=0.0)

        async def run():
            await queue.enqueue("t")
            clock.advance(seconds=2)
            task = asyncio.create_task(worker.run_forever(interval=0.01))
            for _ in range(100):
                if revalidate.calls:
                    break
                await asyncio.sleep(0.01)
            running = worker.is_running
            worker.stop()
            await asyncio.wait_for(task, timeout=1)
            return running

        assert asyncio.run(run()) is True
        assert not worker.is_running
        assert revalidate.calls == ["t"]

    def test_from_settings(self):
        settings = CacheSyncSettings(invalidation_debounce_seconds=0, invalidation_batch_limit=1)
        clock = FakeClock()
        queue = InMemoryInvalidationQueue.from_settings(settings, clock=clock)
        revalidate = _Revalidator()
        worker = InvalidationWorker.from_settings(queue, revalidate, settings, clock=clock)

        async def run():
            await queue.enqueue("a")
            await queue.enqueue("b")
            clock.advance(seconds=1)
            return await worker.run_once()

        assert asyncio.run(run()).processed == 1
