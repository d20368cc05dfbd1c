"""Unit tests for the ResponseCache, its stores and the ``cached`` decorator."""
from __future__ import annotations

import asyncio
import threading

import pytest

from cachesync.application.cache import (
    CacheEntry,
    InMemoryResponseStore,
    ResponseCache,
    TagRegistry,
    cached,
)
from cachesync.kernel.errors import TransientStoreError
from cachesync.testing.fakes import FakeClock, FakeMetricsRegistry, FlakyResponseStore


class _Counter:
    """compute_fn double counting its invocations."""

    def __init__(self, value="fresh", delay: float = 0.0) -> None:
        self.value = value
        self.delay = delay
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.value


# ---------------------------------------------------------------------------
# InMemoryResponseStore
# ---------------------------------------------------------------------------

class TestInMemoryResponseStore:
    def _entry(self, key: str, clock) -> CacheEntry:
        return CacheEntry(key=key, value=key.upper(), created_at=clock.now())

    def test_set_and_get(self):
        clock = FakeClock()
        store = InMemoryResponseStore(clock=clock)
        asyncio.run(store.set(self._entry("a", clock)))
        assert asyncio.run(store.get("a")).value == "A"

    def test_ttl_expiry_notifies_eviction(self):
        clock = FakeClock()
        evicted: list[str] = []
        store = InMemoryResponseStore(clock=clock, on_evict=evicted.append)
        asyncio.run(store.set(self._entry("a", clock), ttl=10))
        clock.advance(seconds=11)
        assert asyncio.run(store.get("a")) is None
        assert evicted == ["a"]

    def test_lru_eviction(self):
        clock = FakeClock()
        evicted: list[str] = []
        store = InMemoryResponseStore(max_entries=2, clock=clock, on_evict=evicted.append)

        async def run():
            await store.set(self._entry("a", clock))
            await store.set(self._entry("b", clock))
            await store.get("a")  # a is now most recent
            await store.set(self._entry("c", clock))

        asyncio.run(run())
        assert evicted == ["b"]
        assert len(store) == 2

    def test_delete_many_counts(self):
        clock = FakeClock()
        store = InMemoryResponseStore(clock=clock)
        asyncio.run(store.set(self._entry("a", clock)))
        assert asyncio.run(store.delete_many(["a", "missing"])) == 1

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            InMemoryResponseStore(max_entries=0)


# ---------------------------------------------------------------------------
# get_or_compute
# ---------------------------------------------------------------------------

class TestGetOrCompute:
    def test_miss_then_hit(self):
        metrics = FakeMetricsRegistry()
        cache = ResponseCache(metrics=metrics)
        compute = _Counter("v1")

        async def run():
            first = await cache.get_or_compute("/grades", ["course:1"], compute)
            second = await cache.get_or_compute("/grades", ["course:1"], compute)
            return first, second

        assert asyncio.run(run()) == ("v1", "v1")
        assert compute.calls == 1
        metrics.assert_counter_total("response_cache_misses_total", 1)
        metrics.assert_counter_total("response_cache_hits_total", 1)

    def test_entry_is_tagged(self):
        cache = ResponseCache()
        asyncio.run(cache.get_or_compute("/grades", ["course:1", "user:2"], _Counter()))
        assert cache.registry.tags_for("/grades") == frozenset({"course:1", "user:2"})

    def test_concurrent_callers_share_one_computation(self):
        cache = ResponseCache()
        compute = _Counter({"rows": [1, 2]}, delay=0.01)

        async def run():
            return await asyncio.gather(
                *(cache.get_or_compute("/hot", ["course:1"], compute) for _ in range(25))
            )

        results = asyncio.run(run())
        assert compute.calls == 1
        assert all(r == {"rows": [1, 2]} for r in results)

    def test_concurrent_callers_across_threads(self):
        cache = ResponseCache()
        started = threading.Event()
        calls = {"n": 0}
        lock = threading.Lock()

        async def slow():
            with lock:
                calls["n"] += 1
            started.set()
            await asyncio.sleep(0.05)
            return "shared"

        results: list[str] = []

        def caller():
            results.append(asyncio.run(cache.get_or_compute("/k", ["t"], slow)))

        leader = threading.Thread(target=caller)
        leader.start()
        started.wait(1)
        followers = [threading.Thread(target=caller) for _ in range(4)]
        for t in followers:
            t.start()
        for t in [leader, *followers]:
            t.join()

        assert calls["n"] == 1
        assert results == ["shared"] * 5

    def test_failure_is_not_cached_and_reaches_all_waiters(self):
        cache = ResponseCache()
        calls = {"n": 0}

        async def boom():
            calls["n"] += 1
            await asyncio.sleep(0.01)
            raise RuntimeError("db down")

        async def run():
            return await asyncio.gather(
                *(cache.get_or_compute("/k", ["t"], boom) for _ in range(3)),
                return_exceptions=True,
            )

        results = asyncio.run(run())
        assert calls["n"] == 1
        assert all(isinstance(r, RuntimeError) for r in results)
        assert not cache.registry.contains("/k")

        # the next caller computes again
        assert asyncio.run(cache.get_or_compute("/k", ["t"], _Counter("ok"))) == "ok"

    def test_leader_cancellation_hands_over_to_follower(self):
        cache = ResponseCache()

        async def run():
            release = asyncio.Event()
            calls = {"n": 0}

            async def compute():
                calls["n"] += 1
                if calls["n"] == 1:
                    await release.wait()
                return f"run-{calls['n']}"

            leader = asyncio.create_task(cache.get_or_compute("/k", ["t"], compute))
            await asyncio.sleep(0)
            follower = asyncio.create_task(cache.get_or_compute("/k", ["t"], compute))
            await asyncio.sleep(0)
            leader.cancel()
            result = await follower
            with pytest.raises(asyncio.CancelledError):
                await leader
            return result, calls["n"]

        assert asyncio.run(run()) == ("run-2", 2)

    def test_purge_during_compute_prevents_caching(self):
        cache = ResponseCache()

        async def run():
            async def compute():
                # an invalidation lands while the old data is being read
                await cache.purge_tag("course:1")
                return "stale"

            value = await cache.get_or_compute("/k", ["course:1"], compute)
            return value, await cache.get("/k")

        value, cached_value = asyncio.run(run())
        assert value == "stale"
        assert cached_value is None
        assert not cache.registry.contains("/k")


# ---------------------------------------------------------------------------
# Purge
# ---------------------------------------------------------------------------

class TestPurge:
    def test_purge_tag_returns_removed_keys(self):
        cache = ResponseCache()

        async def run():
            await cache.get_or_compute("/a", ["course:1"], _Counter("a"))
            await cache.get_or_compute("/b", ["course:1", "course:2"], _Counter("b"))
            await cache.get_or_compute("/c", ["course:2"], _Counter("c"))
            removed = await cache.purge_tag("course:1")
            return removed, await cache.get("/a"), await cache.get("/c")

        removed, a, c = asyncio.run(run())
        assert removed == ["/a", "/b"]
        assert a is None
        assert c == "c"

    def test_purge_twice_is_noop(self):
        cache = ResponseCache()

        async def run():
            await cache.get_or_compute("/a", ["course:5:staff"], _Counter())
            return await cache.purge_tag("course:5:staff"), await cache.purge_tag("course:5:staff")

        assert asyncio.run(run()) == (["/a"], [])

    def test_purge_many_tags(self):
        cache = ResponseCache()

        async def run():
            await cache.get_or_compute("/a", ["x"], _Counter())
            await cache.get_or_compute("/b", ["y"], _Counter())
            return await cache.purge(["x", "y", "x"])

        assert asyncio.run(run()) == ["/a", "/b"]

    def test_delete(self):
        cache = ResponseCache()

        async def run():
            await cache.get_or_compute("/a", ["x"], _Counter())
            await cache.delete("/a")
            return await cache.get("/a")

        assert asyncio.run(run()) is None
        assert cache.registry.known_tags() == frozenset()

    def test_recompute_after_purge(self):
        cache = ResponseCache()
        compute = _Counter()

        async def run():
            await cache.get_or_compute("/a", ["x"], compute)
            await cache.purge_tag("x")
            await cache.get_or_compute("/a", ["x"], compute)

        asyncio.run(run())
        assert compute.calls == 2


# ---------------------------------------------------------------------------
# Store failures
# ---------------------------------------------------------------------------

class TestDegradation:
    def test_read_failure_is_a_miss(self):
        store = FlakyResponseStore()
        cache = ResponseCache(store=store)
        compute = _Counter("v")

        async def run():
            await cache.get_or_compute("/a", ["x"], compute)
            store.fail_get = True
            return await cache.get_or_compute("/a", ["x"], compute)

        assert asyncio.run(run()) == "v"
        assert compute.calls == 2

    def test_write_failure_returns_uncached_value(self):
        store = FlakyResponseStore()
        store.fail_set = True
        cache = ResponseCache(store=store)
        assert asyncio.run(cache.get_or_compute("/a", ["x"], _Counter("v"))) == "v"
        assert not cache.registry.contains("/a")

    def test_delete_failure_hides_entry_and_is_retried(self):
        store = FlakyResponseStore()
        cache = ResponseCache(store=store)

        async def run():
            await cache.get_or_compute("/a", ["x"], _Counter("v"))
            store.fail_delete = True
            with pytest.raises(TransientStoreError):
                await cache.purge_tag("x")
            hidden = await cache.get("/a")
            pending = cache.pending_deletes
            store.fail_delete = False
            await cache.purge_tag("unrelated")
            return hidden, pending, cache.pending_deletes, await store.inner.get("/a")

        hidden, pending, after, physical = asyncio.run(run())
        assert hidden is None
        assert pending == frozenset({"/a"})
        assert after == frozenset()
        assert physical is None

    def test_ttl_expiry_through_cache(self):
        clock = FakeClock()
        registry = TagRegistry()
        cache = ResponseCache(registry=registry, ttl=5, clock=clock)

        async def run():
            await cache.get_or_compute("/a", ["x"], _Counter())
            clock.advance(seconds=6)
            return await cache.get("/a")

        assert asyncio.run(run()) is None
        assert not registry.contains("/a")


# ---------------------------------------------------------------------------
# @cached
# ---------------------------------------------------------------------------

class TestCachedDecorator:
    def test_caches_by_key_fn_and_tags(self):
        cache = ResponseCache()
        calls = {"n": 0}

        @cached(cache, key_fn=lambda course: f"/courses/{course}", tags=lambda course: [f"course:{course}"])
        async def load(course: int) -> dict:
            calls["n"] += 1
            return {"course": course}

        async def run():
            await load(1)
            await load(1)
            await load(2)
            await cache.purge_tag("course:1")
            await load(1)

        asyncio.run(run())
        assert calls["n"] == 3

    def test_default_key(self):
        cache = ResponseCache()
        calls = {"n": 0}

        @cached(cache, tags=["all"])
        async def load(x: int) -> int:
            calls["n"] += 1
            return x * 2

        async def run():
            return await load(3), await load(3)

        assert asyncio.run(run()) == (6, 6)
        assert calls["n"] == 1
