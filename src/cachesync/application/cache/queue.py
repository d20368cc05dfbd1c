"""Application cache – debounced invalidation queue and worker.

Database triggers can fire many times per second for one tag. Instead of
calling the revalidation endpoint for every change, triggers are recorded in
time buckets and a worker, run periodically, revalidates each tag at most
once per run after the debounce window has passed.
"""
from __future__ import annotations

import abc
import asyncio
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from cachesync.application.cache.keys import CacheTag
from cachesync.config import CacheSyncSettings
from cachesync.kernel.errors import InfrastructureError
from cachesync.kernel.time import Clock, SystemClock
from cachesync.observability.correlation import CorrelationContext
from cachesync.observability.logging import get_logger

__all__ = [
    "InMemoryInvalidationQueue",
    "InvalidationBucket",
    "InvalidationQueue",
    "InvalidationWorker",
    "WorkerReport",
]

logger = get_logger(__name__)

RevalidateFn = Callable[[str], Awaitable[Any]]


@dataclass
class InvalidationBucket:
    """All triggers for one tag that fell in the same time bucket."""

    tag: str
    time_bucket: datetime
    created_at: datetime
    invalidation_count: int = 1
    last_invalidated_at: datetime | None = None

    @property
    def pending(self) -> bool:
        return self.last_invalidated_at is None


class InvalidationQueue(abc.ABC):
    """Port: durable store of debounced invalidation buckets."""

    @abc.abstractmethod
    async def enqueue(self, tag: str) -> InvalidationBucket: ...

    @abc.abstractmethod
    async def pending(self, older_than: datetime, limit: int) -> list[InvalidationBucket]:
        """Unprocessed buckets strictly older than *older_than*, oldest first."""

    @abc.abstractmethod
    async def mark_processed(self, buckets: list[InvalidationBucket], at: datetime) -> None: ...

    @abc.abstractmethod
    async def cleanup(self, older_than: datetime) -> int:
        """Delete processed buckets created before *older_than*; return the count."""


class InMemoryInvalidationQueue(InvalidationQueue):
    """Process-local queue, also used as the test double."""

    def __init__(self, bucket_seconds: float = 1.0, *, clock: Clock | None = None) -> None:
        if bucket_seconds <= 0:
            raise ValueError("bucket_seconds must be positive")
        self._bucket_seconds = bucket_seconds
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, datetime], InvalidationBucket] = {}

    @classmethod
    def from_settings(cls, settings: CacheSyncSettings, **kwargs: Any) -> "InMemoryInvalidationQueue":
        return cls(settings.invalidation_bucket_seconds, **kwargs)

    def _bucket_start(self, now: datetime) -> datetime:
        ts = math.floor(now.timestamp() / self._bucket_seconds) * self._bucket_seconds
        return datetime.fromtimestamp(ts, tz=now.tzinfo)

    async def enqueue(self, tag: str) -> InvalidationBucket:
        CacheTag.validate(tag)
        now = self._clock.now()
        slot = (tag, self._bucket_start(now))
        with self._lock:
            bucket = self._buckets.get(slot)
            if bucket is None:
                bucket = InvalidationBucket(tag=tag, time_bucket=slot[1], created_at=now)
                self._buckets[slot] = bucket
            else:
                bucket.invalidation_count += 1
                # a change after the bucket was processed needs another pass
                bucket.last_invalidated_at = None
            return bucket

    async def pending(self, older_than: datetime, limit: int) -> list[InvalidationBucket]:
        with self._lock:
            ready = [b for b in self._buckets.values() if b.pending and b.time_bucket < older_than]
        ready.sort(key=lambda b: (b.time_bucket, b.tag))
        return ready[:limit]

    async def mark_processed(self, buckets: list[InvalidationBucket], at: datetime) -> None:
        with self._lock:
            for bucket in buckets:
                stored = self._buckets.get((bucket.tag, bucket.time_bucket))
                if stored is not None:
                    stored.last_invalidated_at = at

    async def cleanup(self, older_than: datetime) -> int:
        with self._lock:
            stale = [
                slot
                for slot, b in self._buckets.items()
                if not b.pending and b.created_at < older_than
            ]
            for slot in stale:
                del self._buckets[slot]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)


@dataclass
class WorkerReport:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)
    cleaned_up: int = 0
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "cleanedUp": self.cleaned_up,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }
        if self.errors:
            payload["errors"] = dict(self.errors)
        return payload


class InvalidationWorker:
    """Drains an :class:`InvalidationQueue` by revalidating each tag once.

    *revalidate* is any coroutine function taking a tag, typically
    :meth:`cachesync.adapters.http.RevalidationClient.revalidate`. Buckets of a
    tag whose revalidation failed stay pending and are retried next run.
    """

    def __init__(
        self,
        queue: InvalidationQueue,
        revalidate: RevalidateFn,
        *,
        debounce_seconds: float = 5.0,
        batch_limit: int = 100,
        retention_seconds: float = 3600.0,
        clock: Clock | None = None,
    ) -> None:
        self._queue = queue
        self._revalidate = revalidate
        self._debounce = timedelta(seconds=debounce_seconds)
        self._batch_limit = batch_limit
        self._retention = timedelta(seconds=retention_seconds)
        self._clock = clock or SystemClock()
        self._stopped = asyncio.Event()
        self._running = False

    @classmethod
    def from_settings(
        cls,
        queue: InvalidationQueue,
        revalidate: RevalidateFn,
        settings: CacheSyncSettings,
        **kwargs: Any,
    ) -> "InvalidationWorker":
        return cls(
            queue,
            revalidate,
            debounce_seconds=settings.invalidation_debounce_seconds,
            batch_limit=settings.invalidation_batch_limit,
            retention_seconds=settings.invalidation_retention_seconds,
            **kwargs,
        )

    async def run_once(self) -> WorkerReport:
        """Revalidate every tag whose debounce window has passed, then clean up.

        The run gets its own correlation id, carried by every revalidation
        call it makes.
        """
        with CorrelationContext.scope("invalidation_worker"):
            return await self._run_once()

    async def _run_once(self) -> WorkerReport:
        now = self._clock.now()
        buckets = await self._queue.pending(now - self._debounce, self._batch_limit)
        report = WorkerReport(timestamp=now)
        if buckets:
            by_tag: dict[str, list[InvalidationBucket]] = {}
            for bucket in buckets:
                by_tag.setdefault(bucket.tag, []).append(bucket)
            logger.info("invalidation_worker_batch", tags=len(by_tag), buckets=len(buckets))

            tags = list(by_tag)
            outcomes = await asyncio.gather(
                *(self._revalidate(tag) for tag in tags),
                return_exceptions=True,
            )

            done: list[InvalidationBucket] = []
            for tag, outcome in zip(tags, outcomes):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                if isinstance(outcome, Exception):
                    report.errors[tag] = str(outcome)
                    logger.warning("invalidation_worker_tag_failed", tag=tag, error=repr(outcome))
                    continue
                done.extend(by_tag[tag])
            await self._queue.mark_processed(done, self._clock.now())

            report.processed = len(tags)
            report.failed = len(report.errors)
            report.successful = report.processed - report.failed

        report.cleaned_up = await self._queue.cleanup(now - self._retention)
        if report.cleaned_up:
            logger.info("invalidation_worker_cleanup", deleted=report.cleaned_up)
        return report

    async def run_forever(self, interval: float = 1.0) -> None:
        """Call :meth:`run_once` every *interval* seconds until :meth:`stop`."""
        self._stopped.clear()
        self._running = True
        try:
            while not self._stopped.is_set():
                try:
                    await self.run_once()
                except InfrastructureError as exc:
                    logger.warning("invalidation_worker_run_failed", error=repr(exc))
                try:
                    await asyncio.wait_for(self._stopped.wait(), timeout=interval)
                except TimeoutError:
                    pass
        finally:
            self._running = False

    def stop(self) -> None:
        self._stopped.set()

    @property
    def is_running(self) -> bool:
        return self._running
