"""Application cache – tagged response cache and trigger-driven invalidation."""
from cachesync.application.cache.invalidation import (
    InvalidationGateway,
    InvalidationReport,
    InvalidationRequest,
    TagResult,
)
from cachesync.application.cache.keys import MAX_TAG_LENGTH, CacheKey, CacheTag
from cachesync.application.cache.queue import (
    InMemoryInvalidationQueue,
    InvalidationBucket,
    InvalidationQueue,
    InvalidationWorker,
    WorkerReport,
)
from cachesync.application.cache.response import ResponseCache, cached
from cachesync.application.cache.store import CacheEntry, InMemoryResponseStore, ResponseStore
from cachesync.application.cache.tags import Reservation, TagRegistry

__all__ = [
    "MAX_TAG_LENGTH",
    "CacheEntry",
    "CacheKey",
    "CacheTag",
    "InMemoryInvalidationQueue",
    "InMemoryResponseStore",
    "InvalidationBucket",
    "InvalidationGateway",
    "InvalidationQueue",
    "InvalidationReport",
    "InvalidationRequest",
    "InvalidationWorker",
    "ResponseCache",
    "ResponseStore",
    "Reservation",
    "TagRegistry",
    "TagResult",
    "WorkerReport",
    "cached",
]
