"""Application – response caching, invalidation and realtime table caches."""

from cachesync.application.cache import (
    CacheKey,
    CacheTag,
    InvalidationGateway,
    InvalidationReport,
    ResponseCache,
    TagRegistry,
    cached,
)
from cachesync.application.realtime import (
    ChangeEvent,
    ChangeStreamClient,
    Controller,
    OptimisticChange,
    TableCache,
    TableSpec,
)

__all__ = [
    "CacheKey",
    "CacheTag",
    "ChangeEvent",
    "ChangeStreamClient",
    "Controller",
    "InvalidationGateway",
    "InvalidationReport",
    "OptimisticChange",
    "ResponseCache",
    "TableCache",
    "TableSpec",
    "TagRegistry",
    "cached",
]
