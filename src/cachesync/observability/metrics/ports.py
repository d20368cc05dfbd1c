"""Observability – Counter, Histogram, Gauge, Metrics ports.

Instrument names used across the package:

* ``cache_invalidation_requests_total`` / ``cache_invalidation_entries_purged_total``
  / ``cache_invalidation_tags_failed_total``
* ``response_cache_hits_total`` / ``response_cache_misses_total``
  / ``response_cache_compute_seconds``
* ``table_cache_events_discarded_total`` / ``table_cache_refetch_failures_total``
* ``change_stream_subscriptions_active`` / ``change_stream_reconnects_total``
"""
from __future__ import annotations

import abc


class Counter(abc.ABC):
    """Monotonically increasing counter."""

    @abc.abstractmethod
    def add(self, value: float = 1.0, labels: dict[str, str] | None = None) -> None: ...


class Histogram(abc.ABC):
    """Distribution / latency histogram."""

    @abc.abstractmethod
    def record(self, value: float, labels: dict[str, str] | None = None) -> None: ...


class Gauge(abc.ABC):
    """Up/down gauge."""

    @abc.abstractmethod
    def set(self, value: float, labels: dict[str, str] | None = None) -> None: ...

    @abc.abstractmethod
    def inc(self, labels: dict[str, str] | None = None) -> None: ...

    @abc.abstractmethod
    def dec(self, labels: dict[str, str] | None = None) -> None: ...


class Metrics(abc.ABC):
    """Port: factory for metric instruments."""

    @abc.abstractmethod
    def counter(self, name: str, description: str = "", unit: str = "") -> Counter: ...

    @abc.abstractmethod
    def histogram(self, name: str, description: str = "", unit: str = "s") -> Histogram: ...

    @abc.abstractmethod
    def gauge(self, name: str, description: str = "", unit: str = "") -> Gauge: ...


__all__ = ["Counter", "Gauge", "Histogram", "Metrics"]
