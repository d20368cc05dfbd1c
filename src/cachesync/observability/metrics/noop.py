"""Observability – NoopMetrics implementation."""
from __future__ import annotations

from cachesync.observability.metrics.ports import Counter, Gauge, Histogram, Metrics


class _NoopInstrument(Counter, Histogram, Gauge):
    def add(self, value: float = 1.0, labels: dict[str, str] | None = None) -> None:
        pass

    def record(self, value: float, labels: dict[str, str] | None = None) -> None:
        pass

    def set(self, value: float, labels: dict[str, str] | None = None) -> None:
        pass

    def inc(self, labels: dict[str, str] | None = None) -> None:
        pass

    def dec(self, labels: dict[str, str] | None = None) -> None:
        pass


_NOOP = _NoopInstrument()


class NoopMetrics(Metrics):
    """Default backend when no exporter is wired in: every instrument is one shared no-op."""

    def counter(self, name: str, description: str = "", unit: str = "") -> Counter:
        return _NOOP

    def histogram(self, name: str, description: str = "", unit: str = "s") -> Histogram:
        return _NOOP

    def gauge(self, name: str, description: str = "", unit: str = "") -> Gauge:
        return _NOOP


__all__ = ["NoopMetrics"]
