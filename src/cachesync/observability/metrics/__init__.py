"""Observability – metrics ports."""
from cachesync.observability.metrics.noop import NoopMetrics
from cachesync.observability.metrics.ports import Counter, Gauge, Histogram, Metrics

__all__ = ["Counter", "Gauge", "Histogram", "Metrics", "NoopMetrics"]
