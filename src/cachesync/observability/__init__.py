"""Observability – correlation, logging, metrics."""

from cachesync.observability.correlation import CorrelationContext, RequestContext
from cachesync.observability.logging import JsonLoggerFactory, SensitiveFieldsFilter, get_logger
from cachesync.observability.metrics import Metrics, NoopMetrics

__all__ = [
    "CorrelationContext",
    "JsonLoggerFactory",
    "Metrics",
    "NoopMetrics",
    "RequestContext",
    "SensitiveFieldsFilter",
    "get_logger",
]
