"""Observability – structured logging helpers (structlog)."""
from cachesync.observability.logging.factory import JsonLoggerFactory
from cachesync.observability.logging.filters import DEFAULT_SENSITIVE_FIELDS, SensitiveFieldsFilter
from cachesync.observability.logging.processors import CorrelationProcessor, get_logger

__all__ = [
    "DEFAULT_SENSITIVE_FIELDS",
    "CorrelationProcessor",
    "JsonLoggerFactory",
    "SensitiveFieldsFilter",
    "get_logger",
]
