"""Kernel – framework-agnostic building blocks (errors, time)."""

from cachesync.kernel.errors import (
    ApplicationError,
    AuthenticationError,
    BaseError,
    ConfigurationError,
    DomainError,
    ForbiddenError,
    InfrastructureError,
    StaleEventError,
    SubscriptionClosedError,
    TransientStoreError,
    TransportDisconnectedError,
    UpstreamError,
    ValidationError,
)
from cachesync.kernel.time import Clock, SystemClock

__all__ = [
    "ApplicationError",
    "AuthenticationError",
    "BaseError",
    "Clock",
    "ConfigurationError",
    "DomainError",
    "ForbiddenError",
    "InfrastructureError",
    "StaleEventError",
    "SubscriptionClosedError",
    "SystemClock",
    "TransientStoreError",
    "TransportDisconnectedError",
    "UpstreamError",
    "ValidationError",
]
