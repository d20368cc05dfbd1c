"""Kernel error hierarchy: public re-export surface.

Hierarchy::

    BaseError
    ├── DomainError               (domain.py)
    │   ├── ValidationError           -> 400
    │   └── StaleEventError           discarded, never surfaced
    ├── ApplicationError          (application.py)
    │   ├── ConfigurationError        -> 500, alerted
    │   ├── AuthenticationError       -> 401
    │   ├── ForbiddenError            -> 403
    │   └── SubscriptionClosedError
    └── InfrastructureError       (infrastructure.py)
        ├── TransientStoreError       retryable, partial success
        ├── TransportDisconnectedError
        └── UpstreamError
"""

from cachesync.kernel.errors.application import (
    ApplicationError,
    AuthenticationError,
    ConfigurationError,
    ForbiddenError,
    SubscriptionClosedError,
)
from cachesync.kernel.errors.base import BaseError
from cachesync.kernel.errors.domain import DomainError, StaleEventError, ValidationError
from cachesync.kernel.errors.infrastructure import (
    InfrastructureError,
    TransientStoreError,
    TransportDisconnectedError,
    UpstreamError,
)

__all__ = [
    "ApplicationError",
    "AuthenticationError",
    "BaseError",
    "ConfigurationError",
    "DomainError",
    "ForbiddenError",
    "InfrastructureError",
    "StaleEventError",
    "SubscriptionClosedError",
    "TransientStoreError",
    "TransportDisconnectedError",
    "UpstreamError",
    "ValidationError",
]
