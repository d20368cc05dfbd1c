"""Application-layer errors: configuration, credentials, lifecycle."""

from __future__ import annotations

from typing import Any

from cachesync.kernel.errors.base import BaseError


class ApplicationError(BaseError):
    """Cross-cutting application-layer concern."""

    default_code = "application_error"


class ConfigurationError(ApplicationError):
    """The server itself is misconfigured (HTTP 500, operators must be alerted)."""

    default_code = "configuration_error"


class AuthenticationError(ApplicationError):
    """Missing or invalid caller credentials (HTTP 401)."""

    default_code = "unauthorized"


class ForbiddenError(ApplicationError):
    """The authorization collaborator denied the operation."""

    default_code = "forbidden"

    def __init__(
        self,
        message: str = "Access denied",
        *,
        action: str | None = None,
        resource: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.action = action
        self.resource = resource


class SubscriptionClosedError(ApplicationError):
    """An operation was attempted on a torn-down subscription or controller."""

    default_code = "subscription_closed"


__all__ = [
    "ApplicationError",
    "AuthenticationError",
    "ConfigurationError",
    "ForbiddenError",
    "SubscriptionClosedError",
]
