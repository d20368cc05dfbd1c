"""Infrastructure errors: store and transport failures."""

from __future__ import annotations

from typing import Any

from cachesync.kernel.errors.base import BaseError


class InfrastructureError(BaseError):
    """I/O failure that is not a rule violation."""

    default_code = "infrastructure_error"


class TransientStoreError(InfrastructureError):
    """A cache store operation failed but may succeed on retry."""

    default_code = "transient_store_error"
    retryable = True

    def __init__(
        self,
        store: str,
        message: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message or f"Store '{store}' operation failed", **kwargs)
        self.store = store


class TransportDisconnectedError(InfrastructureError):
    """The realtime change feed connection dropped; events may have been missed."""

    default_code = "transport_disconnected"
    retryable = True


class UpstreamError(InfrastructureError):
    """An HTTP collaborator returned an error or could not be reached."""

    default_code = "upstream_error"

    def __init__(
        self,
        service: str,
        message: str | None = None,
        *,
        status_code: int | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message or f"Upstream service '{service}' error", **kwargs)
        self.service = service
        self.status_code = status_code

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        """Unreachable upstreams and 5xx answers may recover; 4xx answers will not."""
        return self.status_code is None or self.status_code >= 500


__all__ = [
    "InfrastructureError",
    "TransientStoreError",
    "TransportDisconnectedError",
    "UpstreamError",
]
