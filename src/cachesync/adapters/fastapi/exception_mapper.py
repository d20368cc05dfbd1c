"""FastAPI adapter – FastAPIExceptionMapper.

Error body schema::

    {"code": "unauthorized", "message": "...", "detail": {}, "correlation_id": "..."}

``ValidationError`` bodies also carry ``errors``, the per-field failures.
"""
from __future__ import annotations

from typing import Any

from cachesync.kernel.errors import (
    AuthenticationError,
    BaseError,
    ConfigurationError,
    DomainError,
    ForbiddenError,
    InfrastructureError,
    SubscriptionClosedError,
    ValidationError,
)
from cachesync.observability.correlation import CorrelationContext
from cachesync.observability.logging import get_logger

logger = get_logger(__name__)

#: First match wins, so subtypes come before their bases.
STATUS_BY_ERROR: tuple[tuple[type[BaseError], int], ...] = (
    (ValidationError, 400),
    (AuthenticationError, 401),
    (ForbiddenError, 403),
    (SubscriptionClosedError, 409),
    (ConfigurationError, 500),
    (InfrastructureError, 503),
    (DomainError, 422),
)

RETRY_AFTER_SECONDS = 1


def _require_fastapi() -> None:
    try:
        import fastapi  # noqa: F401
    except ImportError as exc:
        raise ImportError(
            "Install 'cachesync[fastapi]' to use the FastAPI adapter"
        ) from exc


class FastAPIExceptionMapper:
    """Turns cachesync errors raised by a route into JSON error responses.

    The wrapped ``cause`` is never echoed to callers; it reaches the logs
    for server-side (5xx) failures only. A retryable 503 tells the caller
    when to try again through ``Retry-After``.
    """

    def __init__(self, mappings: tuple[tuple[type[BaseError], int], ...] = STATUS_BY_ERROR) -> None:
        _require_fastapi()
        self._mappings = mappings

    def status_for(self, exc: BaseException) -> int:
        return next((status for error_type, status in self._mappings if isinstance(exc, error_type)), 500)

    def body_for(self, exc: BaseError) -> dict[str, Any]:
        body = exc.to_dict()
        body.pop("cause", None)
        ctx = CorrelationContext.get()
        body["correlation_id"] = ctx.correlation_id if ctx is not None else None
        return body

    def register(self, app: Any) -> None:
        """Install one handler for every :class:`BaseError` on *app*."""
        from fastapi.responses import JSONResponse  # type: ignore[import-untyped]

        def handle(request: Any, exc: BaseError) -> Any:
            status = self.status_for(exc)
            headers: dict[str, str] = {}
            if status >= 500:
                logger.warning(
                    "http_request_failed",
                    path=request.url.path,
                    status=status,
                    code=exc.code,
                    cause=repr(exc.cause) if exc.cause is not None else None,
                )
            if status == 503 and exc.retryable:
                headers["Retry-After"] = str(RETRY_AFTER_SECONDS)
            return JSONResponse(status_code=status, content=self.body_for(exc), headers=headers)

        app.add_exception_handler(BaseError, handle)


__all__ = ["STATUS_BY_ERROR", "FastAPIExceptionMapper"]
