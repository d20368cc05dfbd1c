"""FastAPI adapter – FastAPICorrelationIdMiddleware."""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from cachesync.observability.correlation import CorrelationContext

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Message, Receive, Scope, Send


def _require_fastapi() -> None:
    try:
        import fastapi  # noqa: F401
    except ImportError as exc:
        raise ImportError(
            "Install 'cachesync[fastapi]' to use the FastAPI adapter"
        ) from exc


class FastAPICorrelationIdMiddleware:
    """Give every trigger request a correlation id and echo it back.

    The id comes from ``X-Correlation-ID``, then ``X-Request-ID``, else is
    generated; a W3C ``traceparent`` contributes ``trace_id``. Both are
    bound to structlog's context vars while the request runs, so the
    invalidation log lines of one trigger can be found together.
    """

    def __init__(self, app: "ASGIApp", header_name: str = "X-Correlation-ID") -> None:
        _require_fastapi()
        self.app = app
        self._response_header = header_name.lower().encode()

    async def __call__(self, scope: "Scope", receive: "Receive", send: "Send") -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        ctx = CorrelationContext.set_from_headers(
            {
                name.decode("latin-1"): value.decode("latin-1").strip()
                for name, value in scope.get("headers", [])
                if value.strip()
            }
        )
        bound: dict[str, Any] = {"correlation_id": ctx.correlation_id}
        if ctx.trace_id:
            bound["trace_id"] = ctx.trace_id
        echoed = (self._response_header, ctx.correlation_id.encode())

        async def send_with_id(message: "Message") -> None:
            if message["type"] == "http.response.start":
                message = {**message, "headers": [*message.get("headers", []), echoed]}
            await send(message)

        try:
            with structlog.contextvars.bound_contextvars(**bound):
                await self.app(scope, receive, send_with_id)
        finally:
            CorrelationContext.clear()


__all__ = ["FastAPICorrelationIdMiddleware"]
