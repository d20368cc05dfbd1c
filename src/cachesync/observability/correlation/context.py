"""Observability – RequestContext, CorrelationContext.

One correlation id follows an invalidation from the inbound trigger request
(or the worker run that drains the debounce queue) through the purge, the
log lines it produces and any outbound revalidation call.
"""
from __future__ import annotations

import contextlib
import dataclasses
from collections.abc import Iterator, Mapping
from contextvars import ContextVar
from uuid import uuid4

_CORRELATION_HEADERS = ("x-correlation-id", "x-request-id")


@dataclasses.dataclass(frozen=True)
class RequestContext:
    correlation_id: str = dataclasses.field(default_factory=lambda: str(uuid4()))
    trace_id: str | None = None
    source: str = "http"


_current: ContextVar[RequestContext | None] = ContextVar("cachesync_request_context", default=None)


def _trace_id(traceparent: str | None) -> str | None:
    # W3C: version-traceid-parentid-flags
    if not traceparent:
        return None
    parts = traceparent.split("-")
    return parts[1] if len(parts) == 4 and parts[1] else None


class CorrelationContext:
    """Ambient :class:`RequestContext`, isolated per task by a ``ContextVar``."""

    @staticmethod
    def get() -> RequestContext | None:
        return _current.get()

    @staticmethod
    def set(ctx: RequestContext) -> None:
        _current.set(ctx)

    @staticmethod
    def clear() -> None:
        _current.set(None)

    @staticmethod
    def set_from_headers(headers: Mapping[str, str]) -> RequestContext:
        """Adopt the caller's correlation id, if any, for the current request.

        ``X-Correlation-ID`` wins over ``X-Request-ID``; header names match
        case-insensitively and a missing id is generated.
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        found = next((lowered[h] for h in _CORRELATION_HEADERS if lowered.get(h)), None)
        ctx = RequestContext(trace_id=_trace_id(lowered.get("traceparent")))
        if found:
            ctx = dataclasses.replace(ctx, correlation_id=found)
        _current.set(ctx)
        return ctx

    @staticmethod
    @contextlib.contextmanager
    def scope(source: str) -> Iterator[RequestContext]:
        """Run a block under a fresh context, restoring the previous one after."""
        ctx = RequestContext(source=source)
        token = _current.set(ctx)
        try:
            yield ctx
        finally:
            _current.reset(token)


__all__ = ["CorrelationContext", "RequestContext"]
