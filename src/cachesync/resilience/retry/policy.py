"""Resilience – RetryPolicy with per-attempt timeout."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from cachesync.kernel.errors import TransientStoreError, TransportDisconnectedError, UpstreamError
from cachesync.observability.logging import get_logger
from cachesync.resilience.retry.schedule import BackoffStrategy, ExponentialBackoff, FullJitter, JitterStrategy

T = TypeVar("T")
logger = get_logger(__name__)

DEFAULT_RETRYABLE: tuple[type[BaseException], ...] = (
    TransientStoreError,
    TransportDisconnectedError,
    UpstreamError,
    TimeoutError,
    OSError,
)


class RetryPolicy:
    """Bounded retry: every attempt is capped by *attempt_timeout* seconds.

    Non-retryable exceptions propagate immediately; the last retryable one
    propagates once *max_attempts* is exhausted. No call blocks forever as long
    as *attempt_timeout* is set.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff: BackoffStrategy | None = None,
        jitter: JitterStrategy | None = None,
        retryable_exceptions: tuple[type[BaseException], ...] = DEFAULT_RETRYABLE,
        attempt_timeout: float | None = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.backoff = backoff or ExponentialBackoff()
        self.jitter = jitter or FullJitter()
        self.retryable_exceptions = retryable_exceptions
        self.attempt_timeout = attempt_timeout
        self._sleep = sleep

    def _should_retry(self, exc: BaseException) -> bool:
        # errors that know they cannot recover (a 4xx upstream answer) are not retried
        return isinstance(exc, self.retryable_exceptions) and getattr(exc, "retryable", True)

    async def execute_async(
        self,
        func: Callable[[], Awaitable[T]],
        *,
        operation: str = "operation",
    ) -> T:
        """Execute *func* with retry; *operation* names it in log lines."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                if self.attempt_timeout is None:
                    return await func()
                async with asyncio.timeout(self.attempt_timeout):
                    return await func()
            except Exception as exc:
                if not self._should_retry(exc) or attempt == self.max_attempts:
                    raise
                delay = self.jitter.apply(self.backoff.compute(attempt))
                logger.warning(
                    "retry_scheduled",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay_seconds=round(delay, 3),
                    error=repr(exc),
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["DEFAULT_RETRYABLE", "RetryPolicy"]
