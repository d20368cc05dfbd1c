"""Resilience – TenacityRetryPolicy adapter.

Used by the HTTP adapters, where retry predicates depend on the response
status and tenacity's composable ``retry_if_*`` helpers read better than a
hand-built exception tuple.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, TypeVar

import tenacity as ten

from cachesync.observability.logging import get_logger

T = TypeVar("T")
logger = get_logger(__name__)


def _retryable_by_flag(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


class TenacityRetryPolicy:
    """Async retry policy backed by ``tenacity``.

    Parameters
    ----------
    max_attempts:
        Maximum number of call attempts (including the first call).
    wait:
        A ``tenacity`` wait strategy. Defaults to exponential backoff with
        jitter, starting at 0.1s and capped at 5s.
    retry:
        A ``tenacity`` retry predicate. Defaults to errors whose
        ``retryable`` flag is set.
    kwargs:
        Forwarded to :class:`tenacity.AsyncRetrying` (e.g. ``sleep`` in tests).

    The last exception is re-raised as-is once attempts run out, never
    wrapped in ``tenacity.RetryError``.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        wait: Any = None,
        retry: Any = None,
        **kwargs: Any,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self._wait = wait or ten.wait_random_exponential(multiplier=0.1, max=5)
        self._retry = retry or ten.retry_if_exception(_retryable_by_flag)
        self._extra_kwargs = kwargs

    @staticmethod
    def _log_retry(operation: str) -> Callable[[ten.RetryCallState], None]:
        def before_sleep(state: ten.RetryCallState) -> None:
            outcome = state.outcome
            logger.warning(
                "retry_scheduled",
                operation=operation,
                attempt=state.attempt_number,
                delay_seconds=round(state.next_action.sleep, 3) if state.next_action else None,
                error=repr(outcome.exception()) if outcome is not None else None,
            )

        return before_sleep

    async def execute_async(self, func: Callable[[], Awaitable[T]], *, operation: str = "operation") -> T:
        """Execute *func* with retry; *operation* names it in log lines."""
        options: dict[str, Any] = {"before_sleep": self._log_retry(operation), **self._extra_kwargs}
        retrying = ten.AsyncRetrying(
            stop=ten.stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=self._retry,
            reraise=True,
            **options,
        )
        return await retrying(func)


__all__ = ["TenacityRetryPolicy"]
