"""Resilience – retry policies for refetch, reconnect and outbound HTTP."""

from cachesync.resilience.retry import (
    BackoffStrategy,
    ExponentialBackoff,
    JitterStrategy,
    RetryPolicy,
    TenacityRetryPolicy,
)

__all__ = [
    "BackoffStrategy",
    "ExponentialBackoff",
    "JitterStrategy",
    "RetryPolicy",
    "TenacityRetryPolicy",
]
