"""Resilience – retry with configurable backoff, jitter and per-attempt timeouts."""
from cachesync.resilience.retry.policy import DEFAULT_RETRYABLE, RetryPolicy
from cachesync.resilience.retry.schedule import (
    AdditiveJitter,
    BackoffStrategy,
    ConstantBackoff,
    ExponentialBackoff,
    FullJitter,
    JitterStrategy,
    NoJitter,
)
from cachesync.resilience.retry.tenacity_adapter import TenacityRetryPolicy

__all__ = [
    "DEFAULT_RETRYABLE",
    "AdditiveJitter",
    "BackoffStrategy",
    "ConstantBackoff",
    "ExponentialBackoff",
    "FullJitter",
    "JitterStrategy",
    "NoJitter",
    "RetryPolicy",
    "TenacityRetryPolicy",
]
