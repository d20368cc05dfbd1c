"""Resilience – retry schedules: backoff delays and the jitter applied to them.

Change stream reconnects use exponential backoff capped at 30s plus up to one
second of additive jitter, so sessions dropped by the same outage do not
reconnect in lockstep. Table refetches use the policy default, full jitter.
"""
from __future__ import annotations

import abc
import random


class BackoffStrategy(abc.ABC):
    """Delay in seconds before retrying after the *attempt*-th failure (1-based)."""

    @abc.abstractmethod
    def compute(self, attempt: int) -> float: ...


class ConstantBackoff(BackoffStrategy):
    def __init__(self, delay: float = 1.0) -> None:
        self._delay = delay

    def compute(self, attempt: int) -> float:  # noqa: ARG002
        return self._delay


class ExponentialBackoff(BackoffStrategy):
    """``base_delay * 2 ** (attempt - 1)``, never above *max_delay*."""

    def __init__(self, base_delay: float = 1.0, max_delay: float = 30.0) -> None:
        if base_delay < 0 or max_delay < base_delay:
            raise ValueError("need 0 <= base_delay <= max_delay")
        self._base = base_delay
        self._max = max_delay

    def compute(self, attempt: int) -> float:
        # past this exponent the cap always wins; avoids huge floats for long outages
        exponent = min(max(attempt - 1, 0), 32)
        return min(self._base * 2**exponent, self._max)


class JitterStrategy(abc.ABC):
    """Randomises a backoff delay. *rng* can be seeded for reproducible schedules."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    @abc.abstractmethod
    def apply(self, delay: float) -> float: ...


class NoJitter(JitterStrategy):
    def apply(self, delay: float) -> float:
        return delay


class FullJitter(JitterStrategy):
    """Uniform in ``[0, delay]``."""

    def apply(self, delay: float) -> float:
        return self._rng.uniform(0, delay)


class AdditiveJitter(JitterStrategy):
    """*delay* plus uniform in ``[0, spread]``."""

    def __init__(self, spread: float = 1.0, rng: random.Random | None = None) -> None:
        super().__init__(rng)
        self._spread = spread

    def apply(self, delay: float) -> float:
        return delay + self._rng.uniform(0, self._spread)


__all__ = [
    "AdditiveJitter",
    "BackoffStrategy",
    "ConstantBackoff",
    "ExponentialBackoff",
    "FullJitter",
    "JitterStrategy",
    "NoJitter",
]
