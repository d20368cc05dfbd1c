"""Kernel time – Clock port and the system clock.

Tombstone expiry, cache-entry TTLs and invalidation buckets all read time
through a ``Clock``; tests pass :class:`cachesync.testing.fakes.FakeClock`
and move it by hand.
"""
from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    """Port: timezone-aware wall clock."""

    def now(self) -> datetime: ...
    def timestamp(self) -> float: ...


def utc_now() -> datetime:
    return datetime.now(UTC)


class SystemClock:
    def now(self) -> datetime:
        return utc_now()

    def timestamp(self) -> float:
        return utc_now().timestamp()


__all__ = ["Clock", "SystemClock", "utc_now"]
