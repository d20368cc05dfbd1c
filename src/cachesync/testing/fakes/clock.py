"""Testing fakes – FakeClock."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta

#: Every FakeClock starts here unless told otherwise.
EPOCH = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """A :class:`~cachesync.kernel.time.Clock` that only moves when told to.

    ``advance`` takes ``timedelta`` keyword arguments; negative values move it
    back, which lets a test land a trigger in a bucket already processed.
    """

    def __init__(self, start: datetime = EPOCH) -> None:
        if start.tzinfo is None:
            raise ValueError("FakeClock needs a timezone-aware start")
        self._now = start

    def now(self) -> datetime:
        return self._now

    def timestamp(self) -> float:
        return self._now.timestamp()

    def advance(self, **delta: float) -> datetime:
        self._now += timedelta(**delta)
        return self._now

    def set(self, when: datetime) -> None:
        self._now = when


__all__ = ["EPOCH", "FakeClock"]
