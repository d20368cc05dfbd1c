"""Testing support – fakes for the cache and realtime ports.

Import them in tests::

    from cachesync.testing.fakes import FakeClock, InMemoryChangeFeed
"""

from cachesync.testing.fakes import (
    FakeClock,
    FakeMetricsRegistry,
    FlakyResponseStore,
    InMemoryChangeFeed,
    event_message,
)

__all__ = [
    "FakeClock",
    "FakeMetricsRegistry",
    "FlakyResponseStore",
    "InMemoryChangeFeed",
    "event_message",
]
