"""Testing fakes – in-memory doubles for the cache and realtime ports."""
from cachesync.testing.fakes.clock import FakeClock
from cachesync.testing.fakes.feed import InMemoryChangeFeed, event_message
from cachesync.testing.fakes.metrics import FakeMetricsRegistry
from cachesync.testing.fakes.store import FlakyResponseStore

__all__ = [
    "FakeClock",
    "FakeMetricsRegistry",
    "FlakyResponseStore",
    "InMemoryChangeFeed",
    "event_message",
]
