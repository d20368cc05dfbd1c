"""Testing generators – Hypothesis strategies for tags and change events."""
from cachesync.testing.generators.strategies import (
    cache_tag_strategy,
    change_event_strategy,
    event_history_strategy,
)

__all__ = [
    "cache_tag_strategy",
    "change_event_strategy",
    "event_history_strategy",
]
