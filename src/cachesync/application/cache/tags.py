"""Application cache – TagRegistry.

Maps opaque tag strings to the cache entry keys they cover. The registry is
the visibility gate of :class:`~cachesync.application.cache.response.ResponseCache`:
an entry is served only while its key is registered here, so removing a key
from the registry is what makes an invalidation take effect.

Every public method runs under one ``threading.Lock``; no method awaits.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Iterable

__all__ = ["Reservation", "TagRegistry"]


@dataclass(eq=False)
class Reservation:
    """A computation in flight for *key* that will be tagged with *tags*.

    ``poisoned`` flips to ``True`` when one of *tags* is purged while the
    computation runs; such a result must not be cached.
    """

    key: str
    tags: frozenset[str]
    poisoned: bool = False


class TagRegistry:
    """Many-to-many index between tags and entry keys."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tag_keys: dict[str, set[str]] = {}
        self._key_tags: dict[str, frozenset[str]] = {}
        self._reservations: dict[str, set[Reservation]] = {}

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def tag(self, entry_key: str, tags: Iterable[str]) -> None:
        """Associate *tags* with *entry_key* (union with any existing tags)."""
        new_tags = frozenset(tags)
        with self._lock:
            merged = self._key_tags.get(entry_key, frozenset()) | new_tags
            self._set_unlocked(entry_key, merged)

    def reserve(self, key: str, tags: Iterable[str]) -> Reservation:
        reservation = Reservation(key=key, tags=frozenset(tags))
        with self._lock:
            for tag in reservation.tags:
                self._reservations.setdefault(tag, set()).add(reservation)
        return reservation

    def commit(self, reservation: Reservation) -> bool:
        """Register the reserved entry unless a purge overlapped it.

        The entry's tag set is replaced, since a recomputed entry is a new
        entry. Returns ``False`` when the reservation was poisoned.
        """
        with self._lock:
            self._release_unlocked(reservation)
            if reservation.poisoned:
                return False
            self._set_unlocked(reservation.key, reservation.tags)
            return True

    def release(self, reservation: Reservation) -> None:
        with self._lock:
            self._release_unlocked(reservation)

    # ------------------------------------------------------------------
    # Purge path
    # ------------------------------------------------------------------

    def purge(self, tags: Iterable[str]) -> list[str]:
        """Remove every entry referencing any of *tags*; return the removed keys.

        Purging an unknown or already-purged tag is a no-op.
        """
        with self._lock:
            removed: set[str] = set()
            for tag in set(tags):
                for reservation in self._reservations.get(tag, ()):
                    reservation.poisoned = True
                removed.update(self._tag_keys.get(tag, ()))
            for key in removed:
                self._remove_unlocked(key)
            return sorted(removed)

    def discard(self, key: str) -> bool:
        """Forget *key* (eviction / explicit delete). Returns whether it was known."""
        with self._lock:
            if key not in self._key_tags:
                return False
            self._remove_unlocked(key)
            return True

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def contains(self, key: str) -> bool:
        with self._lock:
            return key in self._key_tags

    def tags_for(self, key: str) -> frozenset[str]:
        with self._lock:
            return self._key_tags.get(key, frozenset())

    def keys_for(self, tags: Iterable[str]) -> set[str]:
        with self._lock:
            keys: set[str] = set()
            for tag in tags:
                keys.update(self._tag_keys.get(tag, ()))
            return keys

    def known_tags(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._tag_keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._key_tags)

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _set_unlocked(self, key: str, tags: frozenset[str]) -> None:
        previous = self._key_tags.get(key, frozenset())
        for tag in previous - tags:
            self._unlink_unlocked(tag, key)
        for tag in tags - previous:
            self._tag_keys.setdefault(tag, set()).add(key)
        self._key_tags[key] = tags

    def _remove_unlocked(self, key: str) -> None:
        for tag in self._key_tags.pop(key, frozenset()):
            self._unlink_unlocked(tag, key)

    def _unlink_unlocked(self, tag: str, key: str) -> None:
        keys = self._tag_keys.get(tag)
        if keys is None:
            return
        keys.discard(key)
        if not keys:
            # tags live only as long as an entry references them
            del self._tag_keys[tag]

    def _release_unlocked(self, reservation: Reservation) -> None:
        for tag in reservation.tags:
            pending = self._reservations.get(tag)
            if pending is None:
                continue
            pending.discard(reservation)
            if not pending:
                del self._reservations[tag]
