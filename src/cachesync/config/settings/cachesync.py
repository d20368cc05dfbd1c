"""Config settings – CacheSyncSettings."""
from __future__ import annotations

import dataclasses

from cachesync.config.settings.base import Settings
from cachesync.config.validation import InvalidSettingValueError


@dataclasses.dataclass
class CacheSyncSettings(Settings):
    """Runtime configuration, read from ``CACHESYNC_*`` environment variables.

    The two secrets are optional at load time: an endpoint whose secret is
    missing answers every request with a configuration error instead of
    refusing to boot the whole process.
    """

    _prefix = "CACHESYNC"
    _secret_fields = frozenset({"cache_invalidation_secret", "revalidation_secret"})

    cache_invalidation_secret: str | None = None
    revalidation_secret: str | None = None
    revalidation_base_url: str = ""

    http_timeout_seconds: float = 10.0
    http_max_attempts: int = 3

    refetch_timeout_seconds: float = 10.0
    refetch_max_attempts: int = 5
    reconnect_max_attempts: int = 5
    tombstone_ttl_seconds: float = 300.0

    response_cache_max_entries: int = 10_000
    response_cache_ttl_seconds: float | None = None

    invalidation_bucket_seconds: float = 1.0
    invalidation_debounce_seconds: float = 5.0
    invalidation_batch_limit: int = 100
    invalidation_retention_seconds: float = 3600.0

    log_level: str = "INFO"

    def _validate(self) -> None:
        for name in (
            "http_timeout_seconds",
            "refetch_timeout_seconds",
            "tombstone_ttl_seconds",
            "invalidation_bucket_seconds",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise InvalidSettingValueError(name, value, "must be positive")
        for name in (
            "http_max_attempts",
            "refetch_max_attempts",
            "reconnect_max_attempts",
            "response_cache_max_entries",
            "invalidation_batch_limit",
        ):
            value = getattr(self, name)
            if value < 1:
                raise InvalidSettingValueError(name, value, "must be at least 1")
        if self.invalidation_debounce_seconds < 0:
            raise InvalidSettingValueError(
                "invalidation_debounce_seconds", self.invalidation_debounce_seconds, "must not be negative"
            )


__all__ = ["CacheSyncSettings"]
