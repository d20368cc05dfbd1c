"""Redis adapter – RedisResponseStore."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable

from cachesync.application.cache.store import CacheEntry
from cachesync.kernel.errors import TransientStoreError
from cachesync.observability.logging import get_logger

__all__ = ["RedisResponseStore"]

logger = get_logger(__name__)


def _require_redis() -> Any:
    try:
        import redis.asyncio as aioredis
        return aioredis
    except ImportError as exc:
        raise ImportError("Install 'cachesync[redis]' to use the Redis adapter") from exc


def _redis_errors() -> tuple[type[BaseException], ...]:
    from redis.exceptions import RedisError

    return (RedisError, OSError)


class RedisResponseStore:
    """:class:`~cachesync.application.cache.store.ResponseStore` on ``redis.asyncio``.

    Entries are stored as JSON under ``<prefix><key>``; values must be JSON
    serialisable. Expiry is left to Redis (``PX``). Every Redis failure is
    raised as :class:`TransientStoreError` so the response cache can degrade;
    a payload that does not decode is treated as a miss.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        client: Any = None,
        prefix: str = "cachesync:response:",
        **kwargs: Any,
    ) -> None:
        if client is None:
            if url is None:
                raise ValueError("RedisResponseStore needs a url or a client")
            client = _require_redis().from_url(url, **kwargs)
        self._client = client
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> CacheEntry | None:
        try:
            raw = await self._client.get(self._key(key))
        except _redis_errors() as exc:
            raise TransientStoreError("redis", f"GET {key} failed: {exc}", cause=exc) from exc
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return CacheEntry(
                key=data["key"],
                value=data["value"],
                created_at=datetime.fromisoformat(data["created_at"]),
                tags=frozenset(data.get("tags", ())),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            # unreadable payloads are misses; the next set overwrites them
            logger.warning("redis_cache_entry_unreadable", key=key, error=repr(exc))
            return None

    async def set(self, entry: CacheEntry, ttl: float | None = None) -> None:
        payload = json.dumps(
            {
                "key": entry.key,
                "value": entry.value,
                "created_at": entry.created_at.isoformat(),
                "tags": sorted(entry.tags),
            }
        )
        px = max(1, int(ttl * 1000)) if ttl is not None else None
        try:
            await self._client.set(self._key(entry.key), payload, px=px)
        except _redis_errors() as exc:
            raise TransientStoreError("redis", f"SET {entry.key} failed: {exc}", cause=exc) from exc

    async def delete_many(self, keys: Iterable[str]) -> int:
        names = [self._key(k) for k in keys]
        if not names:
            return 0
        try:
            return int(await self._client.delete(*names))
        except _redis_errors() as exc:
            raise TransientStoreError("redis", f"DEL of {len(names)} keys failed: {exc}", cause=exc) from exc

    async def close(self) -> None:
        await self._client.aclose()
