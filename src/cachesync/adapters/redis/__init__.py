"""Redis adapter – shared response store."""
from cachesync.adapters.redis.cache import RedisResponseStore

__all__ = ["RedisResponseStore"]
