"""Redis-backed coordination primitives."""

from crm_sync.infrastructure.cache.redis_lock import RedisRunLock

__all__ = ["RedisRunLock"]
