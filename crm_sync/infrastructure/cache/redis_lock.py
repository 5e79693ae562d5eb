"""Redis lock keeping one sync pass per account across workers.

``SET key token NX PX ttl`` takes the lock; release is a compare-and-delete
script so a worker never frees a lock that expired and was re-taken.
"""

from __future__ import annotations

import logging
import secrets

import redis.asyncio as redis

from crm_sync.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisRunLock:
    """Implements IRunLock. Call connect() at startup and disconnect() at shutdown."""

    KEY_PREFIX = "crm_sync"

    def __init__(
        self,
        redis_client: redis.Redis | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.redis = redis_client
        self.settings = settings or get_settings()
        self._connected = redis_client is not None

    async def connect(self) -> None:
        """Establish Redis connection. Raises if Redis is unreachable."""
        if self._connected:
            return
        password = self.settings.redis_password
        self.redis = redis.Redis(
            host=self.settings.redis_host,
            port=self.settings.redis_port,
            db=self.settings.redis_db,
            password=password.get_secret_value() if password else None,
            decode_responses=True,
            socket_connect_timeout=5,
        )
        await self.redis.ping()
        self._connected = True
        logger.info(
            "Redis run lock connected: %s:%s",
            self.settings.redis_host,
            self.settings.redis_port,
        )

    async def disconnect(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
            self._connected = False
            logger.info("Redis run lock disconnected")

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}:{key}"

    async def acquire(self, key: str, ttl_seconds: int) -> str | None:
        if self.redis is None:
            raise RuntimeError("RedisRunLock is not connected")
        token = secrets.token_hex(16)
        acquired = await self.redis.set(self._key(key), token, nx=True, px=ttl_seconds * 1000)
        return token if acquired else None

    async def release(self, key: str, token: str) -> None:
        if self.redis is None:
            return
        released = await self.redis.eval(_RELEASE_SCRIPT, 1, self._key(key), token)
        if not released:
            logger.warning("Run lock %s expired before release", key)
