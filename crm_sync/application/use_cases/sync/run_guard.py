"""Per-account "run in progress" guard for sync passes."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol

from crm_sync.domain.exceptions import SyncInProgressException
from crm_sync.shared.telemetry.logging import get_logger

logger = get_logger(__name__)


class IRunLock(Protocol):
    """Cross-process lock (e.g. Redis). ``acquire`` returns a token or None if held."""

    async def acquire(self, key: str, ttl_seconds: int) -> str | None:
        """Try to take the lock without waiting."""

    async def release(self, key: str, token: str) -> None:
        """Release only if ``token`` still owns the lock."""


class AccountRunGuard:
    """Refuses to start a pass for an account that already has one running.

    The in-process set covers one worker; ``distributed`` (optional) covers
    several. Its TTL must exceed the maximum pass duration.
    """

    def __init__(self, distributed: IRunLock | None = None, ttl_seconds: int = 600) -> None:
        self._active: set[str] = set()
        self._distributed = distributed
        self._ttl_seconds = ttl_seconds

    def is_running(self, credential_id: str) -> bool:
        return credential_id in self._active

    @asynccontextmanager
    async def hold(self, credential_id: str) -> AsyncIterator[None]:
        if credential_id in self._active:
            raise SyncInProgressException(credential_id)
        self._active.add(credential_id)
        token: str | None = None
        try:
            if self._distributed is not None:
                token = await self._distributed.acquire(
                    f"sync-run:{credential_id}", self._ttl_seconds
                )
                if token is None:
                    logger.info("Sync for %s is running in another worker", credential_id)
                    raise SyncInProgressException(credential_id)
            yield
        finally:
            if token is not None and self._distributed is not None:
                await self._distributed.release(f"sync-run:{credential_id}", token)
            self._active.discard(credential_id)
