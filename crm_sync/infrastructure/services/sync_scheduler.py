"""Periodic sync of every connected account.

Started from the lifespan when ``sync_scheduler_enabled`` is set. Each account
pass runs in its own session; at most ``sync_max_concurrent_accounts`` run at
once. Failures are logged per account and never stop the loop.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager

from sqlalchemy.ext.asyncio import AsyncSession

from crm_sync.core.runtime import SyncRuntime, build_sync_services
from crm_sync.domain.enums import SyncTrigger
from crm_sync.domain.exceptions import CrmSyncException, SyncInProgressException
from crm_sync.infrastructure.persistence.database import open_session
from crm_sync.shared.telemetry.logging import get_logger

logger = get_logger(__name__)

SessionOpener = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class SyncScheduler:
    def __init__(
        self,
        runtime: SyncRuntime,
        *,
        session_opener: SessionOpener = open_session,
        interval_seconds: float | None = None,
        max_concurrent: int | None = None,
    ) -> None:
        settings = runtime.settings
        self._runtime = runtime
        self._open_session = session_opener
        self._interval = interval_seconds or settings.sync_interval_seconds
        self._semaphore = asyncio.Semaphore(max_concurrent or settings.sync_max_concurrent_accounts)

    async def _credential_ids(self) -> list[str]:
        async with self._open_session() as db:
            services = build_sync_services(db, self._runtime)
            return [c.id for c in await services.credentials.list_syncable()]

    async def _sync_one(self, credential_id: str) -> None:
        async with self._semaphore:
            try:
                async with self._open_session() as db:
                    services = build_sync_services(db, self._runtime)
                    run = await services.orchestrator.run_sync(
                        credential_id, trigger=SyncTrigger.SCHEDULED
                    )
                logger.info(
                    "Scheduled sync %s for %s finished: %s", run.id, credential_id, run.status.value
                )
            except SyncInProgressException:
                logger.info("Skipping %s: a sync is already running", credential_id)
            except CrmSyncException as exc:
                logger.warning("Scheduled sync for %s failed: %s", credential_id, exc.message)
            except Exception:
                logger.exception("Scheduled sync for %s crashed", credential_id)

    async def run_once(self) -> int:
        """Sync every syncable account once; returns how many were attempted."""
        credential_ids = await self._credential_ids()
        results = await asyncio.gather(
            *(self._sync_one(cid) for cid in credential_ids), return_exceptions=True
        )
        for credential_id, result in zip(credential_ids, results):
            if isinstance(result, BaseException):
                logger.error("Scheduled sync for %s was interrupted: %r", credential_id, result)
        return len(credential_ids)

    async def run_forever(self) -> None:
        logger.info("Sync scheduler started (interval %ss)", self._interval)
        while True:
            try:
                count = await self.run_once()
                logger.debug("Scheduler tick synced %d account(s)", count)
            except CrmSyncException as exc:
                logger.warning("Scheduler tick failed: %s", exc.message)
            except Exception:
                logger.exception("Scheduler tick crashed")
            await asyncio.sleep(self._interval)
