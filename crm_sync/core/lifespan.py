"""Application lifespan: startup and shutdown.

Wiring only: shared HTTP client, sync runtime, optional Redis run lock,
telemetry, the periodic scheduler and engine disposal.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
from fastapi import FastAPI

from crm_sync.core.config import get_settings
from crm_sync.core.runtime import SyncRuntime

logger = logging.getLogger(__name__)


@asynccontextmanager
async def create_lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Run startup then yield; on exit run shutdown in reverse order."""
    settings = get_settings()

    # ---- Startup ----
    # Shared HTTP client for token endpoints and provider APIs (connection reuse).
    app.state.http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)

    run_lock = None
    if settings.redis_enabled:
        from crm_sync.infrastructure.cache import RedisRunLock

        run_lock = RedisRunLock(settings=settings)
        await run_lock.connect()
    app.state.run_lock = run_lock

    app.state.sync_runtime = SyncRuntime.create(settings, app.state.http_client, run_lock)

    app.state.telemetry = None
    if settings.telemetry_enabled:
        from crm_sync.shared.telemetry.telemetry import TelemetryConfig

        telemetry = TelemetryConfig.from_settings(settings)
        if telemetry.start():
            engine = None
            if settings.sql_configured:
                from crm_sync.infrastructure.persistence.database import get_engine

                engine = get_engine()
            telemetry.instrument(app, engine)
            app.state.telemetry = telemetry

    app.state.scheduler_task = None
    if settings.sync_scheduler_enabled and settings.sql_configured:
        from crm_sync.infrastructure.services import SyncScheduler

        scheduler = SyncScheduler(app.state.sync_runtime)
        app.state.scheduler_task = asyncio.create_task(scheduler.run_forever())
    elif settings.sync_scheduler_enabled:
        logger.warning("Sync scheduler enabled but DATABASE_URL is not set; not starting it")

    yield

    # ---- Shutdown ----
    scheduler_task = getattr(app.state, "scheduler_task", None)
    if scheduler_task is not None:
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass
        logger.info("Sync scheduler stopped")

    if getattr(app.state, "http_client", None) is not None:
        await app.state.http_client.aclose()
        app.state.http_client = None
        logger.info("HTTP client closed")

    if getattr(app.state, "run_lock", None) is not None:
        await app.state.run_lock.disconnect()

    if getattr(app.state, "telemetry", None) is not None:
        app.state.telemetry.shutdown()
        logger.info("Telemetry shutdown complete")

    from crm_sync.infrastructure.persistence.database import dispose_engine

    await dispose_engine()
