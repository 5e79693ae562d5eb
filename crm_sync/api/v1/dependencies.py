"""Presentation-layer dependency injection (composition root).

Routes depend on these providers only; repositories and use cases are
wired in ``crm_sync.core.runtime``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from crm_sync.application.use_cases.webhooks import WebhookDeltaProcessor
from crm_sync.core.runtime import SyncRuntime, SyncServices, build_sync_services
from crm_sync.infrastructure.persistence.database import get_db, open_session

WebhookProcessorOpener = Callable[[], AbstractAsyncContextManager[WebhookDeltaProcessor]]


def get_runtime(request: Request) -> SyncRuntime:
    """Process-wide components created in the lifespan."""
    return request.app.state.sync_runtime


def get_sync_services(
    db: Annotated[AsyncSession, Depends(get_db)],
    runtime: Annotated[SyncRuntime, Depends(get_runtime)],
) -> SyncServices:
    return build_sync_services(db, runtime)


def get_webhook_processors(
    runtime: Annotated[SyncRuntime, Depends(get_runtime)],
) -> WebhookProcessorOpener:
    """Opener for a session-scoped processor.

    The session checks out a connection on first use, so handshake echoes
    never reach the database.
    """

    @asynccontextmanager
    async def opener() -> AsyncIterator[WebhookDeltaProcessor]:
        async with open_session() as db:
            yield build_sync_services(db, runtime).webhooks

    return opener
