"""Sync run repository. A run can be finalized once; afterwards it is read-only."""

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crm_sync.application.dtos.sync_run import SyncCounters, SyncRunResult
from crm_sync.domain.enums import SyncDirection, SyncRunStatus, SyncTrigger
from crm_sync.infrastructure.persistence.models.sync_run import SyncRun
from crm_sync.infrastructure.persistence.repositories.base import BaseRepository
from crm_sync.shared.telemetry.logging import get_logger
from crm_sync.shared.utils.datetime import ensure_utc, utc_now

logger = get_logger(__name__)


def _to_result(row: SyncRun) -> SyncRunResult:
    return SyncRunResult(
        id=row.id,
        credential_id=row.credential_id,
        direction=SyncDirection(row.direction),
        trigger=SyncTrigger(row.trigger),
        status=SyncRunStatus(row.status),
        started_at=ensure_utc(row.started_at),
        imported=row.imported,
        exported=row.exported,
        updated=row.updated,
        deleted=row.deleted,
        errors=row.errors,
        error_messages=tuple(row.error_messages or ()),
        completed_at=ensure_utc(row.completed_at),
    )


class SyncRunRepository(BaseRepository[SyncRun]):
    def __init__(self, db: AsyncSession) -> None:
        super().__init__(db, SyncRun)

    async def start(
        self, credential_id: str, direction: SyncDirection, trigger: SyncTrigger
    ) -> SyncRunResult:
        row = SyncRun(
            credential_id=credential_id,
            direction=direction.value,
            trigger=trigger.value,
            status=SyncRunStatus.RUNNING.value,
            started_at=utc_now(),
            error_messages=[],
        )
        return _to_result(await self._add(row))

    async def finalize(
        self,
        run_id: str,
        status: SyncRunStatus,
        counters: SyncCounters,
        completed_at: datetime,
    ) -> SyncRunResult:
        result = await self.db.execute(
            update(SyncRun)
            .where(SyncRun.id == run_id, SyncRun.status == SyncRunStatus.RUNNING.value)
            .values(
                status=status.value,
                imported=counters.imported,
                exported=counters.exported,
                updated=counters.updated,
                deleted=counters.deleted,
                errors=counters.errors,
                error_messages=list(counters.error_messages),
                completed_at=completed_at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning("Sync run %s was already finalized; leaving it unchanged", run_id)
        return _to_result(await self._get_or_raise(run_id, fresh=True))

    async def list_for_credential(
        self, credential_id: str, limit: int = 20
    ) -> list[SyncRunResult]:
        stmt = (
            select(SyncRun)
            .where(SyncRun.credential_id == credential_id)
            .order_by(SyncRun.started_at.desc())
            .limit(limit)
        )
        return [_to_result(r) for r in (await self.db.execute(stmt)).scalars()]
