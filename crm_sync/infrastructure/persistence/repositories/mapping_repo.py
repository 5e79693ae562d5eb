"""Correlation store backed by sync_mapping and its two unique constraints."""

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from crm_sync.application.dtos.mapping import MappingResult, MappingUpsert
from crm_sync.domain.enums import MappingDirection, MappingStatus, Provider, RecordKind
from crm_sync.domain.exceptions import MappingConflictException
from crm_sync.infrastructure.persistence.models.mapping import SyncMapping
from crm_sync.infrastructure.persistence.repositories.base import BaseRepository
from crm_sync.shared.utils.datetime import ensure_utc, utc_now


def _to_result(row: SyncMapping) -> MappingResult:
    return MappingResult(
        id=row.id,
        credential_id=row.credential_id,
        record_kind=RecordKind(row.record_kind),
        record_id=row.record_id,
        provider=Provider(row.provider),
        external_id=row.external_id,
        direction=MappingDirection(row.direction),
        status=MappingStatus(row.status),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
        external_etag=row.external_etag,
        last_error=row.last_error,
    )


class MappingRepository(BaseRepository[SyncMapping]):
    """Conflicting inserts surface as MappingConflictException, never as duplicates."""

    def __init__(self, db: AsyncSession) -> None:
        super().__init__(db, SyncMapping)

    async def _row_by_external_id(
        self, provider: Provider, external_id: str
    ) -> SyncMapping | None:
        stmt = select(SyncMapping).where(
            SyncMapping.provider == provider.value,
            SyncMapping.external_id == external_id,
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def find_by_external_id(
        self, provider: Provider, external_id: str
    ) -> MappingResult | None:
        row = await self._row_by_external_id(provider, external_id)
        return _to_result(row) if row else None

    async def find_by_internal_id(
        self, record_id: str, provider: Provider
    ) -> MappingResult | None:
        stmt = select(SyncMapping).where(
            SyncMapping.record_id == record_id,
            SyncMapping.provider == provider.value,
        )
        row = (await self.db.execute(stmt)).scalar_one_or_none()
        return _to_result(row) if row else None

    async def upsert(self, data: MappingUpsert) -> MappingResult:
        existing = await self._row_by_external_id(data.provider, data.external_id)
        if existing is not None:
            if existing.record_id != data.record_id:
                raise MappingConflictException(
                    data.provider.value, data.external_id, data.record_id
                )
            existing.status = data.status.value
            existing.external_etag = data.external_etag
            existing.last_error = data.last_error
            existing.updated_at = utc_now()
            return _to_result(await self._save(existing))

        row = SyncMapping(
            credential_id=data.credential_id,
            record_kind=data.record_kind.value,
            record_id=data.record_id,
            provider=data.provider.value,
            external_id=data.external_id,
            external_etag=data.external_etag,
            direction=data.direction.value,
            status=data.status.value,
            last_error=data.last_error,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(row)
                await self.db.flush()
        except IntegrityError as exc:
            raise MappingConflictException(
                data.provider.value, data.external_id, data.record_id
            ) from exc
        await self.db.refresh(row)
        return _to_result(row)

    async def replace_external_id(
        self, mapping_id: str, external_id: str, etag: str | None
    ) -> MappingResult:
        row = await self._get_or_raise(mapping_id)
        row.external_id = external_id
        row.external_etag = etag
        row.status = MappingStatus.SYNCED.value
        row.updated_at = utc_now()
        try:
            async with self.db.begin_nested():
                await self.db.flush()
        except IntegrityError as exc:
            raise MappingConflictException(row.provider, external_id, row.record_id) from exc
        await self.db.refresh(row)
        return _to_result(row)

    async def delete(self, mapping_id: str) -> None:
        await self.db.execute(delete(SyncMapping).where(SyncMapping.id == mapping_id))

    async def delete_pending_older_than(self, credential_id: str, cutoff: datetime) -> int:
        result = await self.db.execute(
            delete(SyncMapping).where(
                SyncMapping.credential_id == credential_id,
                SyncMapping.status == MappingStatus.PENDING.value,
                SyncMapping.created_at < cutoff,
            )
        )
        return result.rowcount or 0
