"""Appointment repository (internal calendar records)."""

from sqlalchemy import delete, exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crm_sync.application.dtos.records import AppointmentCreate, AppointmentResult
from crm_sync.domain.enums import AppointmentStatus, Provider
from crm_sync.infrastructure.persistence.models.appointment import Appointment
from crm_sync.infrastructure.persistence.models.mapping import SyncMapping
from crm_sync.infrastructure.persistence.repositories.base import BaseRepository
from crm_sync.shared.utils.datetime import ensure_utc


def _to_result(row: Appointment) -> AppointmentResult:
    return AppointmentResult(
        id=row.id,
        owner_id=row.owner_id,
        credential_id=row.credential_id,
        title=row.title,
        start_time=ensure_utc(row.start_time),
        end_time=ensure_utc(row.end_time),
        timezone=row.timezone,
        description=row.description,
        location=row.location,
        attendees=tuple(row.attendees or ()),
        all_day=row.all_day,
        status=AppointmentStatus(row.status),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _apply_fields(row: Appointment, data: AppointmentCreate) -> None:
    row.title = data.title
    row.description = data.description
    row.location = data.location
    row.start_time = data.start_time
    row.end_time = data.end_time
    row.timezone = data.timezone
    row.all_day = data.all_day
    row.attendees = list(data.attendees)
    row.status = data.status.value


class AppointmentRepository(BaseRepository[Appointment]):
    def __init__(self, db: AsyncSession) -> None:
        super().__init__(db, Appointment)

    async def get_by_id(self, appointment_id: str) -> AppointmentResult | None:
        row = await self._get(appointment_id)
        return _to_result(row) if row else None

    async def create(self, data: AppointmentCreate) -> AppointmentResult:
        row = Appointment(owner_id=data.owner_id, credential_id=data.credential_id)
        _apply_fields(row, data)
        return _to_result(await self._add(row))

    async def update_fields(
        self, appointment_id: str, data: AppointmentCreate
    ) -> AppointmentResult:
        row = await self._get_or_raise(appointment_id)
        _apply_fields(row, data)
        return _to_result(await self._save(row))

    async def cancel(self, appointment_id: str) -> None:
        await self.db.execute(
            update(Appointment)
            .where(Appointment.id == appointment_id)
            .values(status=AppointmentStatus.CANCELLED.value)
            .execution_options(synchronize_session=False)
        )

    async def delete(self, appointment_id: str) -> None:
        await self.db.execute(delete(Appointment).where(Appointment.id == appointment_id))

    async def list_export_candidates(
        self, owner_id: str, credential_id: str, provider: Provider, limit: int
    ) -> list[AppointmentResult]:
        mapped = exists().where(
            SyncMapping.record_id == Appointment.id,
            SyncMapping.provider == provider.value,
        )
        stmt = (
            select(Appointment)
            .where(
                Appointment.owner_id == owner_id,
                or_(
                    Appointment.credential_id.is_(None),
                    Appointment.credential_id == credential_id,
                ),
                Appointment.status == AppointmentStatus.SCHEDULED.value,
                ~mapped,
            )
            .order_by(Appointment.start_time)
            .limit(limit)
        )
        return [_to_result(r) for r in (await self.db.execute(stmt)).scalars()]

    async def list_by_owner(self, owner_id: str, limit: int = 100) -> list[AppointmentResult]:
        stmt = (
            select(Appointment)
            .where(Appointment.owner_id == owner_id)
            .order_by(Appointment.start_time.desc())
            .limit(limit)
        )
        return [_to_result(r) for r in (await self.db.execute(stmt)).scalars()]
