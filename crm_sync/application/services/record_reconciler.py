"""Record reconciler: the single place where mappings and internal records change.

Import of a remote object runs an explicit state machine
(LOOKUP -> CREATE -> RESOLVE_CONFLICT -> FALLBACK) instead of nested
exception handling; every path ends in a ReconcileResult. Export reserves
the (record, provider) pair with a pending mapping before calling the
provider, so the same record is never exported twice.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from crm_sync.application.dtos.credential import CredentialResult
from crm_sync.application.dtos.mapping import (
    MappingResult,
    MappingUpsert,
    pending_external_id,
)
from crm_sync.application.dtos.records import (
    AppointmentCreate,
    AppointmentResult,
    MessageCreate,
    MessageResult,
)
from crm_sync.application.interfaces.repositories import (
    IAppointmentRepository,
    IMappingRepository,
    IMessageRepository,
    IUnitOfWork,
)
from crm_sync.application.services.keyed_locks import KeyedLocks
from crm_sync.domain.canonical import CanonicalEvent, CanonicalMessage, CanonicalObject
from crm_sync.domain.enums import (
    AppointmentStatus,
    MappingDirection,
    MappingStatus,
    Provider,
    RecordKind,
)
from crm_sync.domain.exceptions import MappingConflictException, ProviderApiError
from crm_sync.shared.telemetry.logging import get_logger
from crm_sync.shared.utils.datetime import utc_now

logger = get_logger(__name__)


class ReconcileOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    CONVERGED = "converged"
    EXPORTED = "exported"
    DELETED = "deleted"
    SKIPPED = "skipped"
    FAILED = "failed"


class _ImportState(Enum):
    LOOKUP = "lookup"
    CREATE = "create"
    RESOLVE_CONFLICT = "resolve_conflict"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    record_id: str | None = None
    mapping: MappingResult | None = None
    error: Exception | None = None

    @property
    def failed(self) -> bool:
        return self.outcome is ReconcileOutcome.FAILED


def kind_of(obj: CanonicalObject) -> RecordKind:
    return RecordKind.APPOINTMENT if isinstance(obj, CanonicalEvent) else RecordKind.MESSAGE


def appointment_from_event(
    event: CanonicalEvent, *, owner_id: str, credential_id: str | None
) -> AppointmentCreate:
    return AppointmentCreate(
        owner_id=owner_id,
        credential_id=credential_id,
        title=event.title,
        start_time=event.start,
        end_time=event.end,
        timezone=event.timezone,
        description=event.description,
        location=event.location,
        attendees=event.attendees,
        all_day=event.all_day,
        status=AppointmentStatus.CANCELLED if event.cancelled else AppointmentStatus.SCHEDULED,
    )


def message_from_canonical(
    message: CanonicalMessage, *, owner_id: str, credential_id: str | None
) -> MessageCreate:
    return MessageCreate(
        owner_id=owner_id,
        credential_id=credential_id,
        subject=message.subject,
        sender=message.sender,
        to=message.to,
        cc=message.cc,
        bcc=message.bcc,
        sent_at=message.sent_at,
        body_text=message.body_text,
        body_html=message.body_html,
        is_read=message.is_read,
        is_starred=message.is_starred,
        folder=message.folder,
        thread_id=message.thread_id,
    )


def event_from_appointment(appointment: AppointmentResult) -> CanonicalEvent:
    return CanonicalEvent(
        title=appointment.title,
        start=appointment.start_time,
        end=appointment.end_time,
        timezone=appointment.timezone,
        description=appointment.description,
        location=appointment.location,
        attendees=appointment.attendees,
        all_day=appointment.all_day,
    )


def canonical_from_message(message: MessageResult, sender: str) -> CanonicalMessage:
    return CanonicalMessage(
        subject=message.subject,
        sender=message.sender or sender,
        to=message.to,
        cc=message.cc,
        bcc=message.bcc,
        body_text=message.body_text,
        body_html=message.body_html,
        folder=message.folder,
        thread_id=message.thread_id,
    )


class RecordReconciler:
    """Applies remote objects to internal records through the correlation store.

    Callers own the outer transaction and commit after each result; the
    reconciler only commits export reservations so other processes see them
    before the provider is called.
    """

    def __init__(
        self,
        mappings: IMappingRepository,
        appointments: IAppointmentRepository,
        messages: IMessageRepository,
        uow: IUnitOfWork,
        locks: KeyedLocks,
        *,
        max_attempts: int = 3,
    ) -> None:
        self._mappings = mappings
        self._appointments = appointments
        self._messages = messages
        self._uow = uow
        self._locks = locks
        self._max_attempts = max_attempts

    # ---- import ----

    async def apply_import(
        self, credential: CredentialResult, obj: CanonicalObject
    ) -> ReconcileResult:
        """Create or update the internal record mirroring ``obj``."""
        provider = credential.provider
        external_id = obj.external_id
        if not external_id:
            return ReconcileResult(
                ReconcileOutcome.FAILED,
                error=ProviderApiError.malformed(provider.value, "import", "object has no id"),
            )

        async with self._locks.hold((provider, external_id)):
            state = _ImportState.LOOKUP
            attempts = 0
            conflict: MappingConflictException | None = None
            while True:
                if state is _ImportState.LOOKUP:
                    mapping = await self._mappings.find_by_external_id(provider, external_id)
                    if mapping is None:
                        state = _ImportState.CREATE
                        continue
                    result = await self._apply_to_existing(mapping, obj, ReconcileOutcome.UPDATED)
                    if result is not None:
                        return result
                    # record vanished internally; mapping dropped, recreate both
                    state = _ImportState.CREATE

                elif state is _ImportState.CREATE:
                    if isinstance(obj, CanonicalEvent) and obj.cancelled:
                        return ReconcileResult(ReconcileOutcome.SKIPPED)
                    attempts += 1
                    try:
                        return await self._create_from_remote(credential, obj, external_id)
                    except MappingConflictException as exc:
                        conflict = exc
                        state = _ImportState.RESOLVE_CONFLICT

                elif state is _ImportState.RESOLVE_CONFLICT:
                    mapping = await self._mappings.find_by_external_id(provider, external_id)
                    if mapping is not None:
                        result = await self._apply_to_existing(
                            mapping, obj, ReconcileOutcome.CONVERGED
                        )
                        if result is not None:
                            return result
                    state = (
                        _ImportState.CREATE
                        if attempts < self._max_attempts
                        else _ImportState.FALLBACK
                    )

                else:
                    logger.warning(
                        "Giving up on %s %s after %d conflicting attempts",
                        provider.value,
                        external_id,
                        attempts,
                    )
                    return ReconcileResult(ReconcileOutcome.FAILED, error=conflict)

    async def _apply_to_existing(
        self,
        mapping: MappingResult,
        obj: CanonicalObject,
        outcome: ReconcileOutcome,
    ) -> ReconcileResult | None:
        """Update the mapped record in place. None if the record no longer exists."""
        if isinstance(obj, CanonicalEvent):
            existing = await self._appointments.get_by_id(mapping.record_id)
        else:
            existing = await self._messages.get_by_id(mapping.record_id)
        if existing is None:
            await self._mappings.delete(mapping.id)
            return None

        async with self._uow.savepoint():
            if isinstance(obj, CanonicalEvent) and obj.cancelled:
                await self._appointments.cancel(mapping.record_id)
                await self._mappings.delete(mapping.id)
                return ReconcileResult(ReconcileOutcome.DELETED, mapping.record_id)
            if isinstance(obj, CanonicalEvent):
                fields = appointment_from_event(
                    obj, owner_id=existing.owner_id, credential_id=existing.credential_id
                )
                await self._appointments.update_fields(mapping.record_id, fields)
            else:
                fields = message_from_canonical(
                    obj, owner_id=existing.owner_id, credential_id=existing.credential_id
                )
                await self._messages.update_fields(mapping.record_id, fields)
            refreshed = await self._mappings.upsert(
                MappingUpsert(
                    credential_id=mapping.credential_id,
                    record_kind=mapping.record_kind,
                    record_id=mapping.record_id,
                    provider=mapping.provider,
                    external_id=mapping.external_id,
                    direction=mapping.direction,
                    status=MappingStatus.SYNCED,
                    external_etag=getattr(obj, "etag", None) or mapping.external_etag,
                )
            )
        return ReconcileResult(outcome, mapping.record_id, refreshed)

    async def _create_from_remote(
        self, credential: CredentialResult, obj: CanonicalObject, external_id: str
    ) -> ReconcileResult:
        async with self._uow.savepoint():
            if isinstance(obj, CanonicalEvent):
                record_id = (
                    await self._appointments.create(
                        appointment_from_event(
                            obj, owner_id=credential.owner_id, credential_id=credential.id
                        )
                    )
                ).id
            else:
                record_id = (
                    await self._messages.create(
                        message_from_canonical(
                            obj, owner_id=credential.owner_id, credential_id=credential.id
                        )
                    )
                ).id
            mapping = await self._mappings.upsert(
                MappingUpsert(
                    credential_id=credential.id,
                    record_kind=kind_of(obj),
                    record_id=record_id,
                    provider=credential.provider,
                    external_id=external_id,
                    direction=MappingDirection.EXTERNAL_TO_INTERNAL,
                    status=MappingStatus.SYNCED,
                    external_etag=getattr(obj, "etag", None),
                )
            )
        return ReconcileResult(ReconcileOutcome.CREATED, record_id, mapping)

    # ---- deletion ----

    async def apply_deletion(
        self, credential: CredentialResult, kind: RecordKind, external_id: str
    ) -> ReconcileResult:
        """Mirror a confirmed remote deletion. Unknown external ids are a no-op."""
        provider = credential.provider
        async with self._locks.hold((provider, external_id)):
            mapping = await self._mappings.find_by_external_id(provider, external_id)
            if mapping is None:
                return ReconcileResult(ReconcileOutcome.SKIPPED)
            async with self._uow.savepoint():
                if mapping.record_kind is RecordKind.APPOINTMENT:
                    if await self._appointments.get_by_id(mapping.record_id) is not None:
                        await self._appointments.cancel(mapping.record_id)
                else:
                    await self._messages.delete(mapping.record_id)
                await self._mappings.delete(mapping.id)
        logger.info(
            "Applied remote deletion of %s %s (record %s)",
            kind.value,
            external_id,
            mapping.record_id,
        )
        return ReconcileResult(ReconcileOutcome.DELETED, mapping.record_id)

    # ---- export ----

    async def apply_export(
        self,
        credential: CredentialResult,
        kind: RecordKind,
        record_id: str,
        create_remote: Callable[[], Awaitable[str]],
    ) -> ReconcileResult:
        """Export one internal record unless it is already mapped or reserved.

        Provider failures release the reservation so a later pass retries;
        they are never retried here.
        """
        provider = credential.provider
        async with self._locks.hold((record_id, provider)):
            if await self._mappings.find_by_internal_id(record_id, provider) is not None:
                return ReconcileResult(ReconcileOutcome.SKIPPED, record_id)
            try:
                async with self._uow.savepoint():
                    reservation = await self._mappings.upsert(
                        MappingUpsert(
                            credential_id=credential.id,
                            record_kind=kind,
                            record_id=record_id,
                            provider=provider,
                            external_id=pending_external_id(record_id),
                            direction=MappingDirection.INTERNAL_TO_EXTERNAL,
                            status=MappingStatus.PENDING,
                        )
                    )
            except MappingConflictException:
                return ReconcileResult(ReconcileOutcome.SKIPPED, record_id)
            await self._uow.commit()

            try:
                external_id = await create_remote()
            except ProviderApiError as exc:
                await self._mappings.delete(reservation.id)
                await self._uow.commit()
                return ReconcileResult(ReconcileOutcome.FAILED, record_id, error=exc)

            async with self._locks.hold((provider, external_id)):
                mapping = await self._promote(reservation, external_id)
            if kind is RecordKind.MESSAGE:
                await self._messages.mark_sent(record_id, utc_now())
        return ReconcileResult(ReconcileOutcome.EXPORTED, record_id, mapping)

    async def _promote(self, reservation: MappingResult, external_id: str) -> MappingResult:
        """Swap the placeholder for the real id.

        If a webhook already imported the new remote object as a separate
        record, that duplicate is removed and the exported record wins.
        """
        duplicate = await self._mappings.find_by_external_id(reservation.provider, external_id)
        if duplicate is not None and duplicate.record_id != reservation.record_id:
            logger.info(
                "Dropping record %s imported from our own export %s",
                duplicate.record_id,
                external_id,
            )
            async with self._uow.savepoint():
                if duplicate.record_kind is RecordKind.APPOINTMENT:
                    await self._appointments.delete(duplicate.record_id)
                else:
                    await self._messages.delete(duplicate.record_id)
                await self._mappings.delete(duplicate.id)
        async with self._uow.savepoint():
            return await self._mappings.replace_external_id(reservation.id, external_id, None)
