"""Email message repository (internal mailbox records)."""

from datetime import datetime

from sqlalchemy import delete, exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crm_sync.application.dtos.records import MessageCreate, MessageResult
from crm_sync.domain.enums import MessageFolder, Provider
from crm_sync.infrastructure.persistence.models.email_message import EmailMessage
from crm_sync.infrastructure.persistence.models.mapping import SyncMapping
from crm_sync.infrastructure.persistence.repositories.base import BaseRepository
from crm_sync.shared.utils.datetime import ensure_utc


def _to_result(row: EmailMessage) -> MessageResult:
    return MessageResult(
        id=row.id,
        owner_id=row.owner_id,
        credential_id=row.credential_id,
        thread_id=row.thread_id,
        subject=row.subject,
        sender=row.sender,
        to=tuple(row.to_addresses or ()),
        cc=tuple(row.cc_addresses or ()),
        bcc=tuple(row.bcc_addresses or ()),
        sent_at=ensure_utc(row.sent_at),
        body_text=row.body_text,
        body_html=row.body_html,
        is_read=row.is_read,
        is_starred=row.is_starred,
        folder=MessageFolder(row.folder),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _apply_fields(row: EmailMessage, data: MessageCreate) -> None:
    row.thread_id = data.thread_id
    row.subject = data.subject
    row.sender = data.sender
    row.to_addresses = list(data.to)
    row.cc_addresses = list(data.cc)
    row.bcc_addresses = list(data.bcc)
    row.sent_at = data.sent_at
    row.body_text = data.body_text
    row.body_html = data.body_html
    row.is_read = data.is_read
    row.is_starred = data.is_starred
    row.folder = data.folder.value


class MessageRepository(BaseRepository[EmailMessage]):
    def __init__(self, db: AsyncSession) -> None:
        super().__init__(db, EmailMessage)

    async def get_by_id(self, message_id: str) -> MessageResult | None:
        row = await self._get(message_id)
        return _to_result(row) if row else None

    async def create(self, data: MessageCreate) -> MessageResult:
        row = EmailMessage(owner_id=data.owner_id, credential_id=data.credential_id)
        _apply_fields(row, data)
        return _to_result(await self._add(row))

    async def update_fields(self, message_id: str, data: MessageCreate) -> MessageResult:
        row = await self._get_or_raise(message_id)
        _apply_fields(row, data)
        return _to_result(await self._save(row))

    async def delete(self, message_id: str) -> None:
        await self.db.execute(delete(EmailMessage).where(EmailMessage.id == message_id))

    async def mark_sent(self, message_id: str, sent_at: datetime) -> None:
        await self.db.execute(
            update(EmailMessage)
            .where(EmailMessage.id == message_id)
            .values(folder=MessageFolder.SENT.value, sent_at=sent_at)
            .execution_options(synchronize_session=False)
        )

    async def list_export_candidates(
        self, credential_id: str, provider: Provider, limit: int
    ) -> list[MessageResult]:
        mapped = exists().where(
            SyncMapping.record_id == EmailMessage.id,
            SyncMapping.provider == provider.value,
        )
        stmt = (
            select(EmailMessage)
            .where(
                EmailMessage.credential_id == credential_id,
                EmailMessage.folder == MessageFolder.OUTBOX.value,
                ~mapped,
            )
            .order_by(EmailMessage.created_at)
            .limit(limit)
        )
        return [_to_result(r) for r in (await self.db.execute(stmt)).scalars()]

    async def list_by_owner(self, owner_id: str, limit: int = 100) -> list[MessageResult]:
        stmt = (
            select(EmailMessage)
            .where(EmailMessage.owner_id == owner_id)
            .order_by(EmailMessage.created_at.desc())
            .limit(limit)
        )
        return [_to_result(r) for r in (await self.db.execute(stmt)).scalars()]
