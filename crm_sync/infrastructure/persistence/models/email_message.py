"""Internal email message record."""

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from crm_sync.domain.enums import MessageFolder
from crm_sync.infrastructure.persistence.database import Base
from crm_sync.infrastructure.persistence.models.mixins import SyncModel


class EmailMessage(SyncModel, Base):
    __tablename__ = "email_message"

    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    credential_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("oauth_credential.id", ondelete="SET NULL"), nullable=True
    )
    thread_id: Mapped[str | None] = mapped_column(String, nullable=True)
    subject: Mapped[str] = mapped_column(Text, nullable=False, default="")
    sender: Mapped[str] = mapped_column(String(320), nullable=False, default="")
    to_addresses: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    cc_addresses: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    bcc_addresses: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    body_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    body_html: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_starred: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    folder: Mapped[str] = mapped_column(
        String(16), nullable=False, default=MessageFolder.INBOX.value
    )

    __table_args__ = (
        Index("ix_email_message_owner_sent", "owner_id", "sent_at"),
        Index("ix_email_message_credential_folder", "credential_id", "folder"),
    )
