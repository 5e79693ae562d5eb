"""Sync run: audit record of one reconciliation pass."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from crm_sync.domain.enums import SyncRunStatus
from crm_sync.infrastructure.persistence.database import Base
from crm_sync.infrastructure.persistence.models.mixins import SyncModel


class SyncRun(SyncModel, Base):
    __tablename__ = "sync_run"

    credential_id: Mapped[str] = mapped_column(
        String, ForeignKey("oauth_credential.id", ondelete="CASCADE"), nullable=False
    )
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    trigger: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=SyncRunStatus.RUNNING.value
    )
    imported: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    exported: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deleted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_messages: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_sync_run_credential_started", "credential_id", "started_at"),)
