"""Sync mapping: correlation between an internal record and an external object."""

from sqlalchemy import ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from crm_sync.domain.enums import MappingStatus
from crm_sync.infrastructure.persistence.database import Base
from crm_sync.infrastructure.persistence.models.mixins import SyncModel


class SyncMapping(SyncModel, Base):
    """Unique on (provider, external_id) and on (record_id, provider)."""

    __tablename__ = "sync_mapping"

    credential_id: Mapped[str] = mapped_column(
        String, ForeignKey("oauth_credential.id", ondelete="CASCADE"), nullable=False
    )
    record_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    record_id: Mapped[str] = mapped_column(String, nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    external_id: Mapped[str] = mapped_column(String(1024), nullable=False)
    external_etag: Mapped[str | None] = mapped_column(String(255), nullable=True)
    direction: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=MappingStatus.SYNCED.value
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_sync_mapping_provider_external"),
        UniqueConstraint("record_id", "provider", name="uq_sync_mapping_record_provider"),
        Index("ix_sync_mapping_credential_status", "credential_id", "status"),
    )
