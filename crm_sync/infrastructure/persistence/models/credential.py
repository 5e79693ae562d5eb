"""OAuth credential: token material for one connected provider account."""

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from crm_sync.domain.enums import OAuthStatus
from crm_sync.infrastructure.persistence.database import Base
from crm_sync.infrastructure.persistence.models.mixins import SyncModel


class OAuthCredential(SyncModel, Base):
    """One row per (owner_id, provider, email). Tokens are Fernet-encrypted."""

    __tablename__ = "oauth_credential"

    owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    provider_account_id: Mapped[str | None] = mapped_column(String, nullable=True)

    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scopes: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    oauth_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=OAuthStatus.ACTIVE.value
    )
    last_auth_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    token_refresh_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_refreshed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    webhook_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
    webhook_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("owner_id", "provider", "email", name="uq_oauth_credential_owner_provider_email"),
        Index("ix_oauth_credential_provider_account", "provider", "provider_account_id"),
        Index("ix_oauth_credential_provider_subscription", "provider", "webhook_subscription_id"),
    )
