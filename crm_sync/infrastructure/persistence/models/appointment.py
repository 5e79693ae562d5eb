"""Internal appointment record."""

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from crm_sync.domain.enums import AppointmentStatus
from crm_sync.infrastructure.persistence.database import Base
from crm_sync.infrastructure.persistence.models.mixins import SyncModel


class Appointment(SyncModel, Base):
    __tablename__ = "appointment"

    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    # Target account; NULL means any account of the owner may export it.
    credential_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("oauth_credential.id", ondelete="SET NULL"), nullable=True
    )
    title: Mapped[str] = mapped_column(String(1024), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    location: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    all_day: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attendees: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=AppointmentStatus.SCHEDULED.value
    )

    __table_args__ = (Index("ix_appointment_owner_start", "owner_id", "start_time"),)
