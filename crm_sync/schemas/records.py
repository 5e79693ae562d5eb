"""Internal appointment and message API schemas."""

from datetime import datetime
from typing import Self

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from crm_sync.domain.enums import AppointmentStatus, MessageFolder


class AppointmentCreateRequest(BaseModel):
    """Request body for POST /appointments.

    Without ``credential_id`` the next sync of any of the owner's accounts
    exports it.
    """

    owner_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=1024)
    start_time: datetime
    end_time: datetime
    timezone: str = "UTC"
    description: str = ""
    location: str = Field(default="", max_length=1024)
    attendees: list[EmailStr] = Field(default_factory=list)
    all_day: bool = False
    credential_id: str | None = None

    @model_validator(mode="after")
    def _check_range(self) -> Self:
        if self.start_time.tzinfo is None or self.end_time.tzinfo is None:
            raise ValueError("start_time and end_time must include a UTC offset")
        if self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self


class AppointmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    credential_id: str | None = None
    title: str
    start_time: datetime
    end_time: datetime
    timezone: str
    description: str
    location: str
    attendees: list[str]
    all_day: bool
    status: AppointmentStatus
    created_at: datetime
    updated_at: datetime


class MessageCreateRequest(BaseModel):
    """Request body for POST /messages: queue an outbound message on an account."""

    credential_id: str = Field(..., min_length=1)
    subject: str = ""
    to: list[EmailStr] = Field(..., min_length=1)
    cc: list[EmailStr] = Field(default_factory=list)
    bcc: list[EmailStr] = Field(default_factory=list)
    body_text: str = ""
    body_html: str = ""


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    credential_id: str | None = None
    thread_id: str | None = None
    subject: str
    sender: str
    to: list[str]
    cc: list[str]
    bcc: list[str]
    sent_at: datetime | None = None
    body_text: str
    body_html: str
    is_read: bool
    is_starred: bool
    folder: MessageFolder
    created_at: datetime
    updated_at: datetime
