"""DTOs for the internal appointment and email message records."""

from dataclasses import dataclass
from datetime import datetime

from crm_sync.domain.enums import AppointmentStatus, MessageFolder


@dataclass(frozen=True)
class AppointmentCreate:
    owner_id: str
    title: str
    start_time: datetime
    end_time: datetime
    timezone: str = "UTC"
    description: str = ""
    location: str = ""
    attendees: tuple[str, ...] = ()
    all_day: bool = False
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    credential_id: str | None = None


@dataclass(frozen=True)
class AppointmentResult:
    id: str
    owner_id: str
    title: str
    start_time: datetime
    end_time: datetime
    timezone: str
    description: str
    location: str
    attendees: tuple[str, ...]
    all_day: bool
    status: AppointmentStatus
    created_at: datetime
    updated_at: datetime
    credential_id: str | None = None


@dataclass(frozen=True)
class MessageCreate:
    owner_id: str
    subject: str
    sender: str
    to: tuple[str, ...] = ()
    cc: tuple[str, ...] = ()
    bcc: tuple[str, ...] = ()
    sent_at: datetime | None = None
    body_text: str = ""
    body_html: str = ""
    is_read: bool = False
    is_starred: bool = False
    folder: MessageFolder = MessageFolder.INBOX
    thread_id: str | None = None
    credential_id: str | None = None


@dataclass(frozen=True)
class MessageResult:
    id: str
    owner_id: str
    subject: str
    sender: str
    to: tuple[str, ...]
    cc: tuple[str, ...]
    bcc: tuple[str, ...]
    sent_at: datetime | None
    body_text: str
    body_html: str
    is_read: bool
    is_starred: bool
    folder: MessageFolder
    created_at: datetime
    updated_at: datetime
    thread_id: str | None = None
    credential_id: str | None = None
