"""Provider-agnostic shapes produced and consumed by provider adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Generic, TypeVar

from crm_sync.domain.enums import MessageFolder

T = TypeVar("T")


@dataclass(frozen=True)
class CanonicalEvent:
    """Calendar event in provider-neutral form. Times are UTC-aware."""

    title: str
    start: datetime
    end: datetime
    timezone: str = "UTC"
    description: str = ""
    location: str = ""
    attendees: tuple[str, ...] = ()
    cancelled: bool = False
    all_day: bool = False
    external_id: str | None = None
    etag: str | None = None

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("event times must be timezone-aware")
        if self.end < self.start:
            raise ValueError("event ends before it starts")


@dataclass(frozen=True)
class CanonicalMessage:
    """Email message in provider-neutral form."""

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
    external_id: str | None = None
    thread_id: str | None = None

    def __post_init__(self) -> None:
        if self.sent_at is not None and self.sent_at.tzinfo is None:
            raise ValueError("sent_at must be timezone-aware")


CanonicalObject = CanonicalEvent | CanonicalMessage


@dataclass(frozen=True)
class TimeWindow:
    """Half-open [start, end) window used to bound event listing."""

    start: datetime
    end: datetime

    @classmethod
    def around(cls, now: datetime, days_back: int, days_forward: int) -> TimeWindow:
        return cls(start=now - timedelta(days=days_back), end=now + timedelta(days=days_forward))


@dataclass(frozen=True)
class Decoded(Generic[T]):
    """One item of a remote listing: a decoded value or the error that prevented it.

    Listings yield these so a single malformed object does not end the
    sequence; ``unwrap`` re-raises the per-object error at the consumer.
    """

    external_id: str | None
    value: T | None = None
    error: Exception | None = field(default=None, compare=False)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        assert self.value is not None
        return self.value
