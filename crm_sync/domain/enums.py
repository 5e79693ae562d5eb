"""Domain enums stored as strings in the database and API."""

from enum import Enum


class _ValuesMixin:
    """Provides values() for str enums."""

    @classmethod
    def values(cls) -> list[str]:
        return [m.value for m in cls]  # type: ignore[attr-defined]


class Provider(_ValuesMixin, str, Enum):
    """External account providers."""

    GOOGLE = "google"
    MICROSOFT = "microsoft"
    NYLAS = "nylas"


class RecordKind(_ValuesMixin, str, Enum):
    """Kind of internal record a mapping points to."""

    APPOINTMENT = "appointment"
    MESSAGE = "message"


class SyncDirection(_ValuesMixin, str, Enum):
    """Direction requested for a sync pass."""

    IMPORT = "import"
    EXPORT = "export"
    BIDIRECTIONAL = "bidirectional"

    @property
    def imports(self) -> bool:
        return self in (SyncDirection.IMPORT, SyncDirection.BIDIRECTIONAL)

    @property
    def exports(self) -> bool:
        return self in (SyncDirection.EXPORT, SyncDirection.BIDIRECTIONAL)


class SyncTrigger(_ValuesMixin, str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class MappingDirection(_ValuesMixin, str, Enum):
    """Which side a record came from when its mapping was created."""

    EXTERNAL_TO_INTERNAL = "external_to_internal"
    INTERNAL_TO_EXTERNAL = "internal_to_external"


class MappingStatus(_ValuesMixin, str, Enum):
    """Mapping state. PENDING is an export reservation awaiting the remote id."""

    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class SyncRunStatus(_ValuesMixin, str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class OAuthStatus(_ValuesMixin, str, Enum):
    """Health of a credential's token material."""

    ACTIVE = "active"
    REFRESH_FAILED = "refresh_failed"
    REAUTH_REQUIRED = "reauth_required"


class ChangeType(_ValuesMixin, str, Enum):
    """Change type carried by a webhook delta."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class AppointmentStatus(_ValuesMixin, str, Enum):
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"


class MessageFolder(_ValuesMixin, str, Enum):
    """Folder of an internal email message. OUTBOX marks messages awaiting export."""

    INBOX = "inbox"
    SENT = "sent"
    TRASH = "trash"
    SPAM = "spam"
    OUTBOX = "outbox"
