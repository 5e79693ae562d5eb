"""DTOs for the correlation store."""

from dataclasses import dataclass
from datetime import datetime

from crm_sync.domain.enums import MappingDirection, MappingStatus, Provider, RecordKind

PENDING_EXTERNAL_ID_PREFIX = "pending:"


def pending_external_id(record_id: str) -> str:
    """Placeholder external id held by an export reservation."""
    return f"{PENDING_EXTERNAL_ID_PREFIX}{record_id}"


@dataclass(frozen=True)
class MappingUpsert:
    """Input for create-or-update of a mapping row."""

    credential_id: str
    record_kind: RecordKind
    record_id: str
    provider: Provider
    external_id: str
    direction: MappingDirection
    status: MappingStatus = MappingStatus.SYNCED
    external_etag: str | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class MappingResult:
    id: str
    credential_id: str
    record_kind: RecordKind
    record_id: str
    provider: Provider
    external_id: str
    direction: MappingDirection
    status: MappingStatus
    created_at: datetime
    updated_at: datetime
    external_etag: str | None = None
    last_error: str | None = None
