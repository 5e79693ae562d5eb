"""Sync run API schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from crm_sync.domain.enums import SyncDirection, SyncRunStatus, SyncTrigger


class SyncRunResponse(BaseModel):
    """One reconciliation pass with its counters."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    credential_id: str
    direction: SyncDirection
    trigger: SyncTrigger
    status: SyncRunStatus
    started_at: datetime
    completed_at: datetime | None = None
    imported: int
    exported: int
    updated: int
    deleted: int
    errors: int
    error_messages: list[str]
