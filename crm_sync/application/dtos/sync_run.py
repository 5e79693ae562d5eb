"""DTOs for sync run bookkeeping."""

from dataclasses import dataclass, field
from datetime import datetime

from crm_sync.domain.enums import SyncDirection, SyncRunStatus, SyncTrigger

MAX_ERROR_MESSAGE_LENGTH = 500


@dataclass
class SyncCounters:
    """Mutable tallies accumulated during one pass.

    Lives outside the pass coroutine so counts survive a wall-clock abort.
    """

    max_errors: int
    imported: int = 0
    exported: int = 0
    updated: int = 0
    deleted: int = 0
    errors: int = 0
    error_messages: list[str] = field(default_factory=list)

    def record_error(self, message: str) -> None:
        """Count an error; keep at most ``max_errors`` messages, each truncated."""
        self.errors += 1
        if len(self.error_messages) < self.max_errors:
            self.error_messages.append(message[:MAX_ERROR_MESSAGE_LENGTH])


@dataclass(frozen=True)
class SyncRunResult:
    id: str
    credential_id: str
    direction: SyncDirection
    trigger: SyncTrigger
    status: SyncRunStatus
    started_at: datetime
    imported: int = 0
    exported: int = 0
    updated: int = 0
    deleted: int = 0
    errors: int = 0
    error_messages: tuple[str, ...] = ()
    completed_at: datetime | None = None
