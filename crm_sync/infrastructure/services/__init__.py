"""Background services."""

from crm_sync.infrastructure.services.sync_scheduler import SyncScheduler

__all__ = ["SyncScheduler"]
