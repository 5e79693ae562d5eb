from crm_sync.application.use_cases.sync.run_guard import AccountRunGuard, IRunLock
from crm_sync.application.use_cases.sync.run_sync import SyncLimits, SyncOrchestrator

__all__ = ["AccountRunGuard", "IRunLock", "SyncLimits", "SyncOrchestrator"]
