"""SQLAlchemy repositories returning application DTOs."""

from crm_sync.infrastructure.persistence.repositories.appointment_repo import (
    AppointmentRepository,
)
from crm_sync.infrastructure.persistence.repositories.credential_repo import (
    CredentialRepository,
)
from crm_sync.infrastructure.persistence.repositories.mapping_repo import MappingRepository
from crm_sync.infrastructure.persistence.repositories.message_repo import MessageRepository
from crm_sync.infrastructure.persistence.repositories.sync_run_repo import SyncRunRepository

__all__ = [
    "AppointmentRepository",
    "CredentialRepository",
    "MappingRepository",
    "MessageRepository",
    "SyncRunRepository",
]
