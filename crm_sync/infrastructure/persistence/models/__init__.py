"""ORM models. Importing this package registers every table on Base.metadata."""

from crm_sync.infrastructure.persistence.models.appointment import Appointment
from crm_sync.infrastructure.persistence.models.credential import OAuthCredential
from crm_sync.infrastructure.persistence.models.email_message import EmailMessage
from crm_sync.infrastructure.persistence.models.mapping import SyncMapping
from crm_sync.infrastructure.persistence.models.sync_run import SyncRun

__all__ = ["Appointment", "EmailMessage", "OAuthCredential", "SyncMapping", "SyncRun"]
