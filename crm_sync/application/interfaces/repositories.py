"""Repository interfaces (ports) for the application layer.

Protocols define the contracts the SQLAlchemy repositories (and the
in-memory test doubles) fulfill. Types reference application DTOs only.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from crm_sync.domain.enums import OAuthStatus, Provider

if TYPE_CHECKING:
    from crm_sync.application.dtos.credential import (
        CredentialCreate,
        CredentialKey,
        CredentialResult,
        TokenUpdate,
    )
    from crm_sync.application.dtos.mapping import MappingResult, MappingUpsert
    from crm_sync.application.dtos.records import (
        AppointmentCreate,
        AppointmentResult,
        MessageCreate,
        MessageResult,
    )
    from crm_sync.application.dtos.sync_run import SyncCounters, SyncRunResult
    from crm_sync.domain.enums import SyncDirection, SyncRunStatus, SyncTrigger


class IUnitOfWork(Protocol):
    """Transaction boundary shared by the repositories of one session."""

    def savepoint(self) -> AbstractAsyncContextManager[None]:
        """Nested transaction; rolled back if the block raises."""

    async def commit(self) -> None:
        """Commit the outer transaction."""

    async def rollback(self) -> None:
        """Roll back the outer transaction."""


class ICredentialRepository(Protocol):
    """Credential store: one row per (owner, provider, email)."""

    async def get_by_id(self, credential_id: str) -> CredentialResult | None:
        """Return the credential or None."""

    async def get_by_key(
        self, key: CredentialKey, *, for_update: bool = False
    ) -> CredentialResult | None:
        """Return the credential for the key; ``for_update`` takes a row lock."""

    async def get_by_account_ref(
        self, provider: Provider, account_ref: str
    ) -> CredentialResult | None:
        """Resolve by provider account id or webhook subscription id."""

    async def list_by_owner(self, owner_id: str) -> list[CredentialResult]:
        """Return all credentials of an owner."""

    async def list_syncable(self) -> list[CredentialResult]:
        """Return active credentials not marked reauth_required."""

    async def upsert(self, data: CredentialCreate) -> CredentialResult:
        """Create, or replace token material in place for an existing key."""

    async def update_tokens(
        self, credential_id: str, update: TokenUpdate, refreshed_at: datetime
    ) -> CredentialResult:
        """Atomically overwrite token material unless a newer expiry is stored."""

    async def mark_refresh_failed(
        self, credential_id: str, status: OAuthStatus, error: str
    ) -> CredentialResult:
        """Record a refresh failure without touching token material."""

    async def set_last_sync(self, credential_id: str, at: datetime) -> None:
        """Set last_sync_at."""

    async def set_webhook_subscription(
        self,
        credential_id: str,
        subscription_id: str,
        expires_at: datetime | None,
        account_ref: str | None = None,
    ) -> CredentialResult:
        """Store the provider webhook subscription and the account ref it reports."""


class IMappingRepository(Protocol):
    """Correlation store between internal records and external objects."""

    async def find_by_external_id(
        self, provider: Provider, external_id: str
    ) -> MappingResult | None:
        """Return the mapping for the external object or None."""

    async def find_by_internal_id(
        self, record_id: str, provider: Provider
    ) -> MappingResult | None:
        """Return the mapping for the internal record on this provider or None."""

    async def upsert(self, data: MappingUpsert) -> MappingResult:
        """Create-or-update; raises MappingConflictException on a uniqueness clash."""

    async def replace_external_id(
        self, mapping_id: str, external_id: str, etag: str | None
    ) -> MappingResult:
        """Promote a pending reservation to synced with the real external id."""

    async def delete(self, mapping_id: str) -> None:
        """Delete the mapping row (no-op if already gone)."""

    async def delete_pending_older_than(
        self, credential_id: str, cutoff: datetime
    ) -> int:
        """Drop stale export reservations; return how many were removed."""


class IAppointmentRepository(Protocol):
    async def get_by_id(self, appointment_id: str) -> AppointmentResult | None:
        """Return the appointment or None."""

    async def create(self, data: AppointmentCreate) -> AppointmentResult:
        """Insert an appointment."""

    async def update_fields(
        self, appointment_id: str, data: AppointmentCreate
    ) -> AppointmentResult:
        """Overwrite content fields; owner and credential are never changed."""

    async def cancel(self, appointment_id: str) -> None:
        """Set status to cancelled."""

    async def delete(self, appointment_id: str) -> None:
        """Hard-delete the appointment."""

    async def list_export_candidates(
        self, owner_id: str, credential_id: str, provider: Provider, limit: int
    ) -> list[AppointmentResult]:
        """Scheduled appointments of the owner with no mapping on this provider."""

    async def list_by_owner(self, owner_id: str, limit: int = 100) -> list[AppointmentResult]:
        """Newest-first appointments of an owner."""


class IMessageRepository(Protocol):
    async def get_by_id(self, message_id: str) -> MessageResult | None:
        """Return the message or None."""

    async def create(self, data: MessageCreate) -> MessageResult:
        """Insert a message."""

    async def update_fields(self, message_id: str, data: MessageCreate) -> MessageResult:
        """Overwrite content fields; owner and credential are never changed."""

    async def delete(self, message_id: str) -> None:
        """Hard-delete the message."""

    async def mark_sent(self, message_id: str, sent_at: datetime) -> None:
        """Move an exported outbox message to the sent folder."""

    async def list_export_candidates(
        self, credential_id: str, provider: Provider, limit: int
    ) -> list[MessageResult]:
        """Outbox messages targeted at the account with no mapping on this provider."""

    async def list_by_owner(self, owner_id: str, limit: int = 100) -> list[MessageResult]:
        """Newest-first messages of an owner."""


class ISyncRunRepository(Protocol):
    async def start(
        self, credential_id: str, direction: SyncDirection, trigger: SyncTrigger
    ) -> SyncRunResult:
        """Insert a running sync run."""

    async def finalize(
        self, run_id: str, status: SyncRunStatus, counters: SyncCounters, completed_at: datetime
    ) -> SyncRunResult:
        """Write final counts; only a running row can be finalized."""

    async def list_for_credential(
        self, credential_id: str, limit: int = 20
    ) -> list[SyncRunResult]:
        """Newest-first history for an account."""
