"""In-memory repository doubles sharing one transactional store.

``InMemoryStore`` keeps a committed snapshot; ``rollback`` restores it and
``savepoint`` restores the state at block entry when the block raises, the
way a SQL session behaves for the use cases under test.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from itertools import count
from types import SimpleNamespace
from typing import Any

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
from crm_sync.application.services.single_flight import SingleFlight
from crm_sync.application.services.token_manager import TokenRefreshManager
from crm_sync.application.use_cases.accounts import AccountConnector
from crm_sync.domain.canonical import (
    CanonicalEvent,
    CanonicalMessage,
    CanonicalObject,
    Decoded,
    TimeWindow,
)
from crm_sync.domain.enums import (
    AppointmentStatus,
    MappingStatus,
    MessageFolder,
    OAuthStatus,
    Provider,
    RecordKind,
    SyncDirection,
    SyncRunStatus,
    SyncTrigger,
)
from crm_sync.domain.exceptions import (
    MappingConflictException,
    ProviderApiError,
    ResourceNotFoundException,
)
from crm_sync.shared.utils.datetime import utc_now

_TABLES = ("credentials", "mappings", "appointments", "messages", "sync_runs")


class InMemoryStore:
    def __init__(self) -> None:
        self.tables: dict[str, dict[str, Any]] = {name: {} for name in _TABLES}
        self._committed = self._snapshot()
        self._ids = count(1)
        self.commits = 0
        self.rollbacks = 0

    def next_id(self, prefix: str) -> str:
        return f"{prefix}{next(self._ids)}"

    def _snapshot(self) -> dict[str, dict[str, Any]]:
        return {name: dict(rows) for name, rows in self.tables.items()}

    def restore(self, snapshot: dict[str, dict[str, Any]]) -> None:
        for name, rows in snapshot.items():
            self.tables[name].clear()
            self.tables[name].update(rows)

    def savepoint_state(self) -> dict[str, dict[str, Any]]:
        return self._snapshot()

    def checkpoint(self) -> None:
        self._committed = self._snapshot()

    def revert(self) -> None:
        self.restore(self._committed)


class InMemoryUnitOfWork:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        snapshot = self.store.savepoint_state()
        try:
            yield
        except BaseException:
            self.store.restore(snapshot)
            raise

    async def commit(self) -> None:
        self.store.checkpoint()
        self.store.commits += 1

    async def rollback(self) -> None:
        self.store.revert()
        self.store.rollbacks += 1


class InMemoryCredentialRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self._rows: dict[str, CredentialResult] = store.tables["credentials"]
        self._store = store
        self.for_update_reads = 0

    def add(self, credential: CredentialResult) -> CredentialResult:
        self._rows[credential.id] = credential
        return credential

    async def get_by_id(self, credential_id: str) -> CredentialResult | None:
        return self._rows.get(credential_id)

    async def get_by_key(
        self, key: CredentialKey, *, for_update: bool = False
    ) -> CredentialResult | None:
        if for_update:
            self.for_update_reads += 1
        return next((c for c in self._rows.values() if c.key == key), None)

    async def get_by_account_ref(
        self, provider: Provider, account_ref: str
    ) -> CredentialResult | None:
        for c in self._rows.values():
            if c.provider == provider and c.is_active and account_ref in (
                c.provider_account_id,
                c.webhook_subscription_id,
            ):
                return c
        return None

    async def list_by_owner(self, owner_id: str) -> list[CredentialResult]:
        return [c for c in self._rows.values() if c.owner_id == owner_id]

    async def list_syncable(self) -> list[CredentialResult]:
        return [
            c
            for c in self._rows.values()
            if c.is_active and c.oauth_status != OAuthStatus.REAUTH_REQUIRED
        ]

    async def upsert(self, data: CredentialCreate) -> CredentialResult:
        key = CredentialKey(data.owner_id, data.provider, data.email)
        existing = await self.get_by_key(key)
        fields = dict(
            access_token=data.access_token,
            expires_at=data.expires_at,
            scopes=tuple(data.scopes),
            oauth_status=OAuthStatus.ACTIVE,
            last_auth_error=None,
            refresh_failure_count=0,
            is_active=True,
            updated_at=utc_now(),
        )
        if data.refresh_token:
            fields["refresh_token"] = data.refresh_token
        if data.provider_account_id:
            fields["provider_account_id"] = data.provider_account_id
        if existing is not None:
            return self.add(replace(existing, **fields))
        fields.setdefault("refresh_token", None)
        fields.setdefault("provider_account_id", None)
        return self.add(
            CredentialResult(
                id=self._store.next_id("cred"),
                owner_id=data.owner_id,
                provider=data.provider,
                email=data.email,
                **fields,
            )
        )

    async def update_tokens(
        self, credential_id: str, update: TokenUpdate, refreshed_at: datetime
    ) -> CredentialResult:
        row = self._rows[credential_id]
        if row.expires_at > update.expires_at:
            return row
        return self.add(
            replace(
                row,
                access_token=update.access_token,
                refresh_token=update.refresh_token or row.refresh_token,
                expires_at=update.expires_at,
                scopes=update.scopes or row.scopes,
                oauth_status=OAuthStatus.ACTIVE,
                last_auth_error=None,
                refresh_failure_count=0,
                token_refresh_count=row.token_refresh_count + 1,
                last_refreshed_at=refreshed_at,
            )
        )

    async def mark_refresh_failed(
        self, credential_id: str, status: OAuthStatus, error: str
    ) -> CredentialResult:
        row = self._rows[credential_id]
        return self.add(
            replace(
                row,
                oauth_status=status,
                last_auth_error=error,
                refresh_failure_count=row.refresh_failure_count + 1,
            )
        )

    async def set_last_sync(self, credential_id: str, at: datetime) -> None:
        self.add(replace(self._rows[credential_id], last_sync_at=at))

    async def set_webhook_subscription(
        self,
        credential_id: str,
        subscription_id: str,
        expires_at: datetime | None,
        account_ref: str | None = None,
    ) -> CredentialResult:
        row = self._rows.get(credential_id)
        if row is None:
            raise ResourceNotFoundException("OAuthCredential", credential_id)
        if account_ref:
            row = replace(row, provider_account_id=account_ref)
        return self.add(
            replace(row, webhook_subscription_id=subscription_id, webhook_expires_at=expires_at)
        )


class InMemoryMappingRepository:
    """Enforces unique (provider, external_id) and (record_id, provider)."""

    def __init__(self, store: InMemoryStore) -> None:
        self._rows: dict[str, MappingResult] = store.tables["mappings"]
        self._store = store

    def all(self) -> list[MappingResult]:
        return list(self._rows.values())

    async def find_by_external_id(
        self, provider: Provider, external_id: str
    ) -> MappingResult | None:
        return next(
            (m for m in self._rows.values() if m.provider == provider and m.external_id == external_id),
            None,
        )

    async def find_by_internal_id(
        self, record_id: str, provider: Provider
    ) -> MappingResult | None:
        return next(
            (m for m in self._rows.values() if m.record_id == record_id and m.provider == provider),
            None,
        )

    async def upsert(self, data: MappingUpsert) -> MappingResult:
        existing = await self.find_by_external_id(data.provider, data.external_id)
        now = utc_now()
        if existing is not None:
            if existing.record_id != data.record_id:
                raise MappingConflictException(data.provider.value, data.external_id, data.record_id)
            updated = replace(
                existing,
                status=data.status,
                external_etag=data.external_etag,
                last_error=data.last_error,
                updated_at=now,
            )
            self._rows[updated.id] = updated
            return updated
        if await self.find_by_internal_id(data.record_id, data.provider) is not None:
            raise MappingConflictException(data.provider.value, data.external_id, data.record_id)
        row = MappingResult(
            id=self._store.next_id("map"),
            credential_id=data.credential_id,
            record_kind=data.record_kind,
            record_id=data.record_id,
            provider=data.provider,
            external_id=data.external_id,
            direction=data.direction,
            status=data.status,
            created_at=now,
            updated_at=now,
            external_etag=data.external_etag,
            last_error=data.last_error,
        )
        self._rows[row.id] = row
        return row

    async def replace_external_id(
        self, mapping_id: str, external_id: str, etag: str | None
    ) -> MappingResult:
        row = self._rows[mapping_id]
        clash = await self.find_by_external_id(row.provider, external_id)
        if clash is not None and clash.id != mapping_id:
            raise MappingConflictException(row.provider.value, external_id, row.record_id)
        updated = replace(
            row,
            external_id=external_id,
            external_etag=etag,
            status=MappingStatus.SYNCED,
            updated_at=utc_now(),
        )
        self._rows[mapping_id] = updated
        return updated

    async def delete(self, mapping_id: str) -> None:
        self._rows.pop(mapping_id, None)

    async def delete_pending_older_than(self, credential_id: str, cutoff: datetime) -> int:
        stale = [
            m.id
            for m in self._rows.values()
            if m.credential_id == credential_id
            and m.status == MappingStatus.PENDING
            and m.created_at < cutoff
        ]
        for mapping_id in stale:
            del self._rows[mapping_id]
        return len(stale)


class InMemoryAppointmentRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self._rows: dict[str, AppointmentResult] = store.tables["appointments"]
        self._mappings: dict[str, MappingResult] = store.tables["mappings"]
        self._store = store

    def all(self) -> list[AppointmentResult]:
        return list(self._rows.values())

    async def get_by_id(self, appointment_id: str) -> AppointmentResult | None:
        return self._rows.get(appointment_id)

    async def create(self, data: AppointmentCreate) -> AppointmentResult:
        now = utc_now()
        row = AppointmentResult(
            id=self._store.next_id("apt"),
            owner_id=data.owner_id,
            title=data.title,
            start_time=data.start_time,
            end_time=data.end_time,
            timezone=data.timezone,
            description=data.description,
            location=data.location,
            attendees=tuple(data.attendees),
            all_day=data.all_day,
            status=data.status,
            created_at=now,
            updated_at=now,
            credential_id=data.credential_id,
        )
        self._rows[row.id] = row
        return row

    async def update_fields(
        self, appointment_id: str, data: AppointmentCreate
    ) -> AppointmentResult:
        row = replace(
            self._rows[appointment_id],
            title=data.title,
            start_time=data.start_time,
            end_time=data.end_time,
            timezone=data.timezone,
            description=data.description,
            location=data.location,
            attendees=tuple(data.attendees),
            all_day=data.all_day,
            status=data.status,
            updated_at=utc_now(),
        )
        self._rows[appointment_id] = row
        return row

    async def cancel(self, appointment_id: str) -> None:
        self._rows[appointment_id] = replace(
            self._rows[appointment_id], status=AppointmentStatus.CANCELLED
        )

    async def delete(self, appointment_id: str) -> None:
        self._rows.pop(appointment_id, None)

    async def list_export_candidates(
        self, owner_id: str, credential_id: str, provider: Provider, limit: int
    ) -> list[AppointmentResult]:
        mapped = {m.record_id for m in self._mappings.values() if m.provider == provider}
        return [
            a
            for a in self._rows.values()
            if a.owner_id == owner_id
            and a.credential_id in (None, credential_id)
            and a.status == AppointmentStatus.SCHEDULED
            and a.id not in mapped
        ][:limit]

    async def list_by_owner(self, owner_id: str, limit: int = 100) -> list[AppointmentResult]:
        return [a for a in self._rows.values() if a.owner_id == owner_id][:limit]


class InMemoryMessageRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self._rows: dict[str, MessageResult] = store.tables["messages"]
        self._mappings: dict[str, MappingResult] = store.tables["mappings"]
        self._store = store

    def all(self) -> list[MessageResult]:
        return list(self._rows.values())

    async def get_by_id(self, message_id: str) -> MessageResult | None:
        return self._rows.get(message_id)

    def _build(self, message_id: str, data: MessageCreate, created_at: datetime) -> MessageResult:
        return MessageResult(
            id=message_id,
            owner_id=data.owner_id,
            subject=data.subject,
            sender=data.sender,
            to=tuple(data.to),
            cc=tuple(data.cc),
            bcc=tuple(data.bcc),
            sent_at=data.sent_at,
            body_text=data.body_text,
            body_html=data.body_html,
            is_read=data.is_read,
            is_starred=data.is_starred,
            folder=data.folder,
            created_at=created_at,
            updated_at=utc_now(),
            thread_id=data.thread_id,
            credential_id=data.credential_id,
        )

    async def create(self, data: MessageCreate) -> MessageResult:
        row = self._build(self._store.next_id("msg"), data, utc_now())
        self._rows[row.id] = row
        return row

    async def update_fields(self, message_id: str, data: MessageCreate) -> MessageResult:
        row = self._build(message_id, data, self._rows[message_id].created_at)
        self._rows[message_id] = row
        return row

    async def delete(self, message_id: str) -> None:
        self._rows.pop(message_id, None)

    async def mark_sent(self, message_id: str, sent_at: datetime) -> None:
        self._rows[message_id] = replace(
            self._rows[message_id], folder=MessageFolder.SENT, sent_at=sent_at
        )

    async def list_export_candidates(
        self, credential_id: str, provider: Provider, limit: int
    ) -> list[MessageResult]:
        mapped = {m.record_id for m in self._mappings.values() if m.provider == provider}
        return [
            m
            for m in self._rows.values()
            if m.credential_id == credential_id
            and m.folder == MessageFolder.OUTBOX
            and m.id not in mapped
        ][:limit]

    async def list_by_owner(self, owner_id: str, limit: int = 100) -> list[MessageResult]:
        return [m for m in self._rows.values() if m.owner_id == owner_id][:limit]


class InMemorySyncRunRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self._rows: dict[str, SyncRunResult] = store.tables["sync_runs"]
        self._store = store

    async def start(
        self, credential_id: str, direction: SyncDirection, trigger: SyncTrigger
    ) -> SyncRunResult:
        row = SyncRunResult(
            id=self._store.next_id("run"),
            credential_id=credential_id,
            direction=direction,
            trigger=trigger,
            status=SyncRunStatus.RUNNING,
            started_at=utc_now(),
        )
        self._rows[row.id] = row
        return row

    async def finalize(
        self, run_id: str, status: SyncRunStatus, counters: SyncCounters, completed_at: datetime
    ) -> SyncRunResult:
        row = self._rows[run_id]
        if row.status is not SyncRunStatus.RUNNING:
            return row
        row = replace(
            row,
            status=status,
            imported=counters.imported,
            exported=counters.exported,
            updated=counters.updated,
            deleted=counters.deleted,
            errors=counters.errors,
            error_messages=tuple(counters.error_messages),
            completed_at=completed_at,
        )
        self._rows[run_id] = row
        return row

    async def list_for_credential(
        self, credential_id: str, limit: int = 20
    ) -> list[SyncRunResult]:
        runs = [r for r in self._rows.values() if r.credential_id == credential_id]
        return sorted(runs, key=lambda r: r.started_at, reverse=True)[:limit]


class Repos:
    """One store with every repository double wired to it."""

    def __init__(self) -> None:
        self.store = InMemoryStore()
        self.uow = InMemoryUnitOfWork(self.store)
        self.credentials = InMemoryCredentialRepository(self.store)
        self.mappings = InMemoryMappingRepository(self.store)
        self.appointments = InMemoryAppointmentRepository(self.store)
        self.messages = InMemoryMessageRepository(self.store)
        self.sync_runs = InMemorySyncRunRepository(self.store)

    def seed(self, *items: Any) -> None:
        """Insert rows as already committed (they survive a later rollback)."""
        tables = {
            CredentialResult: self.store.tables["credentials"],
            AppointmentResult: self.store.tables["appointments"],
            MessageResult: self.store.tables["messages"],
            MappingResult: self.store.tables["mappings"],
        }
        for item in items:
            tables[type(item)][item.id] = item
        self.store.checkpoint()


def make_credential(**overrides: Any) -> CredentialResult:
    now = utc_now()
    fields: dict[str, Any] = dict(
        id="cred-1",
        owner_id="owner-1",
        provider=Provider.MICROSOFT,
        email="user@example.com",
        access_token="access-old",
        refresh_token="refresh-1",
        expires_at=now + timedelta(hours=1),
        scopes=("Calendars.ReadWrite", "Mail.ReadWrite"),
        oauth_status=OAuthStatus.ACTIVE,
        updated_at=now,
    )
    fields.update(overrides)
    return CredentialResult(**fields)


class FakeAdapter:
    """Scripted provider adapter recording every remote call."""

    def __init__(self, provider: Provider = Provider.MICROSOFT) -> None:
        self.provider = provider
        self.events: list[Decoded[CanonicalEvent]] = []
        self.messages: list[Decoded[CanonicalMessage]] = []
        self.objects: dict[str, CanonicalObject] = {}
        self.created: list[CanonicalEvent] = []
        self.sent: list[CanonicalMessage] = []
        self.list_calls = 0
        self.tokens_seen: list[str] = []
        self.list_errors: list[Exception] = []
        self.fetch_errors: list[Exception] = []
        self.list_delay = 0.0

    async def list_remote_events(self, access_token: str, window: TimeWindow):
        self.list_calls += 1
        self.tokens_seen.append(access_token)
        for item in self.events:
            if self.list_delay:
                await asyncio.sleep(self.list_delay)
            yield item
        if self.list_errors:
            raise self.list_errors.pop(0)

    async def list_remote_messages(self, access_token: str, max_results: int):
        self.tokens_seen.append(access_token)
        for item in self.messages[:max_results]:
            yield item

    async def create_remote_event(self, access_token: str, event: CanonicalEvent) -> str:
        self.created.append(event)
        return f"remote-evt-{len(self.created)}"

    async def send_remote_message(self, access_token: str, message: CanonicalMessage) -> str:
        self.sent.append(message)
        return f"remote-msg-{len(self.sent)}"

    async def fetch_remote_object(
        self, access_token: str, kind: RecordKind, external_id: str
    ) -> CanonicalObject:
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        return self.objects[external_id]

    def granted_kinds(self, scopes: tuple[str, ...]) -> frozenset[RecordKind]:
        return frozenset({RecordKind.APPOINTMENT, RecordKind.MESSAGE})

    def parse_webhook(self, body, query):
        raise NotImplementedError


def decoded(obj: CanonicalObject) -> Decoded[Any]:
    return Decoded(obj.external_id, obj)


def malformed(external_id: str) -> Decoded[Any]:
    return Decoded(
        external_id, error=ProviderApiError.malformed("microsoft", "decode event", "no start")
    )


def fake_services(repos: Repos, **overrides: Any) -> SimpleNamespace:
    """Stand-in for SyncServices wired to the in-memory repositories."""
    fields: dict[str, Any] = dict(
        credentials=repos.credentials,
        sync_runs=repos.sync_runs,
        appointments=repos.appointments,
        messages=repos.messages,
        uow=repos.uow,
        tokens=TokenRefreshManager(repos.credentials, repos.uow, {}, SingleFlight()),
        orchestrator=None,
        webhooks=None,
        connector=AccountConnector(repos.credentials, repos.uow, {}),
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)
