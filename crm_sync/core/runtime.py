"""Process-wide sync components and the per-session service graph.

``SyncRuntime`` holds what must be shared by every request and the scheduler
(HTTP client, OAuth drivers, adapters, single-flight, locks, run guard).
``build_sync_services`` wires repositories for one database session on top.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from crm_sync.application.services.keyed_locks import KeyedLocks
from crm_sync.application.services.record_reconciler import RecordReconciler
from crm_sync.application.services.single_flight import SingleFlight
from crm_sync.application.services.token_manager import TokenRefreshManager
from crm_sync.application.use_cases.accounts import AccountConnector
from crm_sync.application.use_cases.sync import (
    AccountRunGuard,
    IRunLock,
    SyncLimits,
    SyncOrchestrator,
)
from crm_sync.application.use_cases.webhooks import WebhookDeltaProcessor
from crm_sync.core.config import Settings
from crm_sync.domain.enums import Provider
from crm_sync.infrastructure.external.oauth import CredentialEncryptor, OAuthDriver, build_drivers
from crm_sync.infrastructure.external.providers import ProviderAdapterFactory
from crm_sync.infrastructure.persistence.repositories import (
    AppointmentRepository,
    CredentialRepository,
    MappingRepository,
    MessageRepository,
    SyncRunRepository,
)
from crm_sync.infrastructure.persistence.unit_of_work import SqlUnitOfWork


@dataclass
class SyncRuntime:
    settings: Settings
    http_client: httpx.AsyncClient
    encryptor: CredentialEncryptor
    drivers: dict[Provider, OAuthDriver]
    adapters: ProviderAdapterFactory
    single_flight: SingleFlight
    locks: KeyedLocks
    run_guard: AccountRunGuard

    @classmethod
    def create(
        cls,
        settings: Settings,
        http_client: httpx.AsyncClient,
        run_lock: IRunLock | None = None,
    ) -> SyncRuntime:
        return cls(
            settings=settings,
            http_client=http_client,
            encryptor=CredentialEncryptor(settings),
            drivers=build_drivers(settings, http_client),
            adapters=ProviderAdapterFactory(settings, http_client=http_client),
            single_flight=SingleFlight(),
            locks=KeyedLocks(),
            # Lock TTL outlives the longest pass so a slow pass keeps its lock.
            run_guard=AccountRunGuard(run_lock, ttl_seconds=settings.sync_max_duration_seconds * 2),
        )


@dataclass
class SyncServices:
    credentials: CredentialRepository
    sync_runs: SyncRunRepository
    appointments: AppointmentRepository
    messages: MessageRepository
    uow: SqlUnitOfWork
    tokens: TokenRefreshManager
    orchestrator: SyncOrchestrator
    webhooks: WebhookDeltaProcessor
    connector: AccountConnector


def build_sync_services(db: AsyncSession, runtime: SyncRuntime) -> SyncServices:
    """Wire every use case for one session."""
    settings = runtime.settings
    uow = SqlUnitOfWork(db)
    credentials = CredentialRepository(db, runtime.encryptor)
    sync_runs = SyncRunRepository(db)
    appointments = AppointmentRepository(db)
    messages = MessageRepository(db)
    mappings = MappingRepository(db)
    tokens = TokenRefreshManager(
        credentials,
        uow,
        runtime.drivers,
        runtime.single_flight,
        skew=timedelta(seconds=settings.token_refresh_skew_seconds),
        max_attempts=settings.token_refresh_max_attempts,
        failure_threshold=settings.token_refresh_failure_threshold,
        retry_base_delay=settings.provider_retry_base_delay_seconds,
    )
    reconciler = RecordReconciler(
        mappings,
        appointments,
        messages,
        uow,
        runtime.locks,
        max_attempts=settings.reconcile_max_attempts,
    )
    orchestrator = SyncOrchestrator(
        credentials=credentials,
        sync_runs=sync_runs,
        appointments=appointments,
        messages=messages,
        mappings=mappings,
        uow=uow,
        tokens=tokens,
        reconciler=reconciler,
        adapters=runtime.adapters.create,
        run_guard=runtime.run_guard,
        limits=SyncLimits.from_settings(settings),
    )
    webhooks = WebhookDeltaProcessor(
        credentials=credentials,
        uow=uow,
        tokens=tokens,
        reconciler=reconciler,
        adapters=runtime.adapters.create,
        read_max_attempts=settings.provider_read_max_attempts,
        retry_base_delay_seconds=settings.provider_retry_base_delay_seconds,
    )
    return SyncServices(
        credentials=credentials,
        sync_runs=sync_runs,
        appointments=appointments,
        messages=messages,
        uow=uow,
        tokens=tokens,
        orchestrator=orchestrator,
        webhooks=webhooks,
        connector=AccountConnector(credentials, uow, runtime.drivers),
    )
