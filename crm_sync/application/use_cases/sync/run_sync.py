"""Sync orchestrator: one reconciliation pass for one connected account."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from crm_sync.application.dtos.credential import CredentialResult
from crm_sync.application.dtos.sync_run import SyncCounters, SyncRunResult
from crm_sync.application.interfaces.providers import IProviderAdapter
from crm_sync.application.interfaces.repositories import (
    IAppointmentRepository,
    ICredentialRepository,
    IMappingRepository,
    IMessageRepository,
    ISyncRunRepository,
    IUnitOfWork,
)
from crm_sync.application.services.record_reconciler import (
    ReconcileOutcome,
    ReconcileResult,
    RecordReconciler,
    canonical_from_message,
    event_from_appointment,
)
from crm_sync.application.services.retry import Sleep, transient_retrying
from crm_sync.application.services.token_manager import TokenRefreshManager
from crm_sync.application.use_cases.sync.run_guard import AccountRunGuard
from crm_sync.domain.canonical import CanonicalObject, Decoded, TimeWindow
from crm_sync.domain.enums import (
    Provider,
    RecordKind,
    SyncDirection,
    SyncRunStatus,
    SyncTrigger,
)
from crm_sync.domain.exceptions import (
    NoCredentialException,
    ProviderApiError,
    ProviderRefreshFailedException,
    ReauthRequiredException,
    ResourceNotFoundException,
)
from crm_sync.shared.telemetry.logging import get_logger
from crm_sync.shared.telemetry.tracing import add_span_attributes, traced
from crm_sync.shared.utils.datetime import utc_now

if TYPE_CHECKING:
    from crm_sync.core.config import Settings

logger = get_logger(__name__)

_TALLY = {
    ReconcileOutcome.CREATED: "imported",
    ReconcileOutcome.UPDATED: "updated",
    ReconcileOutcome.CONVERGED: "updated",
    ReconcileOutcome.DELETED: "deleted",
    ReconcileOutcome.EXPORTED: "exported",
}


@dataclass(frozen=True)
class SyncLimits:
    """Bounds of one pass."""

    window_days_back: int = 30
    window_days_forward: int = 30
    max_messages: int = 50
    max_duration_seconds: float = 300
    max_error_messages: int = 20
    read_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    reservation_ttl_seconds: int = 900
    export_batch_size: int = 200

    @classmethod
    def from_settings(cls, settings: Settings) -> SyncLimits:
        return cls(
            window_days_back=settings.sync_window_days_back,
            window_days_forward=settings.sync_window_days_forward,
            max_messages=settings.sync_max_messages,
            max_duration_seconds=settings.sync_max_duration_seconds,
            max_error_messages=settings.sync_max_error_messages,
            read_max_attempts=settings.provider_read_max_attempts,
            retry_base_delay_seconds=settings.provider_retry_base_delay_seconds,
            reservation_ttl_seconds=settings.export_reservation_ttl_seconds,
        )


class SyncOrchestrator:
    """Runs import and/or export for one account and records a SyncRun.

    Per-object failures are counted and never abort the pass. Credential
    errors finalize the run as failed and propagate, as do cancellation and
    unexpected errors. A pass that outlives ``max_duration_seconds`` is
    finalized as partial with the counts so far.
    """

    def __init__(
        self,
        *,
        credentials: ICredentialRepository,
        sync_runs: ISyncRunRepository,
        appointments: IAppointmentRepository,
        messages: IMessageRepository,
        mappings: IMappingRepository,
        uow: IUnitOfWork,
        tokens: TokenRefreshManager,
        reconciler: RecordReconciler,
        adapters: Callable[[Provider], IProviderAdapter],
        run_guard: AccountRunGuard,
        limits: SyncLimits | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._credentials = credentials
        self._sync_runs = sync_runs
        self._appointments = appointments
        self._messages = messages
        self._mappings = mappings
        self._uow = uow
        self._tokens = tokens
        self._reconciler = reconciler
        self._adapters = adapters
        self._run_guard = run_guard
        self._limits = limits or SyncLimits()
        self._clock = clock
        self._sleep = sleep

    @traced("sync.run_sync")
    async def run_sync(
        self,
        credential_id: str,
        direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
        kinds: frozenset[RecordKind] | None = None,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
    ) -> SyncRunResult:
        """Run one pass and return the finalized SyncRun.

        Raises:
            ResourceNotFoundException: Unknown credential id.
            SyncInProgressException: A pass for this account is already running.
            ReauthRequiredException, NoCredentialException,
            ProviderRefreshFailedException: No token could be obtained.
        """
        credential = await self._credentials.get_by_id(credential_id)
        if credential is None:
            raise ResourceNotFoundException("Credential", credential_id)
        direction = SyncDirection(direction)

        async with self._run_guard.hold(credential_id):
            run = await self._sync_runs.start(credential_id, direction, trigger)
            await self._uow.commit()
            add_span_attributes(sync_run_id=run.id, provider=credential.provider.value)
            logger.info(
                "Sync %s started for %s account %s (%s, %s)",
                run.id,
                credential.provider.value,
                credential_id,
                direction.value,
                trigger.value,
            )
            counters = SyncCounters(max_errors=self._limits.max_error_messages)
            try:
                async with asyncio.timeout(self._limits.max_duration_seconds):
                    await self._run_passes(credential, direction, kinds, counters)
            except TimeoutError:
                await self._uow.rollback()
                counters.record_error(
                    f"sync aborted after {self._limits.max_duration_seconds:g} seconds"
                )
                logger.warning("Sync %s hit its wall-clock budget", run.id)
                return await self._finish(run, SyncRunStatus.PARTIAL, counters)
            except (NoCredentialException, ReauthRequiredException) as exc:
                await self._uow.rollback()
                counters.record_error(f"reconnect required: {exc.message}")
                await self._finish(run, SyncRunStatus.FAILED, counters)
                raise
            except ProviderRefreshFailedException as exc:
                await self._uow.rollback()
                counters.record_error(exc.message)
                await self._finish(run, SyncRunStatus.FAILED, counters)
                raise
            except (Exception, asyncio.CancelledError) as exc:
                await self._abandon(run, counters, exc)
                raise

            await self._credentials.set_last_sync(credential_id, self._clock())
            status = SyncRunStatus.SUCCESS if counters.errors == 0 else SyncRunStatus.PARTIAL
            return await self._finish(run, status, counters)

    async def _finish(
        self, run: SyncRunResult, status: SyncRunStatus, counters: SyncCounters
    ) -> SyncRunResult:
        final = await self._sync_runs.finalize(run.id, status, counters, self._clock())
        await self._uow.commit()
        logger.info(
            "Sync %s %s: imported=%d updated=%d exported=%d deleted=%d errors=%d",
            run.id,
            status.value,
            counters.imported,
            counters.updated,
            counters.exported,
            counters.deleted,
            counters.errors,
        )
        return final

    async def _abandon(
        self, run: SyncRunResult, counters: SyncCounters, exc: BaseException
    ) -> None:
        """Close a run interrupted by cancellation or an unexpected error."""
        counters.record_error(f"sync interrupted: {exc!r}")
        try:
            await self._uow.rollback()
            await self._finish(run, SyncRunStatus.FAILED, counters)
        except Exception:
            logger.exception("Could not finalize interrupted sync %s", run.id)

    async def _run_passes(
        self,
        credential: CredentialResult,
        direction: SyncDirection,
        kinds: frozenset[RecordKind] | None,
        counters: SyncCounters,
    ) -> None:
        adapter = self._adapters(credential.provider)
        token = await self._tokens.get_valid_access_token_for(credential)
        wanted = kinds if kinds else adapter.granted_kinds(credential.scopes)

        if direction.imports:
            if RecordKind.APPOINTMENT in wanted:
                window = TimeWindow.around(
                    self._clock(),
                    self._limits.window_days_back,
                    self._limits.window_days_forward,
                )
                await self._import_listing(
                    credential,
                    "list events",
                    lambda: adapter.list_remote_events(token, window),
                    counters,
                )
            if RecordKind.MESSAGE in wanted:
                await self._import_listing(
                    credential,
                    "list messages",
                    lambda: adapter.list_remote_messages(token, self._limits.max_messages),
                    counters,
                )

        if direction.exports:
            cutoff = self._clock() - timedelta(seconds=self._limits.reservation_ttl_seconds)
            stale = await self._mappings.delete_pending_older_than(credential.id, cutoff)
            if stale:
                logger.warning(
                    "Released %d stale export reservations for %s", stale, credential.id
                )
            await self._uow.commit()
            if RecordKind.APPOINTMENT in wanted:
                await self._export_appointments(credential, adapter, token, counters)
            if RecordKind.MESSAGE in wanted:
                await self._export_messages(credential, adapter, token, counters)

    # ---- import ----

    async def _import_listing(
        self,
        credential: CredentialResult,
        operation: str,
        listing: Callable[[], AsyncIterator[Decoded[CanonicalObject]]],
        counters: SyncCounters,
    ) -> None:
        """Consume a lazy listing; restart it on retryable failures.

        Objects already handled before a restart are skipped by external id,
        so a restart never double-counts.
        """
        seen: set[str] = set()
        retrying = transient_retrying(
            max_attempts=self._limits.read_max_attempts,
            base_delay=self._limits.retry_base_delay_seconds,
            sleep=self._sleep,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    async for item in listing():
                        if item.external_id is not None:
                            if item.external_id in seen:
                                continue
                            seen.add(item.external_id)
                        await self._import_one(credential, item, counters)
        except ProviderApiError as exc:
            logger.warning(
                "%s failed for %s (status=%s)", operation, credential.id, exc.status
            )
            counters.record_error(f"{operation} failed: {exc.message}")

    async def _import_one(
        self,
        credential: CredentialResult,
        item: Decoded[CanonicalObject],
        counters: SyncCounters,
    ) -> None:
        try:
            result = await self._reconciler.apply_import(credential, item.unwrap())
        except Exception as exc:
            await self._uow.rollback()
            logger.warning("Import of %s failed: %s", item.external_id, exc, exc_info=True)
            counters.record_error(f"import {item.external_id or '?'}: {exc}")
            return
        await self._tally(result, counters, f"import {item.external_id}")

    # ---- export ----

    async def _export_appointments(
        self,
        credential: CredentialResult,
        adapter: IProviderAdapter,
        token: str,
        counters: SyncCounters,
    ) -> None:
        candidates = await self._appointments.list_export_candidates(
            credential.owner_id,
            credential.id,
            credential.provider,
            self._limits.export_batch_size,
        )
        for appointment in candidates:
            event = event_from_appointment(appointment)
            await self._export_one(
                credential,
                RecordKind.APPOINTMENT,
                appointment.id,
                lambda e=event: adapter.create_remote_event(token, e),
                counters,
            )

    async def _export_messages(
        self,
        credential: CredentialResult,
        adapter: IProviderAdapter,
        token: str,
        counters: SyncCounters,
    ) -> None:
        candidates = await self._messages.list_export_candidates(
            credential.id, credential.provider, self._limits.export_batch_size
        )
        for record in candidates:
            message = canonical_from_message(record, sender=credential.email)
            await self._export_one(
                credential,
                RecordKind.MESSAGE,
                record.id,
                lambda m=message: adapter.send_remote_message(token, m),
                counters,
            )

    async def _export_one(
        self,
        credential: CredentialResult,
        kind: RecordKind,
        record_id: str,
        create_remote: Callable[[], Awaitable[str]],
        counters: SyncCounters,
    ) -> None:
        try:
            result = await self._reconciler.apply_export(
                credential, kind, record_id, create_remote
            )
        except Exception as exc:
            await self._uow.rollback()
            logger.warning("Export of %s %s failed: %s", kind.value, record_id, exc, exc_info=True)
            counters.record_error(f"export {kind.value} {record_id}: {exc}")
            return
        await self._tally(result, counters, f"export {kind.value} {record_id}")

    async def _tally(
        self, result: ReconcileResult, counters: SyncCounters, label: str
    ) -> None:
        if result.failed:
            await self._uow.rollback()
            counters.record_error(f"{label}: {result.error}")
            return
        field = _TALLY.get(result.outcome)
        if field is not None:
            setattr(counters, field, getattr(counters, field) + 1)
        await self._uow.commit()
