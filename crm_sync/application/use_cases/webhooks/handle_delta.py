"""Webhook delta processor: incremental, idempotent application of push notifications."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from typing import Any

from crm_sync.application.dtos.credential import CredentialResult
from crm_sync.application.dtos.delta import Delta, DeltaBatchResult, WebhookChallenge
from crm_sync.application.interfaces.providers import IProviderAdapter
from crm_sync.application.interfaces.repositories import ICredentialRepository, IUnitOfWork
from crm_sync.application.services.record_reconciler import ReconcileResult, RecordReconciler
from crm_sync.application.services.retry import Sleep, retry_read
from crm_sync.application.services.token_manager import TokenRefreshManager
from crm_sync.domain.enums import ChangeType, Provider
from crm_sync.shared.telemetry.logging import get_logger
from crm_sync.shared.telemetry.tracing import traced

logger = get_logger(__name__)


class WebhookDeltaProcessor:
    """Applies provider change notifications one object at a time.

    Redelivered deltas are harmless: creation goes through the same
    mapping lookup as a sync pass, and deleting an unmapped id is a no-op.
    A failing delta is logged and counted; the rest of the batch proceeds.
    """

    def __init__(
        self,
        *,
        credentials: ICredentialRepository,
        uow: IUnitOfWork,
        tokens: TokenRefreshManager,
        reconciler: RecordReconciler,
        adapters: Callable[[Provider], IProviderAdapter],
        read_max_attempts: int = 3,
        retry_base_delay_seconds: float = 1.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._credentials = credentials
        self._uow = uow
        self._tokens = tokens
        self._reconciler = reconciler
        self._adapters = adapters
        self._read_max_attempts = read_max_attempts
        self._retry_base_delay = retry_base_delay_seconds
        self._sleep = sleep

    @traced("webhook.handle_delta")
    async def handle_delta(
        self,
        provider: Provider,
        body: Mapping[str, Any] | None,
        query: Mapping[str, str],
    ) -> WebhookChallenge | DeltaBatchResult:
        """Echo a handshake challenge, or apply every delta in the payload."""
        parsed = self._adapters(provider).parse_webhook(body, query)
        if isinstance(parsed, WebhookChallenge):
            return parsed
        return await self.apply_deltas(provider, parsed)

    async def apply_deltas(self, provider: Provider, deltas: list[Delta]) -> DeltaBatchResult:
        adapter = self._adapters(provider)
        processed = skipped = failed = 0
        credential_cache: dict[str, CredentialResult | None] = {}
        for delta in deltas:
            if delta.account_ref not in credential_cache:
                credential_cache[delta.account_ref] = await self._credentials.get_by_account_ref(
                    provider, delta.account_ref
                )
            credential = credential_cache[delta.account_ref]
            if credential is None:
                logger.info(
                    "No %s account for %s; skipping %s %s",
                    provider.value,
                    delta.account_ref,
                    delta.kind.value,
                    delta.external_id,
                )
                skipped += 1
                continue
            try:
                result = await self._apply(credential, adapter, delta)
            except Exception as exc:
                await self._uow.rollback()
                logger.warning(
                    "Delta %s %s for %s failed: %s",
                    delta.change.value,
                    delta.external_id,
                    credential.id,
                    exc,
                    exc_info=True,
                )
                failed += 1
                continue
            if result.failed:
                await self._uow.rollback()
                logger.warning(
                    "Delta %s %s could not be applied: %s",
                    delta.change.value,
                    delta.external_id,
                    result.error,
                )
                failed += 1
                continue
            await self._uow.commit()
            processed += 1
        return DeltaBatchResult(processed=processed, skipped=skipped, failed=failed)

    async def _apply(
        self, credential: CredentialResult, adapter: IProviderAdapter, delta: Delta
    ) -> ReconcileResult:
        if delta.change is ChangeType.DELETED:
            return await self._reconciler.apply_deletion(credential, delta.kind, delta.external_id)
        token = await self._tokens.get_valid_access_token_for(credential)
        obj = await retry_read(
            lambda: adapter.fetch_remote_object(token, delta.kind, delta.external_id),
            max_attempts=self._read_max_attempts,
            base_delay=self._retry_base_delay,
            sleep=self._sleep,
        )
        return await self._reconciler.apply_import(credential, obj)
