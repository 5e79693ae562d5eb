"""Connected accounts API: connect, OAuth handshake, sync passes and push subscriptions."""

import secrets
from datetime import timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from crm_sync.api.v1.dependencies import get_runtime, get_sync_services
from crm_sync.application.dtos.credential import CredentialCreate, CredentialResult
from crm_sync.core.limiter import limit_sync, limit_writes
from crm_sync.core.runtime import SyncRuntime, SyncServices
from crm_sync.domain.enums import Provider, SyncTrigger
from crm_sync.domain.exceptions import ResourceNotFoundException
from crm_sync.schemas.account import (
    AccountConnectRequest,
    AccountResponse,
    AuthorizeUrlResponse,
    OAuthExchangeRequest,
    SyncRequest,
    WebhookSubscriptionRequest,
)
from crm_sync.schemas.sync_run import SyncRunResponse
from crm_sync.shared.utils.datetime import ensure_utc, utc_now

router = APIRouter()

Services = Annotated[SyncServices, Depends(get_sync_services)]


async def _get_credential(services: SyncServices, account_id: str) -> CredentialResult:
    credential = await services.credentials.get_by_id(account_id)
    if credential is None:
        raise ResourceNotFoundException("Credential", account_id)
    return credential


@router.post("", response_model=AccountResponse, status_code=201)
@limit_writes
async def connect_account(
    request: Request,
    body: AccountConnectRequest,
    services: Services,
):
    """Store tokens obtained outside this service (reconnecting resets the status)."""
    expires_at = ensure_utc(body.expires_at) or utc_now() + timedelta(seconds=body.expires_in or 0)
    credential = await services.connector.connect_with_tokens(
        CredentialCreate(
            owner_id=body.owner_id,
            provider=body.provider,
            email=str(body.email),
            access_token=body.access_token,
            refresh_token=body.refresh_token,
            expires_at=expires_at,
            scopes=tuple(body.scopes),
            provider_account_id=body.provider_account_id,
        )
    )
    return AccountResponse.model_validate(credential)


@router.get("/oauth/{provider}/authorize-url", response_model=AuthorizeUrlResponse)
async def authorize_url(
    provider: Provider,
    services: Services,
    redirect_uri: str | None = Query(None),
    state: str | None = Query(None, max_length=512),
):
    """Build the provider consent URL. A random state is generated when none is given."""
    state = state or secrets.token_urlsafe(24)
    url = services.connector.authorization_url(provider, state, redirect_uri)
    return AuthorizeUrlResponse(provider=provider, url=url, state=state)


@router.post("/oauth/exchange", response_model=AccountResponse, status_code=201)
@limit_writes
async def exchange_code(
    request: Request,
    body: OAuthExchangeRequest,
    services: Services,
):
    """Exchange an authorization code and connect the account it belongs to."""
    credential = await services.connector.connect_with_code(
        body.owner_id, body.provider, body.code, body.redirect_uri
    )
    return AccountResponse.model_validate(credential)


@router.get("", response_model=list[AccountResponse])
async def list_accounts(
    services: Services,
    owner_id: str = Query(..., min_length=1),
):
    accounts = await services.credentials.list_by_owner(owner_id)
    return [AccountResponse.model_validate(a) for a in accounts]


@router.get("/{account_id}", response_model=AccountResponse)
async def get_account(account_id: str, services: Services):
    return AccountResponse.model_validate(await _get_credential(services, account_id))


@router.post("/{account_id}/sync", response_model=SyncRunResponse)
@limit_sync
async def sync_account(
    request: Request,
    account_id: str,
    services: Services,
    body: SyncRequest | None = None,
):
    """Run one sync pass inline and return its SyncRun.

    409 when a pass is already running or the account must be reconnected.
    """
    body = body or SyncRequest()
    run = await services.orchestrator.run_sync(
        account_id,
        direction=body.direction,
        kinds=frozenset(body.kinds) if body.kinds else None,
        trigger=SyncTrigger.MANUAL,
    )
    return SyncRunResponse.model_validate(run)


@router.get("/{account_id}/sync-runs", response_model=list[SyncRunResponse])
async def list_sync_runs(
    account_id: str,
    services: Services,
    limit: int = Query(20, ge=1, le=200),
):
    """SyncRun history, newest first."""
    await _get_credential(services, account_id)
    runs = await services.sync_runs.list_for_credential(account_id, limit=limit)
    return [SyncRunResponse.model_validate(r) for r in runs]


@router.post("/{account_id}/webhook-subscription", response_model=AccountResponse)
@limit_writes
async def create_webhook_subscription(
    request: Request,
    account_id: str,
    body: WebhookSubscriptionRequest,
    services: Services,
    runtime: Annotated[SyncRuntime, Depends(get_runtime)],
):
    """Register push notifications for the account (Microsoft Graph)."""
    credential = await _get_credential(services, account_id)
    client_state = body.client_state
    configured = runtime.settings.microsoft_webhook_client_state
    if client_state is None and configured is not None:
        client_state = configured.get_secret_value()
    updated = await services.connector.create_webhook_subscription(
        account_id,
        services.tokens,
        runtime.adapters.create(credential.provider),
        str(body.notification_url),
        client_state,
    )
    return AccountResponse.model_validate(updated)
