"""Account connection: store a fresh credential after the OAuth handshake."""

from __future__ import annotations

from collections.abc import Mapping

from crm_sync.application.dtos.credential import CredentialCreate, CredentialResult
from crm_sync.application.dtos.delta import WebhookSubscription
from crm_sync.application.interfaces.providers import IOAuthDriver, IProviderAdapter
from crm_sync.application.interfaces.repositories import ICredentialRepository, IUnitOfWork
from crm_sync.application.services.token_manager import TokenRefreshManager
from crm_sync.domain.enums import Provider
from crm_sync.domain.exceptions import (
    ResourceNotFoundException,
    UnsupportedProviderException,
    ValidationException,
)
from crm_sync.shared.telemetry.logging import get_logger

logger = get_logger(__name__)


class AccountConnector:
    """Creates or re-authorizes credentials and manages push subscriptions."""

    def __init__(
        self,
        credentials: ICredentialRepository,
        uow: IUnitOfWork,
        drivers: Mapping[Provider, IOAuthDriver],
    ) -> None:
        self._credentials = credentials
        self._uow = uow
        self._drivers = drivers

    def _driver(self, provider: Provider) -> IOAuthDriver:
        driver = self._drivers.get(provider)
        if driver is None:
            raise UnsupportedProviderException(provider.value, "OAuth (client not configured)")
        return driver

    def authorization_url(
        self, provider: Provider, state: str, redirect_uri: str | None = None
    ) -> str:
        if not state:
            raise ValidationException("state is required", field="state")
        return self._driver(provider).build_authorization_url(state, redirect_uri)

    async def connect_with_tokens(self, data: CredentialCreate) -> CredentialResult:
        """Store tokens obtained elsewhere. Reconnecting resets the OAuth status."""
        if not data.email:
            raise ValidationException("email is required", field="email")
        if not data.access_token:
            raise ValidationException("access_token is required", field="access_token")
        credential = await self._credentials.upsert(data)
        await self._uow.commit()
        logger.info(
            "Connected %s account %s for owner %s (credential %s)",
            data.provider.value,
            data.email,
            data.owner_id,
            credential.id,
        )
        return credential

    async def connect_with_code(
        self,
        owner_id: str,
        provider: Provider,
        code: str,
        redirect_uri: str | None = None,
    ) -> CredentialResult:
        """Exchange an authorization code and store the resulting credential."""
        driver = self._driver(provider)
        tokens = await driver.exchange_code_for_tokens(code, redirect_uri)
        info = await driver.get_user_info(tokens)
        return await self.connect_with_tokens(
            CredentialCreate(
                owner_id=owner_id,
                provider=provider,
                email=info.email,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                expires_at=tokens.expires_at,
                scopes=tokens.scopes,
                provider_account_id=info.provider_user_id,
            )
        )

    async def create_webhook_subscription(
        self,
        credential_id: str,
        tokens: TokenRefreshManager,
        adapter: IProviderAdapter,
        notification_url: str,
        client_state: str | None,
    ) -> CredentialResult:
        """Register a push subscription and remember its id for delta resolution."""
        credential = await self._credentials.get_by_id(credential_id)
        if credential is None:
            raise ResourceNotFoundException("Credential", credential_id)
        create = getattr(adapter, "create_subscription", None)
        if create is None:
            raise UnsupportedProviderException(credential.provider.value, "webhook subscriptions")
        token = await tokens.get_valid_access_token_for(credential)
        subscription: WebhookSubscription = await create(token, notification_url, client_state)
        updated = await self._credentials.set_webhook_subscription(
            credential_id,
            ",".join(subscription.subscription_ids),
            subscription.expires_at,
            account_ref=subscription.account_ref,
        )
        await self._uow.commit()
        logger.info(
            "Webhook subscriptions %s created for credential %s",
            subscription.subscription_ids,
            credential_id,
        )
        return updated
