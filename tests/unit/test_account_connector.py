"""AccountConnector tests: token hand-over, code exchange and push subscriptions."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from fakes import FakeAdapter, Repos, make_credential

from crm_sync.application.dtos.credential import CredentialCreate
from crm_sync.application.dtos.delta import WebhookSubscription
from crm_sync.application.dtos.oauth import OAuthTokens, OAuthUserInfo
from crm_sync.application.services.single_flight import SingleFlight
from crm_sync.application.services.token_manager import TokenRefreshManager
from crm_sync.application.use_cases.accounts import AccountConnector
from crm_sync.domain.enums import OAuthStatus, Provider
from crm_sync.domain.exceptions import (
    ResourceNotFoundException,
    UnsupportedProviderException,
    ValidationException,
)
from crm_sync.shared.utils.datetime import utc_now


def _create(**overrides) -> CredentialCreate:
    fields = dict(
        owner_id="owner-1",
        provider=Provider.GOOGLE,
        email="rep@example.com",
        access_token="at-1",
        refresh_token="rt-1",
        expires_at=utc_now() + timedelta(hours=1),
        scopes=("https://www.googleapis.com/auth/calendar.events",),
    )
    fields.update(overrides)
    return CredentialCreate(**fields)


@pytest.fixture
def repos() -> Repos:
    return Repos()


@pytest.fixture
def driver() -> MagicMock:
    driver = MagicMock()
    driver.build_authorization_url.return_value = "https://auth.test/?state=s"
    driver.exchange_code_for_tokens = AsyncMock(
        return_value=OAuthTokens(
            "at-x", "rt-x", "Bearer", 3600, datetime(2030, 1, 1, tzinfo=UTC), "Mail.Send User.Read"
        )
    )
    driver.get_user_info = AsyncMock(
        return_value=OAuthUserInfo("rep@contoso.com", "Rep", provider_user_id="user-42")
    )
    return driver


@pytest.fixture
def connector(repos: Repos, driver: MagicMock) -> AccountConnector:
    return AccountConnector(repos.credentials, repos.uow, {Provider.MICROSOFT: driver})


async def test_connect_with_tokens_stores_and_commits(connector, repos):
    credential = await connector.connect_with_tokens(_create())

    assert credential.oauth_status is OAuthStatus.ACTIVE
    assert credential.refresh_token == "rt-1"
    assert repos.store.commits == 1


async def test_reconnect_resets_failed_status_and_keeps_id(connector, repos):
    failed = make_credential(
        id="cred-9",
        provider=Provider.GOOGLE,
        email="rep@example.com",
        oauth_status=OAuthStatus.REAUTH_REQUIRED,
        refresh_failure_count=3,
        last_auth_error="invalid_grant",
    )
    repos.seed(failed)

    credential = await connector.connect_with_tokens(_create(refresh_token=None))

    assert credential.id == "cred-9"
    assert credential.oauth_status is OAuthStatus.ACTIVE
    assert credential.refresh_failure_count == 0
    assert credential.last_auth_error is None
    assert credential.refresh_token == "refresh-1"


async def test_connect_requires_access_token(connector):
    with pytest.raises(ValidationException):
        await connector.connect_with_tokens(_create(access_token=""))


async def test_connect_with_code_uses_driver_identity(connector, driver):
    credential = await connector.connect_with_code("owner-1", Provider.MICROSOFT, "code-1")

    driver.exchange_code_for_tokens.assert_awaited_once_with("code-1", None)
    assert credential.email == "rep@contoso.com"
    assert credential.provider_account_id == "user-42"
    assert credential.scopes == ("Mail.Send", "User.Read")


def test_authorization_url_requires_configured_driver(connector):
    assert connector.authorization_url(Provider.MICROSOFT, "s") == "https://auth.test/?state=s"
    with pytest.raises(UnsupportedProviderException):
        connector.authorization_url(Provider.NYLAS, "s")
    with pytest.raises(ValidationException):
        connector.authorization_url(Provider.MICROSOFT, "")


async def test_webhook_subscription_is_recorded(connector, repos):
    repos.seed(make_credential())
    tokens = TokenRefreshManager(repos.credentials, repos.uow, {}, SingleFlight())
    adapter = FakeAdapter()
    expires = datetime(2030, 1, 3, tzinfo=UTC)
    adapter.create_subscription = AsyncMock(
        return_value=WebhookSubscription("user-1", ("sub-a", "sub-b"), expires)
    )

    updated = await connector.create_webhook_subscription(
        "cred-1", tokens, adapter, "https://crm.test/hook", "state"
    )

    adapter.create_subscription.assert_awaited_once_with(
        "access-old", "https://crm.test/hook", "state"
    )
    assert updated.webhook_subscription_id == "sub-a,sub-b"
    assert updated.webhook_expires_at == expires
    assert updated.provider_account_id == "user-1"


async def test_webhook_subscription_for_unknown_or_unsupported(connector, repos):
    tokens = TokenRefreshManager(repos.credentials, repos.uow, {}, SingleFlight())
    with pytest.raises(ResourceNotFoundException):
        await connector.create_webhook_subscription(
            "missing", tokens, FakeAdapter(), "https://crm.test/hook", None
        )

    repos.seed(make_credential())
    with pytest.raises(UnsupportedProviderException):
        await connector.create_webhook_subscription(
            "cred-1", tokens, FakeAdapter(), "https://crm.test/hook", None
        )
