"""TokenRefreshManager tests with in-memory credentials and a fake OAuth driver."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from fakes import Repos, make_credential

from crm_sync.application.dtos.oauth import OAuthTokens
from crm_sync.application.services.single_flight import SingleFlight
from crm_sync.application.services.token_manager import TokenRefreshManager
from crm_sync.domain.enums import OAuthStatus, Provider
from crm_sync.domain.exceptions import (
    NoCredentialException,
    OAuthTokenError,
    ProviderRefreshFailedException,
    ReauthRequiredException,
)
from crm_sync.shared.utils.datetime import utc_now


def _tokens(access_token: str = "access-new", refresh_token: str | None = None) -> OAuthTokens:
    return OAuthTokens(
        access_token=access_token,
        refresh_token=refresh_token,
        token_type="Bearer",
        expires_in=3600,
        expires_at=utc_now() + timedelta(hours=1),
        scope="",
    )


def _manager(repos: Repos, driver, **kwargs) -> TokenRefreshManager:
    return TokenRefreshManager(
        repos.credentials,
        repos.uow,
        {Provider.MICROSOFT: driver},
        SingleFlight(),
        **kwargs,
    )


@pytest.fixture
def repos() -> Repos:
    return Repos()


@pytest.fixture
def driver() -> AsyncMock:
    driver = AsyncMock()
    driver.refresh_access_token = AsyncMock(return_value=_tokens())
    return driver


async def test_fresh_token_is_returned_without_refresh(repos: Repos, driver: AsyncMock) -> None:
    repos.seed(make_credential())
    manager = _manager(repos, driver)

    token = await manager.get_valid_access_token("owner-1", Provider.MICROSOFT, "user@example.com")

    assert token == "access-old"
    driver.refresh_access_token.assert_not_awaited()


async def test_token_inside_skew_is_refreshed(repos: Repos, driver: AsyncMock) -> None:
    repos.seed(make_credential(expires_at=utc_now() + timedelta(minutes=2)))
    manager = _manager(repos, driver, skew=timedelta(minutes=5))

    token = await manager.get_valid_access_token("owner-1", Provider.MICROSOFT, "user@example.com")

    assert token == "access-new"
    driver.refresh_access_token.assert_awaited_once_with("refresh-1")
    stored = await repos.credentials.get_by_id("cred-1")
    assert stored.access_token == "access-new"
    assert stored.refresh_token == "refresh-1"
    assert stored.token_refresh_count == 1


async def test_concurrent_callers_share_one_refresh(repos: Repos) -> None:
    repos.seed(make_credential(expires_at=utc_now() - timedelta(minutes=1)))
    calls = 0

    async def slow_refresh(refresh_token: str) -> OAuthTokens:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return _tokens(refresh_token="refresh-2")

    driver = AsyncMock()
    driver.refresh_access_token = slow_refresh
    manager = _manager(repos, driver)

    results = await asyncio.gather(
        *(
            manager.get_valid_access_token("owner-1", Provider.MICROSOFT, "user@example.com")
            for _ in range(10)
        )
    )

    assert calls == 1
    assert set(results) == {"access-new"}
    stored = await repos.credentials.get_by_id("cred-1")
    assert stored.refresh_token == "refresh-2"


async def test_invalid_grant_requires_reauth_and_keeps_tokens(
    repos: Repos, driver: AsyncMock
) -> None:
    repos.seed(make_credential(expires_at=utc_now() - timedelta(minutes=1)))
    driver.refresh_access_token.side_effect = OAuthTokenError(
        "microsoft", "refresh_token", 400, "invalid_grant"
    )
    manager = _manager(repos, driver, max_attempts=3)

    with pytest.raises(ReauthRequiredException):
        await manager.get_valid_access_token("owner-1", Provider.MICROSOFT, "user@example.com")

    assert driver.refresh_access_token.await_count == 1
    stored = await repos.credentials.get_by_id("cred-1")
    assert stored.oauth_status == OAuthStatus.REAUTH_REQUIRED
    assert stored.access_token == "access-old"
    assert stored.refresh_token == "refresh-1"

    with pytest.raises(ReauthRequiredException):
        await manager.get_valid_access_token_for(stored)
    assert driver.refresh_access_token.await_count == 1


async def test_retryable_failure_marks_refresh_failed(repos: Repos, driver: AsyncMock) -> None:
    repos.seed(make_credential(expires_at=utc_now() - timedelta(minutes=1)))
    driver.refresh_access_token.side_effect = OAuthTokenError("microsoft", "refresh_token", 503)
    sleep = AsyncMock()
    manager = _manager(repos, driver, max_attempts=2, failure_threshold=3, sleep=sleep)

    with pytest.raises(ProviderRefreshFailedException):
        await manager.get_valid_access_token("owner-1", Provider.MICROSOFT, "user@example.com")

    assert driver.refresh_access_token.await_count == 2
    sleep.assert_awaited_once_with(0.5)
    stored = await repos.credentials.get_by_id("cred-1")
    assert stored.oauth_status == OAuthStatus.REFRESH_FAILED
    assert stored.refresh_failure_count == 1


async def test_repeated_failures_reach_reauth_threshold(repos: Repos, driver: AsyncMock) -> None:
    repos.seed(
        make_credential(
            expires_at=utc_now() - timedelta(minutes=1),
            oauth_status=OAuthStatus.REFRESH_FAILED,
            refresh_failure_count=2,
        )
    )
    driver.refresh_access_token.side_effect = OAuthTokenError("microsoft", "refresh_token", 500)
    manager = _manager(repos, driver, max_attempts=1, failure_threshold=3)

    with pytest.raises(ReauthRequiredException):
        await manager.get_valid_access_token("owner-1", Provider.MICROSOFT, "user@example.com")

    stored = await repos.credentials.get_by_id("cred-1")
    assert stored.oauth_status == OAuthStatus.REAUTH_REQUIRED


async def test_expired_without_refresh_token_requires_reauth(
    repos: Repos, driver: AsyncMock
) -> None:
    repos.seed(make_credential(expires_at=utc_now() - timedelta(minutes=1), refresh_token=None))
    manager = _manager(repos, driver)

    with pytest.raises(ReauthRequiredException):
        await manager.get_valid_access_token("owner-1", Provider.MICROSOFT, "user@example.com")
    driver.refresh_access_token.assert_not_awaited()


async def test_unknown_account_raises_no_credential(repos: Repos, driver: AsyncMock) -> None:
    manager = _manager(repos, driver)

    with pytest.raises(NoCredentialException):
        await manager.get_valid_access_token("owner-1", Provider.MICROSOFT, "other@example.com")


async def test_refresh_sees_token_refreshed_by_another_worker(
    repos: Repos, driver: AsyncMock
) -> None:
    stale = make_credential(expires_at=utc_now() - timedelta(minutes=1))
    repos.seed(make_credential(access_token="access-other-worker"))
    manager = _manager(repos, driver)

    token = await manager.get_valid_access_token_for(stale)

    assert token == "access-other-worker"
    driver.refresh_access_token.assert_not_awaited()
    assert repos.credentials.for_update_reads == 1
