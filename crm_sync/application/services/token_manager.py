"""Token refresh manager: hands out non-expired access tokens.

The only component (besides account connection) that reads or writes token
material. Refreshes for the same (owner, provider, email) are single-flight
within the process and serialized across processes by a row lock.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta

from crm_sync.application.dtos.credential import (
    CredentialKey,
    CredentialResult,
    TokenUpdate,
)
from crm_sync.application.interfaces.providers import IOAuthDriver
from crm_sync.application.interfaces.repositories import (
    ICredentialRepository,
    IUnitOfWork,
)
from crm_sync.application.services.retry import Sleep, transient_retrying
from crm_sync.application.services.single_flight import SingleFlight
from crm_sync.domain.enums import OAuthStatus, Provider
from crm_sync.domain.exceptions import (
    NoCredentialException,
    OAuthTokenError,
    ProviderRefreshFailedException,
    ReauthRequiredException,
)
from crm_sync.shared.telemetry.logging import get_logger
from crm_sync.shared.telemetry.tracing import traced
from crm_sync.shared.utils.datetime import utc_now

logger = get_logger(__name__)

DEFAULT_REFRESH_SKEW = timedelta(minutes=5)


class TokenRefreshManager:
    """Guarantees callers a valid access token, refreshing when needed.

    Args:
        credentials: Credential store for the current session.
        uow: Transaction boundary of that session; refreshed tokens are committed.
        drivers: OAuth driver per provider.
        single_flight: Process-wide single-flight shared by all requests.
        skew: Tokens expiring within this margin are refreshed.
        max_attempts: Attempts per refresh for retryable token endpoint errors.
        retry_base_delay: First backoff delay between those attempts, in seconds.
        failure_threshold: Consecutive failed refreshes before reauth is required.
    """

    def __init__(
        self,
        credentials: ICredentialRepository,
        uow: IUnitOfWork,
        drivers: Mapping[Provider, IOAuthDriver],
        single_flight: SingleFlight,
        *,
        skew: timedelta = DEFAULT_REFRESH_SKEW,
        max_attempts: int = 2,
        failure_threshold: int = 3,
        retry_base_delay: float = 0.5,
        clock: Callable[[], datetime] = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._credentials = credentials
        self._uow = uow
        self._drivers = drivers
        self._single_flight = single_flight
        self._skew = skew
        self._max_attempts = max_attempts
        self._failure_threshold = failure_threshold
        self._clock = clock
        self._retry_base_delay = retry_base_delay
        self._sleep = sleep

    @traced("token.get_valid_access_token")
    async def get_valid_access_token(
        self, owner_id: str, provider: Provider, email: str
    ) -> str:
        """Return a usable access token for the account.

        Raises:
            NoCredentialException: No credential stored for the account.
            ReauthRequiredException: The user must reconnect the account.
            ProviderRefreshFailedException: Refresh failed; a later call may succeed.
        """
        key = CredentialKey(owner_id, Provider(provider), email)
        credential = await self._credentials.get_by_key(key)
        if credential is None:
            raise NoCredentialException(owner_id, key.provider.value, email)
        return await self.get_valid_access_token_for(credential)

    async def get_valid_access_token_for(self, credential: CredentialResult) -> str:
        """Same as get_valid_access_token for an already loaded credential."""
        self._ensure_usable(credential)
        if self._is_fresh(credential):
            return credential.access_token
        if not credential.refresh_token:
            raise ReauthRequiredException(
                credential.id, "access token expired and no refresh token is stored"
            )
        key = credential.key
        return await self._single_flight.do(key, lambda: self._refresh(key))

    def _is_fresh(self, credential: CredentialResult) -> bool:
        return credential.expires_at - self._clock() > self._skew

    @staticmethod
    def _ensure_usable(credential: CredentialResult) -> None:
        if credential.oauth_status == OAuthStatus.REAUTH_REQUIRED:
            raise ReauthRequiredException(
                credential.id, credential.last_auth_error or "account must be reconnected"
            )

    async def _refresh(self, key: CredentialKey) -> str:
        # Re-read under a row lock: another process may have refreshed already.
        credential = await self._credentials.get_by_key(key, for_update=True)
        if credential is None:
            raise NoCredentialException(key.owner_id, key.provider.value, key.email)
        self._ensure_usable(credential)
        if self._is_fresh(credential):
            await self._uow.commit()
            return credential.access_token
        if not credential.refresh_token:
            await self._uow.commit()
            raise ReauthRequiredException(credential.id, "no refresh token is stored")

        driver = self._drivers.get(credential.provider)
        if driver is None:
            await self._uow.commit()
            raise ReauthRequiredException(
                credential.id, f"{credential.provider.value} OAuth client is not configured"
            )

        retrying = transient_retrying(
            max_attempts=self._max_attempts,
            base_delay=self._retry_base_delay,
            sleep=self._sleep,
        )
        try:
            tokens = await retrying(driver.refresh_access_token, credential.refresh_token)
        except OAuthTokenError as exc:
            logger.warning(
                "Token refresh failed for credential %s: status=%s error=%s",
                credential.id,
                exc.status,
                exc.oauth_error,
            )
            return await self._record_failure(credential, exc)

        updated = await self._credentials.update_tokens(
            credential.id,
            TokenUpdate(
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token or credential.refresh_token,
                expires_at=tokens.expires_at,
                scopes=tokens.scopes or None,
            ),
            refreshed_at=self._clock(),
        )
        await self._uow.commit()
        logger.info(
            "Refreshed access token for credential %s (expires_at=%s)",
            credential.id,
            updated.expires_at.isoformat(),
        )
        return updated.access_token

    async def _record_failure(
        self, credential: CredentialResult, error: OAuthTokenError
    ) -> str:
        """Persist the failure (never the tokens) and raise the matching error."""
        failures = credential.refresh_failure_count + 1
        if error.is_invalid_grant or failures >= self._failure_threshold:
            reason = (
                "refresh token was rejected (invalid_grant)"
                if error.is_invalid_grant
                else f"token refresh failed {failures} times in a row"
            )
            await self._credentials.mark_refresh_failed(
                credential.id, OAuthStatus.REAUTH_REQUIRED, reason
            )
            await self._uow.commit()
            logger.error("Credential %s requires reconnection: %s", credential.id, reason)
            raise ReauthRequiredException(credential.id, reason) from error

        await self._credentials.mark_refresh_failed(
            credential.id, OAuthStatus.REFRESH_FAILED, error.message
        )
        await self._uow.commit()
        raise ProviderRefreshFailedException(
            credential.id, credential.provider.value, error.status
        ) from error
