"""OAuth provider drivers: authorization URL, token exchange, refresh, user info."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, ClassVar
from urllib.parse import urlencode

import httpx

from crm_sync.application.dtos.oauth import OAuthTokens, OAuthUserInfo
from crm_sync.core.config import Settings
from crm_sync.domain.enums import Provider
from crm_sync.domain.exceptions import OAuthTokenError, UnsupportedProviderException
from crm_sync.shared.telemetry.logging import get_logger
from crm_sync.shared.utils.datetime import utc_now

logger = get_logger(__name__)


def _oauth_error(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        error = payload.get("error")
        return error if isinstance(error, str) else None
    return None


class OAuthDriver(ABC):
    """Abstract OAuth driver: auth URL, token exchange, refresh, user info.

    A shared ``httpx.AsyncClient`` may be passed in; otherwise each call opens
    a short-lived client.
    """

    PROVIDER: ClassVar[Provider]
    AUTHORIZATION_ENDPOINT: ClassVar[str]
    TOKEN_ENDPOINT: ClassVar[str]
    DEFAULT_SCOPES: ClassVar[tuple[str, ...]] = ()
    _SENSITIVE_KEYS: ClassVar[frozenset[str]] = frozenset(
        {"access_token", "refresh_token", "id_token"}
    )

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: list[str] | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = list(scopes) if scopes else list(self.DEFAULT_SCOPES)
        self._http = http_client
        self._timeout = timeout

    @property
    def provider(self) -> Provider:
        return self.PROVIDER

    @property
    def authorization_endpoint(self) -> str:
        return self.AUTHORIZATION_ENDPOINT

    @property
    def token_endpoint(self) -> str:
        return self.TOKEN_ENDPOINT

    @asynccontextmanager
    async def _http_cm(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http is not None:
            yield self._http
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            yield client

    def build_authorization_url(self, state: str, redirect_uri: str | None = None) -> str:
        """Build OAuth authorization URL with state."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri or self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            **self._get_authorization_params(),
        }
        return f"{self.authorization_endpoint}?{urlencode(params)}"

    @abstractmethod
    def _get_authorization_params(self) -> dict[str, Any]:
        """Provider-specific auth params."""
        ...

    async def _post_token(self, grant_type: str, data: dict[str, str]) -> dict[str, Any]:
        try:
            async with self._http_cm() as client:
                response = await client.post(
                    self.token_endpoint,
                    data={"grant_type": grant_type, **data},
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            logger.warning("%s %s grant unreachable: %s", self.provider.value, grant_type, exc)
            raise OAuthTokenError(self.provider.value, grant_type) from exc
        if response.status_code != 200:
            error = _oauth_error(response)
            logger.error(
                "%s %s grant failed: status=%d error=%s",
                self.provider.value,
                grant_type,
                response.status_code,
                error,
            )
            raise OAuthTokenError(
                self.provider.value, grant_type, response.status_code, error
            )
        try:
            token_data = response.json()
            if not isinstance(token_data, dict) or "access_token" not in token_data:
                raise ValueError("missing access_token")
        except ValueError as exc:
            raise OAuthTokenError(
                self.provider.value, grant_type, response.status_code, "invalid_response"
            ) from exc
        return token_data

    async def exchange_code_for_tokens(
        self, code: str, redirect_uri: str | None = None
    ) -> OAuthTokens:
        """Exchange authorization code for tokens."""
        token_data = await self._post_token(
            "authorization_code",
            {
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": redirect_uri or self.redirect_uri,
            },
        )
        return self._normalize_token_response(token_data)

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        """Refresh access token. Providers that omit refresh_token keep the old one."""
        token_data = await self._post_token(
            "refresh_token",
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
            },
        )
        token_data.setdefault("refresh_token", refresh_token)
        return self._normalize_token_response(token_data)

    @abstractmethod
    async def get_user_info(self, tokens: OAuthTokens) -> OAuthUserInfo:
        """Get user info from provider."""
        ...

    async def _get_json(self, url: str, access_token: str) -> dict[str, Any]:
        async with self._http_cm() as client:
            response = await client.get(
                url, headers={"Authorization": f"Bearer {access_token}"}
            )
        if response.status_code != 200:
            logger.error(
                "%s get user info failed: status=%d",
                self.provider.value,
                response.status_code,
            )
            raise OAuthTokenError(
                self.provider.value, "userinfo", response.status_code, _oauth_error(response)
            )
        return response.json()

    def _normalize_token_response(self, token_data: dict[str, Any]) -> OAuthTokens:
        """Normalize provider response to OAuthTokens."""
        expires_in = int(token_data.get("expires_in") or 3600)
        safe_metadata = {
            k: v for k, v in token_data.items() if k not in self._SENSITIVE_KEYS
        }
        return OAuthTokens(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            token_type=token_data.get("token_type", "Bearer"),
            expires_in=expires_in,
            expires_at=utc_now() + timedelta(seconds=expires_in),
            scope=token_data.get("scope") or " ".join(self.scopes),
            provider_metadata=safe_metadata,
        )


class GoogleDriver(OAuthDriver):
    """Google OAuth driver (Gmail and Calendar scopes)."""

    PROVIDER = Provider.GOOGLE
    AUTHORIZATION_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
    USERINFO_ENDPOINT = "https://www.googleapis.com/oauth2/v3/userinfo"
    DEFAULT_SCOPES = (
        "https://www.googleapis.com/auth/gmail.readonly",
        "https://www.googleapis.com/auth/gmail.send",
        "https://www.googleapis.com/auth/gmail.modify",
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
        "https://www.googleapis.com/auth/calendar.readonly",
        "https://www.googleapis.com/auth/calendar.events",
    )

    def _get_authorization_params(self) -> dict[str, Any]:
        return {
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        }

    async def get_user_info(self, tokens: OAuthTokens) -> OAuthUserInfo:
        data = await self._get_json(self.USERINFO_ENDPOINT, tokens.access_token)
        return OAuthUserInfo(
            email=data["email"],
            name=data.get("name"),
            provider_user_id=data.get("sub"),
        )


class MicrosoftDriver(OAuthDriver):
    """Microsoft identity platform driver (Graph mail and calendar)."""

    PROVIDER = Provider.MICROSOFT
    AUTHORIZATION_ENDPOINT = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
    TOKEN_ENDPOINT = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
    DEFAULT_SCOPES = (
        "offline_access",
        "User.Read",
        "Mail.ReadWrite",
        "Mail.Send",
        "Calendars.ReadWrite",
    )

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: list[str] | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        tenant: str = "common",
        graph_url: str = "https://graph.microsoft.com/v1.0",
    ) -> None:
        super().__init__(client_id, client_secret, redirect_uri, scopes, http_client, timeout)
        self.tenant = tenant
        self.graph_url = graph_url.rstrip("/")

    @property
    def authorization_endpoint(self) -> str:
        return f"https://login.microsoftonline.com/{self.tenant}/oauth2/v2.0/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"https://login.microsoftonline.com/{self.tenant}/oauth2/v2.0/token"

    def _get_authorization_params(self) -> dict[str, Any]:
        return {"response_mode": "query"}

    async def get_user_info(self, tokens: OAuthTokens) -> OAuthUserInfo:
        data = await self._get_json(f"{self.graph_url}/me", tokens.access_token)
        email = data.get("mail") or data.get("userPrincipalName")
        if not email:
            raise OAuthTokenError(self.provider.value, "userinfo", 200, "missing_email")
        return OAuthUserInfo(
            email=email,
            name=data.get("displayName"),
            provider_user_id=data.get("id"),
        )


class NylasDriver(OAuthDriver):
    """Nylas v3 hosted auth. The API key doubles as the client secret."""

    PROVIDER = Provider.NYLAS
    AUTHORIZATION_ENDPOINT = "https://api.us.nylas.com/v3/connect/auth"
    TOKEN_ENDPOINT = "https://api.us.nylas.com/v3/connect/token"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: list[str] | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        api_uri: str = "https://api.us.nylas.com",
    ) -> None:
        super().__init__(client_id, client_secret, redirect_uri, scopes, http_client, timeout)
        self.api_uri = api_uri.rstrip("/")

    @property
    def authorization_endpoint(self) -> str:
        return f"{self.api_uri}/v3/connect/auth"

    @property
    def token_endpoint(self) -> str:
        return f"{self.api_uri}/v3/connect/token"

    def _get_authorization_params(self) -> dict[str, Any]:
        return {"access_type": "offline"}

    async def get_user_info(self, tokens: OAuthTokens) -> OAuthUserInfo:
        # The token response already names the grant and its mailbox.
        metadata = tokens.provider_metadata or {}
        email = metadata.get("email")
        if not email:
            raise OAuthTokenError(self.provider.value, "userinfo", None, "missing_email")
        return OAuthUserInfo(email=email, provider_user_id=metadata.get("grant_id"))


class OAuthDriverRegistry:
    """Registry for OAuth drivers by provider."""

    _drivers: ClassVar[dict[Provider, type[OAuthDriver]]] = {
        Provider.GOOGLE: GoogleDriver,
        Provider.MICROSOFT: MicrosoftDriver,
        Provider.NYLAS: NylasDriver,
    }

    @classmethod
    def register(cls, provider: Provider, driver_class: type[OAuthDriver]) -> None:
        cls._drivers[provider] = driver_class
        logger.info("Registered OAuth driver: %s", provider.value)

    @classmethod
    def get_driver_class(cls, provider: Provider) -> type[OAuthDriver]:
        if provider not in cls._drivers:
            raise UnsupportedProviderException(provider.value)
        return cls._drivers[provider]

    @classmethod
    def list_providers(cls) -> list[Provider]:
        return list(cls._drivers.keys())


def build_drivers(
    settings: Settings, http_client: httpx.AsyncClient | None = None
) -> dict[Provider, OAuthDriver]:
    """Instantiate a driver for every provider with a configured client id."""
    timeout = settings.provider_timeout_seconds
    drivers: dict[Provider, OAuthDriver] = {}
    if settings.google_client_id:
        drivers[Provider.GOOGLE] = GoogleDriver(
            settings.google_client_id,
            settings.google_client_secret.get_secret_value(),
            settings.google_redirect_uri,
            http_client=http_client,
            timeout=timeout,
        )
    if settings.microsoft_client_id:
        drivers[Provider.MICROSOFT] = MicrosoftDriver(
            settings.microsoft_client_id,
            settings.microsoft_client_secret.get_secret_value(),
            settings.microsoft_redirect_uri,
            http_client=http_client,
            timeout=timeout,
            tenant=settings.microsoft_tenant,
            graph_url=settings.microsoft_graph_url,
        )
    if settings.nylas_client_id:
        drivers[Provider.NYLAS] = NylasDriver(
            settings.nylas_client_id,
            settings.nylas_api_key.get_secret_value(),
            settings.nylas_redirect_uri,
            http_client=http_client,
            timeout=timeout,
            api_uri=settings.nylas_api_uri,
        )
    logger.info("OAuth drivers configured: %s", ", ".join(p.value for p in drivers) or "none")
    return drivers
