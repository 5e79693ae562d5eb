"""Provider adapter and OAuth driver ports."""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from typing import TYPE_CHECKING, Any, Protocol

from crm_sync.domain.canonical import (
    CanonicalEvent,
    CanonicalMessage,
    CanonicalObject,
    Decoded,
    TimeWindow,
)
from crm_sync.domain.enums import Provider, RecordKind

if TYPE_CHECKING:
    from crm_sync.application.dtos.oauth import OAuthTokens, OAuthUserInfo
    from crm_sync.application.dtos.delta import Delta, WebhookChallenge


class IProviderAdapter(Protocol):
    """One implementation per provider; selected once per credential.

    Every remote failure surfaces as ProviderApiError. Adapters never retry.
    """

    provider: Provider

    def list_remote_events(
        self, access_token: str, window: TimeWindow
    ) -> AsyncIterator[Decoded[CanonicalEvent]]:
        """Lazy, finite listing of events in the window; restartable per call."""

    async def create_remote_event(self, access_token: str, event: CanonicalEvent) -> str:
        """Create the event remotely and return its external id."""

    def list_remote_messages(
        self, access_token: str, max_results: int
    ) -> AsyncIterator[Decoded[CanonicalMessage]]:
        """Lazy listing of the most recent messages."""

    async def send_remote_message(self, access_token: str, message: CanonicalMessage) -> str:
        """Send the message and return its external id."""

    async def fetch_remote_object(
        self, access_token: str, kind: RecordKind, external_id: str
    ) -> CanonicalObject:
        """Fetch one object (webhook path)."""

    def granted_kinds(self, scopes: tuple[str, ...]) -> frozenset[RecordKind]:
        """Record kinds the granted scopes allow syncing."""

    def parse_webhook(
        self,
        body: Mapping[str, Any] | None,
        query: Mapping[str, str],
    ) -> WebhookChallenge | list[Delta]:
        """Turn an inbound notification into a challenge or a list of deltas."""


class IOAuthDriver(Protocol):
    """Token endpoint client for one provider. Failures raise OAuthTokenError."""

    provider: Provider

    def build_authorization_url(self, state: str, redirect_uri: str | None = None) -> str:
        """Consent URL for the provider's default scopes."""

    async def exchange_code_for_tokens(
        self, code: str, redirect_uri: str | None = None
    ) -> OAuthTokens:
        """Authorization-code grant."""

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        """Refresh-token grant; keeps the old refresh token when none is returned."""

    async def get_user_info(self, tokens: OAuthTokens) -> OAuthUserInfo:
        """Account email and provider user id for the freshly issued tokens."""
