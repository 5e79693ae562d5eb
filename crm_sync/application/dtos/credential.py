"""DTOs for credentials (token material is plaintext here; encrypted only at rest)."""

from dataclasses import dataclass, field
from datetime import datetime

from crm_sync.domain.enums import OAuthStatus, Provider


@dataclass(frozen=True)
class CredentialKey:
    """Identity of a credential: one per (owner, provider, account email)."""

    owner_id: str
    provider: Provider
    email: str


@dataclass(frozen=True)
class CredentialCreate:
    """Input for connecting (or reconnecting) an account."""

    owner_id: str
    provider: Provider
    email: str
    access_token: str
    expires_at: datetime
    refresh_token: str | None = None
    scopes: tuple[str, ...] = ()
    provider_account_id: str | None = None


@dataclass(frozen=True)
class TokenUpdate:
    """New token material produced by a successful refresh."""

    access_token: str
    expires_at: datetime
    refresh_token: str | None = None
    scopes: tuple[str, ...] | None = None


@dataclass(frozen=True)
class CredentialResult:
    """Credential read-model."""

    id: str
    owner_id: str
    provider: Provider
    email: str
    access_token: str = field(repr=False)
    refresh_token: str | None = field(repr=False)
    expires_at: datetime
    scopes: tuple[str, ...]
    oauth_status: OAuthStatus
    updated_at: datetime
    provider_account_id: str | None = None
    last_auth_error: str | None = None
    refresh_failure_count: int = 0
    token_refresh_count: int = 0
    last_refreshed_at: datetime | None = None
    last_sync_at: datetime | None = None
    webhook_subscription_id: str | None = None
    webhook_expires_at: datetime | None = None
    is_active: bool = True

    @property
    def key(self) -> CredentialKey:
        return CredentialKey(self.owner_id, self.provider, self.email)
