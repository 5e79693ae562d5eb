"""Connected account API schemas. Token material is accepted, never returned."""

from datetime import datetime
from typing import Self

from pydantic import BaseModel, ConfigDict, EmailStr, Field, HttpUrl, model_validator

from crm_sync.domain.enums import OAuthStatus, Provider, RecordKind, SyncDirection


class AccountConnectRequest(BaseModel):
    """Request body for POST /accounts (tokens obtained outside this service)."""

    owner_id: str = Field(..., min_length=1)
    provider: Provider
    email: EmailStr
    access_token: str = Field(..., min_length=1)
    refresh_token: str | None = None
    expires_at: datetime | None = None
    expires_in: int | None = Field(default=None, ge=1, description="Seconds from now")
    scopes: list[str] = Field(default_factory=list)
    provider_account_id: str | None = Field(
        default=None, description="Nylas grant id or Graph user id; used to route webhooks"
    )

    @model_validator(mode="after")
    def _require_expiry(self) -> Self:
        if self.expires_at is None and self.expires_in is None:
            raise ValueError("expires_at or expires_in is required")
        return self


class OAuthExchangeRequest(BaseModel):
    """Request body for POST /accounts/oauth/exchange."""

    owner_id: str = Field(..., min_length=1)
    provider: Provider
    code: str = Field(..., min_length=1)
    redirect_uri: str | None = None


class AuthorizeUrlResponse(BaseModel):
    provider: Provider
    url: str
    state: str


class SyncRequest(BaseModel):
    """Request body for POST /accounts/{id}/sync. Kinds default to what the grant allows."""

    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    kinds: list[RecordKind] | None = None


class WebhookSubscriptionRequest(BaseModel):
    notification_url: HttpUrl
    client_state: str | None = Field(default=None, max_length=128)


class AccountResponse(BaseModel):
    """Response model for list and detail account endpoints."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    provider: Provider
    email: str
    provider_account_id: str | None = None
    oauth_status: OAuthStatus
    last_auth_error: str | None = None
    expires_at: datetime
    scopes: list[str]
    token_refresh_count: int = 0
    last_refreshed_at: datetime | None = None
    last_sync_at: datetime | None = None
    webhook_subscription_id: str | None = None
    webhook_expires_at: datetime | None = None
    is_active: bool
    updated_at: datetime
