"""Normalized OAuth token endpoint and user info responses."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class OAuthTokens:
    access_token: str = field(repr=False)
    refresh_token: str | None = field(repr=False)
    token_type: str
    expires_in: int
    expires_at: datetime
    scope: str
    provider_metadata: dict[str, Any] | None = None

    @property
    def scopes(self) -> tuple[str, ...]:
        return tuple(s for s in self.scope.split() if s)


@dataclass(frozen=True)
class OAuthUserInfo:
    email: str
    name: str | None = None
    provider_user_id: str | None = None
