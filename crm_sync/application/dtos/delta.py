"""DTOs for webhook deltas."""

from dataclasses import dataclass
from datetime import datetime

from crm_sync.domain.enums import ChangeType, Provider, RecordKind


@dataclass(frozen=True)
class Delta:
    """One change notification, already parsed out of the provider payload.

    ``account_ref`` is the provider-side account identifier (Nylas grant id,
    Graph user id) used to resolve the credential.
    """

    provider: Provider
    account_ref: str
    kind: RecordKind
    change: ChangeType
    external_id: str


@dataclass(frozen=True)
class WebhookChallenge:
    """A handshake request whose value must be echoed verbatim."""

    value: str


@dataclass(frozen=True)
class DeltaBatchResult:
    processed: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass(frozen=True)
class WebhookSubscription:
    """Push subscriptions registered for one account.

    Notifications are resolved back to the credential through ``account_ref``.
    """

    account_ref: str
    subscription_ids: tuple[str, ...]
    expires_at: datetime | None = None
