"""Microsoft Graph adapter: Outlook calendar and mail over httpx."""

from __future__ import annotations

import hmac
from collections.abc import AsyncIterator, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from crm_sync.application.dtos.delta import Delta, WebhookChallenge, WebhookSubscription
from crm_sync.domain.canonical import (
    CanonicalEvent,
    CanonicalMessage,
    CanonicalObject,
    Decoded,
    TimeWindow,
)
from crm_sync.domain.enums import ChangeType, MessageFolder, Provider, RecordKind
from crm_sync.domain.exceptions import ProviderApiError, ValidationException
from crm_sync.infrastructure.external.providers.base import (
    HttpProviderAdapter,
    decode_item,
    decode_or_raise,
    kinds_from_scopes,
)
from crm_sync.shared.telemetry.logging import get_logger
from crm_sync.shared.utils.datetime import parse_iso_datetime, utc_now

logger = get_logger(__name__)

GRAPH_URL = "https://graph.microsoft.com/v1.0"
IMMUTABLE_IDS = ("Prefer", 'IdType="ImmutableId"')
UTC_TIMES = ("Prefer", 'outlook.timezone="UTC"')
# bodyPreview is cut at 255 characters; ask for the full body as plain text.
TEXT_BODIES = ("Prefer", 'outlook.body-content-type="text"')
MAX_PAGE_SIZE = 1000
# Graph caps Outlook resource subscriptions just under three days.
SUBSCRIPTION_LIFETIME = timedelta(minutes=4200)

_WELL_KNOWN_FOLDERS: dict[str, MessageFolder] = {
    "sentitems": MessageFolder.SENT,
    "deleteditems": MessageFolder.TRASH,
    "junkemail": MessageFolder.SPAM,
    "outbox": MessageFolder.OUTBOX,
}

_CHANGE_TYPES: dict[str, ChangeType] = {
    "created": ChangeType.CREATED,
    "updated": ChangeType.UPDATED,
    "deleted": ChangeType.DELETED,
}


def _graph_time(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S")


def _addresses(recipients: Any) -> tuple[str, ...]:
    return tuple(
        r["emailAddress"]["address"]
        for r in recipients or ()
        if (r.get("emailAddress") or {}).get("address")
    )


def _event_description(payload: Mapping[str, Any]) -> str:
    body = payload.get("body") or {}
    content = body.get("content")
    if content and str(body.get("contentType") or "text").lower() == "text":
        return content
    return payload.get("bodyPreview") or content or ""


def _recipients(addresses: tuple[str, ...]) -> list[dict[str, Any]]:
    return [{"emailAddress": {"address": a}} for a in addresses]


def _kind_from_resource(resource: str, odata_type: str) -> RecordKind | None:
    lowered = f"{resource} {odata_type}".lower()
    if "/events" in lowered or "microsoft.graph.event" in lowered:
        return RecordKind.APPOINTMENT
    if "/messages" in lowered or "microsoft.graph.message" in lowered:
        return RecordKind.MESSAGE
    return None


def _user_from_resource(resource: str) -> str | None:
    # e.g. "Users/{user-id}/Messages/{message-id}"
    parts = resource.split("/")
    if len(parts) >= 2 and parts[0].lower() == "users" and parts[1]:
        return parts[1]
    return None


class MicrosoftAdapter(HttpProviderAdapter):
    """Outlook calendar and mailbox of the signed-in user via Graph v1.0.

    Every call asks for immutable ids so that drafts keep their id once sent
    and items keep it when moved between folders.
    """

    provider = Provider.MICROSOFT

    def __init__(
        self,
        base_url: str = GRAPH_URL,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        webhook_client_state: str | None = None,
    ) -> None:
        super().__init__(base_url, http_client=http_client, timeout=timeout)
        self._client_state = webhook_client_state

    def _headers(self, access_token: str) -> list[tuple[str, str]]:
        return [*super()._headers(access_token), IMMUTABLE_IDS]

    async def _pages(
        self,
        url: str,
        access_token: str,
        operation: str,
        params: dict[str, Any],
        extra_headers: tuple[tuple[str, str], ...] = (),
    ) -> AsyncIterator[list[Any]]:
        next_url: str | None = url
        next_params: dict[str, Any] | None = params
        while next_url:
            page = await self._request(
                "GET",
                next_url,
                access_token,
                operation,
                params=next_params,
                extra_headers=extra_headers,
            )
            items = page.get("value")
            if not isinstance(items, list):
                raise ProviderApiError.malformed(self.provider.value, operation, "missing value")
            yield items
            # nextLink already carries the query string.
            next_url = page.get("@odata.nextLink")
            next_params = None

    # Calendar

    def decode_event(self, payload: Mapping[str, Any]) -> CanonicalEvent:
        start = payload["start"]
        end = payload["end"]
        return CanonicalEvent(
            title=payload.get("subject") or "Untitled Event",
            start=parse_iso_datetime(start["dateTime"], start.get("timeZone")),
            end=parse_iso_datetime(end["dateTime"], end.get("timeZone")),
            timezone=payload.get("originalStartTimeZone") or start.get("timeZone") or "UTC",
            description=_event_description(payload),
            location=(payload.get("location") or {}).get("displayName") or "",
            attendees=_addresses(payload.get("attendees")),
            cancelled=bool(payload.get("isCancelled")),
            all_day=bool(payload.get("isAllDay")),
            external_id=payload.get("id"),
            etag=payload.get("@odata.etag"),
        )

    def encode_event(self, event: CanonicalEvent) -> dict[str, Any]:
        return {
            "subject": event.title,
            "body": {"contentType": "Text", "content": event.description},
            "start": {"dateTime": _graph_time(event.start), "timeZone": "UTC"},
            "end": {"dateTime": _graph_time(event.end), "timeZone": "UTC"},
            "location": {"displayName": event.location},
            "attendees": [
                {"emailAddress": {"address": a}, "type": "required"} for a in event.attendees
            ],
            "isAllDay": event.all_day,
        }

    async def list_remote_events(
        self, access_token: str, window: TimeWindow
    ) -> AsyncIterator[Decoded[CanonicalEvent]]:
        params = {
            "startDateTime": window.start.astimezone(UTC).isoformat(),
            "endDateTime": window.end.astimezone(UTC).isoformat(),
            "$top": 100,
        }
        async for items in self._pages(
            "/me/calendar/calendarView",
            access_token,
            "list_events",
            params,
            (UTC_TIMES, TEXT_BODIES),
        ):
            for item in items:
                yield decode_item(self.provider, "decode_event", item, self.decode_event)

    async def create_remote_event(self, access_token: str, event: CanonicalEvent) -> str:
        created = await self._request(
            "POST",
            "/me/calendar/events",
            access_token,
            "create_event",
            json=self.encode_event(event),
        )
        return decode_or_raise(self.provider, "create_event", created, lambda c: c["id"])

    # Mail

    async def _folder_ids(self, access_token: str) -> dict[str, MessageFolder]:
        """Resolve the mailbox's well-known folder ids."""
        folders: dict[str, MessageFolder] = {}
        for name, folder in _WELL_KNOWN_FOLDERS.items():
            payload = await self._request(
                "GET",
                f"/me/mailFolders/{name}",
                access_token,
                "get_folder",
                params={"$select": "id"},
            )
            if payload.get("id"):
                folders[payload["id"]] = folder
        return folders

    def decode_message(
        self,
        payload: Mapping[str, Any],
        folders: Mapping[str, MessageFolder] | None = None,
    ) -> CanonicalMessage:
        body = payload.get("body") or {}
        content = body.get("content") or ""
        is_html = (body.get("contentType") or "text").lower() == "html"
        sent = payload.get("sentDateTime") or payload.get("receivedDateTime")
        return CanonicalMessage(
            subject=payload.get("subject") or "(No Subject)",
            sender=((payload.get("from") or {}).get("emailAddress") or {}).get("address", ""),
            to=_addresses(payload.get("toRecipients")),
            cc=_addresses(payload.get("ccRecipients")),
            bcc=_addresses(payload.get("bccRecipients")),
            sent_at=parse_iso_datetime(sent) if sent else None,
            body_text="" if is_html else content,
            body_html=content if is_html else "",
            is_read=bool(payload.get("isRead")),
            is_starred=(payload.get("flag") or {}).get("flagStatus") == "flagged",
            folder=(folders or {}).get(payload.get("parentFolderId") or "", MessageFolder.INBOX),
            external_id=payload["id"],
            thread_id=payload.get("conversationId"),
        )

    def encode_message(self, message: CanonicalMessage) -> dict[str, Any]:
        is_html = bool(message.body_html)
        return {
            "subject": message.subject,
            "body": {
                "contentType": "HTML" if is_html else "Text",
                "content": message.body_html if is_html else message.body_text,
            },
            "toRecipients": _recipients(message.to),
            "ccRecipients": _recipients(message.cc),
            "bccRecipients": _recipients(message.bcc),
        }

    async def list_remote_messages(
        self, access_token: str, max_results: int
    ) -> AsyncIterator[Decoded[CanonicalMessage]]:
        folders = await self._folder_ids(access_token)
        params = {
            "$top": min(max_results, MAX_PAGE_SIZE),
            "$orderby": "receivedDateTime desc",
        }
        remaining = max_results
        async for items in self._pages("/me/messages", access_token, "list_messages", params):
            for item in items:
                if remaining <= 0:
                    return
                remaining -= 1
                yield decode_item(
                    self.provider,
                    "decode_message",
                    item,
                    lambda p: self.decode_message(p, folders),
                )
            if remaining <= 0:
                return

    async def send_remote_message(self, access_token: str, message: CanonicalMessage) -> str:
        draft = await self._request(
            "POST", "/me/messages", access_token, "create_draft", json=self.encode_message(message)
        )
        message_id = decode_or_raise(self.provider, "create_draft", draft, lambda d: d["id"])
        await self._request("POST", f"/me/messages/{message_id}/send", access_token, "send_message")
        return message_id

    async def fetch_remote_object(
        self, access_token: str, kind: RecordKind, external_id: str
    ) -> CanonicalObject:
        if kind is RecordKind.APPOINTMENT:
            payload = await self._request(
                "GET",
                f"/me/events/{external_id}",
                access_token,
                "get_event",
                extra_headers=(UTC_TIMES, TEXT_BODIES),
            )
            return decode_or_raise(self.provider, "decode_event", payload, self.decode_event)
        folders = await self._folder_ids(access_token)
        payload = await self._request(
            "GET", f"/me/messages/{external_id}", access_token, "get_message"
        )
        return decode_or_raise(
            self.provider, "decode_message", payload, lambda p: self.decode_message(p, folders)
        )

    async def create_subscription(
        self, access_token: str, notification_url: str, client_state: str | None
    ) -> WebhookSubscription:
        """Subscribe to event and message changes of the signed-in user."""
        me = await self._request("GET", "/me", access_token, "get_user", params={"$select": "id"})
        user_id = decode_or_raise(self.provider, "get_user", me, lambda m: m["id"])
        expires_at = (utc_now() + SUBSCRIPTION_LIFETIME).replace(microsecond=0)
        subscription_ids: list[str] = []
        for resource in ("me/events", "me/messages"):
            body: dict[str, Any] = {
                "changeType": "created,updated,deleted",
                "notificationUrl": notification_url,
                "resource": resource,
                "expirationDateTime": expires_at.isoformat().replace("+00:00", "Z"),
            }
            if client_state:
                body["clientState"] = client_state
            created = await self._request(
                "POST", "/subscriptions", access_token, "create_subscription", json=body
            )
            subscription_ids.append(
                decode_or_raise(self.provider, "create_subscription", created, lambda c: c["id"])
            )
        logger.info("Graph subscriptions created for user %s: %s", user_id, subscription_ids)
        return WebhookSubscription(user_id, tuple(subscription_ids), expires_at)

    def granted_kinds(self, scopes: tuple[str, ...]) -> frozenset[RecordKind]:
        return kinds_from_scopes(scopes, ("Calendars.",), ("Mail.",))

    def parse_webhook(
        self, body: Mapping[str, Any] | None, query: Mapping[str, str]
    ) -> WebhookChallenge | list[Delta]:
        token = query.get("validationToken")
        if token:
            return WebhookChallenge(token)
        if body is None or not isinstance(body.get("value"), list):
            raise ValidationException("Graph notification must contain a value array", "value")
        deltas: list[Delta] = []
        for entry in body["value"]:
            if not isinstance(entry, dict):
                logger.warning("Ignoring non-object Graph notification entry")
                continue
            if self._client_state and not hmac.compare_digest(
                str(entry.get("clientState") or ""), self._client_state
            ):
                logger.warning(
                    "Dropping Graph notification with mismatched clientState (subscription %s)",
                    entry.get("subscriptionId"),
                )
                continue
            resource = str(entry.get("resource") or "")
            resource_data = entry.get("resourceData") or {}
            kind = _kind_from_resource(resource, str(resource_data.get("@odata.type") or ""))
            change = _CHANGE_TYPES.get(str(entry.get("changeType") or ""))
            external_id = resource_data.get("id")
            account_ref = _user_from_resource(resource) or entry.get("subscriptionId")
            if kind is None or change is None or not external_id or not account_ref:
                logger.warning("Ignoring unrecognised Graph notification for %s", resource)
                continue
            deltas.append(Delta(self.provider, account_ref, kind, change, external_id))
        return deltas
