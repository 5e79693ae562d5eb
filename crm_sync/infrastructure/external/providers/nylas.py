"""Nylas v3 adapter: calendar events and messages of one grant."""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import AsyncIterator, Mapping
from datetime import datetime, timedelta
from typing import Any

import httpx

from crm_sync.application.dtos.delta import Delta, WebhookChallenge
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
)
from crm_sync.shared.telemetry.logging import get_logger
from crm_sync.shared.utils.datetime import from_timestamp_ms_utc, parse_iso_datetime

logger = get_logger(__name__)

NYLAS_API_URI = "https://api.us.nylas.com"
SIGNATURE_HEADER = "X-Nylas-Signature"
MAX_PAGE_SIZE = 200

_KINDS: dict[str, RecordKind] = {"event": RecordKind.APPOINTMENT, "message": RecordKind.MESSAGE}
_CHANGES: dict[str, ChangeType] = {
    "created": ChangeType.CREATED,
    "updated": ChangeType.UPDATED,
    "deleted": ChangeType.DELETED,
}


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    """Check the hex HMAC-SHA256 of the raw request body."""
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def _epoch(seconds: Any) -> datetime:
    # Nylas reports epoch seconds.
    return from_timestamp_ms_utc(int(seconds) * 1000)


def _emails(participants: Any) -> tuple[str, ...]:
    return tuple(p["email"] for p in participants or () if p.get("email"))


def _folder(folders: Any) -> MessageFolder:
    names = {str(f).upper() for f in folders or ()}
    if "SENT" in names:
        return MessageFolder.SENT
    if "TRASH" in names:
        return MessageFolder.TRASH
    if "SPAM" in names:
        return MessageFolder.SPAM
    return MessageFolder.INBOX


def _data(payload: Mapping[str, Any]) -> Any:
    return payload["data"]


class NylasAdapter(HttpProviderAdapter):
    """Grant-scoped Nylas calls (``/v3/grants/me``) using the grant's access token."""

    provider = Provider.NYLAS

    def __init__(
        self,
        api_uri: str = NYLAS_API_URI,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(f"{api_uri.rstrip('/')}/v3/grants/me", http_client=http_client, timeout=timeout)

    async def _list(
        self, path: str, access_token: str, operation: str, params: dict[str, Any]
    ) -> AsyncIterator[list[Any]]:
        page_token: str | None = None
        while True:
            page_params = dict(params)
            if page_token:
                page_params["page_token"] = page_token
            page = await self._request("GET", path, access_token, operation, params=page_params)
            items = page.get("data")
            if not isinstance(items, list):
                raise ProviderApiError.malformed(self.provider.value, operation, "missing data")
            yield items
            page_token = page.get("next_cursor")
            if not page_token:
                return

    # Calendar

    def decode_event(self, payload: Mapping[str, Any]) -> CanonicalEvent:
        when = payload["when"]
        timezone = when.get("start_timezone") or "UTC"
        all_day = False
        if "start_time" in when:
            start = _epoch(when["start_time"])
            end = _epoch(when.get("end_time", when["start_time"]))
        elif "date" in when:
            all_day = True
            start = parse_iso_datetime(when["date"])
            end = start + timedelta(days=1)
        else:
            all_day = True
            start = parse_iso_datetime(when["start_date"])
            end = parse_iso_datetime(when["end_date"]) + timedelta(days=1)
        return CanonicalEvent(
            title=payload.get("title") or "(No Title)",
            start=start,
            end=end,
            timezone=timezone,
            description=payload.get("description") or "",
            location=payload.get("location") or "",
            attendees=_emails(payload.get("participants")),
            cancelled=payload.get("status") == "cancelled",
            all_day=all_day,
            external_id=payload.get("id"),
        )

    def encode_event(self, event: CanonicalEvent) -> dict[str, Any]:
        if event.all_day:
            last_day = (event.end - timedelta(days=1)).date()
            if last_day <= event.start.date():
                when: dict[str, Any] = {"date": event.start.date().isoformat()}
            else:
                when = {
                    "start_date": event.start.date().isoformat(),
                    "end_date": last_day.isoformat(),
                }
        else:
            when = {
                "start_time": int(event.start.timestamp()),
                "end_time": int(event.end.timestamp()),
                "start_timezone": event.timezone,
                "end_timezone": event.timezone,
            }
        return {
            "title": event.title,
            "description": event.description,
            "location": event.location,
            "when": when,
            "participants": [{"email": a} for a in event.attendees],
        }

    async def list_remote_events(
        self, access_token: str, window: TimeWindow
    ) -> AsyncIterator[Decoded[CanonicalEvent]]:
        params = {
            "calendar_id": "primary",
            "start": int(window.start.timestamp()),
            "end": int(window.end.timestamp()),
            "show_cancelled": "true",
            "limit": MAX_PAGE_SIZE,
        }
        async for items in self._list("/events", access_token, "list_events", params):
            for item in items:
                yield decode_item(self.provider, "decode_event", item, self.decode_event)

    async def create_remote_event(self, access_token: str, event: CanonicalEvent) -> str:
        created = await self._request(
            "POST",
            "/events",
            access_token,
            "create_event",
            params={"calendar_id": "primary"},
            json=self.encode_event(event),
        )
        return decode_or_raise(self.provider, "create_event", created, lambda c: _data(c)["id"])

    # Mail

    def decode_message(self, payload: Mapping[str, Any]) -> CanonicalMessage:
        senders = _emails(payload.get("from"))
        date = payload.get("date")
        return CanonicalMessage(
            subject=payload.get("subject") or "(No Subject)",
            sender=senders[0] if senders else "",
            to=_emails(payload.get("to")),
            cc=_emails(payload.get("cc")),
            bcc=_emails(payload.get("bcc")),
            sent_at=_epoch(date) if date is not None else None,
            body_text=payload.get("snippet") or "",
            body_html=payload.get("body") or "",
            is_read=payload.get("unread") is False,
            is_starred=bool(payload.get("starred")),
            folder=_folder(payload.get("folders")),
            external_id=payload["id"],
            thread_id=payload.get("thread_id"),
        )

    def encode_message(self, message: CanonicalMessage) -> dict[str, Any]:
        body: dict[str, Any] = {
            "subject": message.subject,
            "body": message.body_html or message.body_text,
            "to": [{"email": a} for a in message.to],
        }
        if message.cc:
            body["cc"] = [{"email": a} for a in message.cc]
        if message.bcc:
            body["bcc"] = [{"email": a} for a in message.bcc]
        return body

    async def list_remote_messages(
        self, access_token: str, max_results: int
    ) -> AsyncIterator[Decoded[CanonicalMessage]]:
        remaining = max_results
        params = {"limit": min(max_results, MAX_PAGE_SIZE)}
        async for items in self._list("/messages", access_token, "list_messages", params):
            for item in items:
                if remaining <= 0:
                    return
                remaining -= 1
                yield decode_item(self.provider, "decode_message", item, self.decode_message)
            if remaining <= 0:
                return

    async def send_remote_message(self, access_token: str, message: CanonicalMessage) -> str:
        sent = await self._request(
            "POST", "/messages/send", access_token, "send_message", json=self.encode_message(message)
        )
        return decode_or_raise(self.provider, "send_message", sent, lambda s: _data(s)["id"])

    async def fetch_remote_object(
        self, access_token: str, kind: RecordKind, external_id: str
    ) -> CanonicalObject:
        if kind is RecordKind.APPOINTMENT:
            payload = await self._request(
                "GET",
                f"/events/{external_id}",
                access_token,
                "get_event",
                params={"calendar_id": "primary"},
            )
            return decode_or_raise(
                self.provider, "decode_event", payload, lambda p: self.decode_event(_data(p))
            )
        payload = await self._request("GET", f"/messages/{external_id}", access_token, "get_message")
        return decode_or_raise(
            self.provider, "decode_message", payload, lambda p: self.decode_message(_data(p))
        )

    def granted_kinds(self, scopes: tuple[str, ...]) -> frozenset[RecordKind]:
        # Grants cover the mailbox and calendar of the connected account.
        return frozenset(RecordKind)

    def _delta(self, notification_type: Any, obj: Any) -> Delta | None:
        if not isinstance(notification_type, str) or not isinstance(obj, dict):
            return None
        object_name, _, change_name = notification_type.partition(".")
        kind = _KINDS.get(object_name)
        change = _CHANGES.get(change_name)
        external_id = obj.get("id")
        grant_id = obj.get("grant_id")
        if kind is None or change is None or not external_id or not grant_id:
            return None
        return Delta(self.provider, grant_id, kind, change, external_id)

    def parse_webhook(
        self, body: Mapping[str, Any] | None, query: Mapping[str, str]
    ) -> WebhookChallenge | list[Delta]:
        challenge = query.get("challenge")
        if challenge:
            return WebhookChallenge(challenge)
        if body is None:
            raise ValidationException("Nylas notification body is required", "body")
        if "deltas" in body:
            if not isinstance(body["deltas"], list):
                raise ValidationException("deltas must be an array", "deltas")
            entries = [
                (d.get("type"), d.get("object_data"))
                for d in body["deltas"]
                if isinstance(d, dict)
            ]
        else:
            data = body.get("data")
            entries = [(body.get("type"), data.get("object") if isinstance(data, dict) else None)]
        deltas: list[Delta] = []
        for notification_type, obj in entries:
            delta = self._delta(notification_type, obj)
            if delta is None:
                logger.warning("Ignoring unrecognised Nylas notification %s", notification_type)
                continue
            deltas.append(delta)
        return deltas
