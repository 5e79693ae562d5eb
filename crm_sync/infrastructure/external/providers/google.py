"""Google Calendar and Gmail adapter using google-api-python-client."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Mapping
from datetime import UTC, datetime
from email.message import EmailMessage as MimeMessage
from typing import Any

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from crm_sync.application.dtos.delta import Delta, WebhookChallenge
from crm_sync.domain.canonical import (
    CanonicalEvent,
    CanonicalMessage,
    CanonicalObject,
    Decoded,
    TimeWindow,
)
from crm_sync.domain.enums import MessageFolder, Provider, RecordKind
from crm_sync.domain.exceptions import ProviderApiError, UnsupportedProviderException
from crm_sync.infrastructure.external.providers.base import (
    decode_item,
    decode_or_raise,
    kinds_from_scopes,
)
from crm_sync.infrastructure.external.providers.encoding import (
    b64url_decode_text,
    b64url_encode,
)
from crm_sync.shared.telemetry.logging import get_logger
from crm_sync.shared.utils.datetime import from_timestamp_ms_utc, parse_iso_datetime

logger = get_logger(__name__)

GMAIL_QUERY = "in:inbox OR in:sent"
EVENT_PAGE_SIZE = 250
MESSAGE_PAGE_SIZE = 100

# (api name, version, access token) -> discovery resource
ServiceBuilder = Callable[[str, str, str], Any]


def build_service(api: str, version: str, access_token: str) -> Any:
    credentials = Credentials(token=access_token)
    return build(api, version, credentials=credentials, cache_discovery=False)


def _rfc3339(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _split_addresses(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _folder_from_labels(labels: set[str]) -> MessageFolder:
    if "SENT" in labels:
        return MessageFolder.SENT
    if "TRASH" in labels:
        return MessageFolder.TRASH
    if "SPAM" in labels:
        return MessageFolder.SPAM
    return MessageFolder.INBOX


def _walk_parts(part: Mapping[str, Any], found: dict[str, str]) -> None:
    """Collect the first text/plain and text/html bodies, depth first."""
    mime_type = part.get("mimeType", "")
    data = (part.get("body") or {}).get("data")
    if data and mime_type in ("text/plain", "text/html") and mime_type not in found:
        found[mime_type] = b64url_decode_text(data)
    for child in part.get("parts") or ():
        _walk_parts(child, found)


def _event_time(value: Mapping[str, Any]) -> tuple[datetime, bool]:
    if "dateTime" in value:
        return parse_iso_datetime(value["dateTime"], value.get("timeZone")), False
    return parse_iso_datetime(value["date"]), True


class GoogleAdapter:
    """Calendar (primary calendar) and Gmail for one Google account token.

    The client library is blocking; each request runs in a worker thread
    bounded by ``timeout``.
    """

    provider = Provider.GOOGLE

    def __init__(
        self,
        *,
        service_builder: ServiceBuilder | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._build = service_builder or build_service
        self._timeout = timeout

    async def _service(self, api: str, version: str, access_token: str) -> Any:
        return await self._call("build_service", lambda: self._build(api, version, access_token))

    async def _call(self, operation: str, fn: Callable[[], Any]) -> Any:
        try:
            async with asyncio.timeout(self._timeout):
                return await asyncio.to_thread(fn)
        except HttpError as exc:
            status = getattr(exc.resp, "status", None)
            logger.warning("google %s failed: status=%s", operation, status)
            raise ProviderApiError(self.provider.value, operation, int(status) if status else None) from exc
        except (TimeoutError, OSError) as exc:
            logger.warning("google %s transport error: %s", operation, exc)
            raise ProviderApiError(self.provider.value, operation) from exc

    async def _execute(self, operation: str, request: Callable[[], Any]) -> dict[str, Any]:
        result = await self._call(operation, lambda: request().execute())
        if not isinstance(result, dict):
            raise ProviderApiError.malformed(self.provider.value, operation, "expected an object")
        return result

    # Calendar

    def decode_event(self, payload: Mapping[str, Any]) -> CanonicalEvent:
        start, all_day = _event_time(payload["start"])
        end, _ = _event_time(payload.get("end") or payload["start"])
        return CanonicalEvent(
            title=payload.get("summary") or "Untitled Event",
            start=start,
            end=end,
            timezone=payload["start"].get("timeZone") or "UTC",
            description=payload.get("description") or "",
            location=payload.get("location") or "",
            attendees=tuple(a["email"] for a in payload.get("attendees") or () if a.get("email")),
            cancelled=payload.get("status") == "cancelled",
            all_day=all_day,
            external_id=payload.get("id"),
            etag=payload.get("etag"),
        )

    def encode_event(self, event: CanonicalEvent) -> dict[str, Any]:
        if event.all_day:
            start: dict[str, str] = {"date": event.start.date().isoformat()}
            end: dict[str, str] = {"date": event.end.date().isoformat()}
        else:
            start = {"dateTime": event.start.isoformat(), "timeZone": event.timezone}
            end = {"dateTime": event.end.isoformat(), "timeZone": event.timezone}
        body: dict[str, Any] = {
            "summary": event.title,
            "description": event.description,
            "location": event.location,
            "start": start,
            "end": end,
        }
        if event.attendees:
            body["attendees"] = [{"email": a} for a in event.attendees]
        return body

    async def list_remote_events(
        self, access_token: str, window: TimeWindow
    ) -> AsyncIterator[Decoded[CanonicalEvent]]:
        service = await self._service("calendar", "v3", access_token)
        page_token: str | None = None
        while True:
            page = await self._execute(
                "list_events",
                lambda: service.events().list(
                    calendarId="primary",
                    timeMin=_rfc3339(window.start),
                    timeMax=_rfc3339(window.end),
                    singleEvents=True,
                    orderBy="startTime",
                    showDeleted=True,
                    maxResults=EVENT_PAGE_SIZE,
                    pageToken=page_token,
                ),
            )
            for item in page.get("items") or ():
                yield decode_item(self.provider, "decode_event", item, self.decode_event)
            page_token = page.get("nextPageToken")
            if not page_token:
                return

    async def create_remote_event(self, access_token: str, event: CanonicalEvent) -> str:
        service = await self._service("calendar", "v3", access_token)
        body = self.encode_event(event)
        created = await self._execute(
            "create_event",
            lambda: service.events().insert(calendarId="primary", body=body),
        )
        return decode_or_raise(self.provider, "create_event", created, lambda c: c["id"])

    # Gmail

    def decode_message(self, payload: Mapping[str, Any]) -> CanonicalMessage:
        body = payload.get("payload") or {}
        headers = {h["name"].lower(): h["value"] for h in body.get("headers") or ()}
        labels = set(payload.get("labelIds") or ())
        parts: dict[str, str] = {}
        _walk_parts(body, parts)
        internal_date = payload.get("internalDate")
        return CanonicalMessage(
            subject=headers.get("subject") or "(No Subject)",
            sender=headers.get("from", ""),
            to=_split_addresses(headers.get("to")),
            cc=_split_addresses(headers.get("cc")),
            bcc=_split_addresses(headers.get("bcc")),
            sent_at=from_timestamp_ms_utc(int(internal_date)) if internal_date else None,
            body_text=parts.get("text/plain", ""),
            body_html=parts.get("text/html", ""),
            is_read="UNREAD" not in labels,
            is_starred="STARRED" in labels,
            folder=_folder_from_labels(labels),
            external_id=payload["id"],
            thread_id=payload.get("threadId"),
        )

    def encode_message(self, message: CanonicalMessage) -> str:
        """RFC 2822 message as unpadded base64url, the Gmail ``raw`` format."""
        mime = MimeMessage()
        mime["From"] = message.sender
        mime["To"] = ", ".join(message.to)
        if message.cc:
            mime["Cc"] = ", ".join(message.cc)
        if message.bcc:
            mime["Bcc"] = ", ".join(message.bcc)
        mime["Subject"] = message.subject
        mime.set_content(message.body_text or "")
        if message.body_html:
            mime.add_alternative(message.body_html, subtype="html")
        return b64url_encode(mime.as_bytes())

    async def list_remote_messages(
        self, access_token: str, max_results: int
    ) -> AsyncIterator[Decoded[CanonicalMessage]]:
        service = await self._service("gmail", "v1", access_token)
        messages = service.users().messages()
        remaining = max_results
        page_token: str | None = None
        while remaining > 0:
            page = await self._execute(
                "list_messages",
                lambda: messages.list(
                    userId="me",
                    q=GMAIL_QUERY,
                    maxResults=min(remaining, MESSAGE_PAGE_SIZE),
                    pageToken=page_token,
                ),
            )
            for ref in (page.get("messages") or ())[:remaining]:
                remaining -= 1
                message_id = ref.get("id") if isinstance(ref, dict) else None
                if not message_id:
                    yield Decoded(
                        None,
                        error=ProviderApiError.malformed(
                            self.provider.value, "list_messages", "entry without id"
                        ),
                    )
                    continue
                try:
                    full = await self._execute(
                        "get_message",
                        lambda: messages.get(userId="me", id=message_id, format="full"),
                    )
                except ProviderApiError as exc:
                    if exc.retryable:
                        raise
                    yield Decoded(message_id, error=exc)
                    continue
                yield decode_item(self.provider, "decode_message", full, self.decode_message)
            page_token = page.get("nextPageToken")
            if not page_token:
                return

    async def send_remote_message(self, access_token: str, message: CanonicalMessage) -> str:
        service = await self._service("gmail", "v1", access_token)
        raw = self.encode_message(message)
        sent = await self._execute(
            "send_message",
            lambda: service.users().messages().send(userId="me", body={"raw": raw}),
        )
        return decode_or_raise(self.provider, "send_message", sent, lambda s: s["id"])

    async def fetch_remote_object(
        self, access_token: str, kind: RecordKind, external_id: str
    ) -> CanonicalObject:
        if kind is RecordKind.APPOINTMENT:
            service = await self._service("calendar", "v3", access_token)
            payload = await self._execute(
                "get_event",
                lambda: service.events().get(calendarId="primary", eventId=external_id),
            )
            return decode_or_raise(self.provider, "decode_event", payload, self.decode_event)
        service = await self._service("gmail", "v1", access_token)
        payload = await self._execute(
            "get_message",
            lambda: service.users().messages().get(userId="me", id=external_id, format="full"),
        )
        return decode_or_raise(self.provider, "decode_message", payload, self.decode_message)

    def granted_kinds(self, scopes: tuple[str, ...]) -> frozenset[RecordKind]:
        return kinds_from_scopes(scopes, ("calendar",), ("gmail", "mail.google.com"))

    def parse_webhook(
        self, body: Mapping[str, Any] | None, query: Mapping[str, str]
    ) -> WebhookChallenge | list[Delta]:
        raise UnsupportedProviderException(self.provider.value, "push notifications")
