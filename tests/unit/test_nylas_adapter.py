"""Nylas adapter tests over httpx.MockTransport."""

import hashlib
import hmac
import json
from datetime import UTC, datetime

import httpx
import pytest

from crm_sync.application.dtos.delta import WebhookChallenge
from crm_sync.domain.canonical import CanonicalEvent, CanonicalMessage, TimeWindow
from crm_sync.domain.enums import ChangeType, MessageFolder, RecordKind
from crm_sync.domain.exceptions import ProviderApiError, ValidationException
from crm_sync.infrastructure.external.providers.nylas import NylasAdapter, verify_signature

WINDOW = TimeWindow(datetime(2025, 1, 1, tzinfo=UTC), datetime(2025, 2, 1, tzinfo=UTC))


def _adapter(handler) -> NylasAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return NylasAdapter("https://nylas.test", http_client=client)


def _event(event_id: str, start: int = 1735722000) -> dict:
    return {
        "id": event_id,
        "title": "Quarterly review",
        "when": {"start_time": start, "end_time": start + 3600, "start_timezone": "Europe/Paris"},
        "participants": [{"email": "a@example.com"}, {"name": "no email"}],
        "status": "confirmed",
    }


async def test_list_events_follows_cursor_and_converts_epoch_seconds():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        assert request.headers["Authorization"] == "Bearer tok"
        if "page_token" not in request.url.params:
            return httpx.Response(200, json={"data": [_event("e1")], "next_cursor": "c2"})
        return httpx.Response(200, json={"data": [_event("e2")], "next_cursor": None})

    adapter = _adapter(handler)
    items = [item async for item in adapter.list_remote_events("tok", WINDOW)]

    assert [i.external_id for i in items] == ["e1", "e2"]
    first = items[0].unwrap()
    assert first.start == datetime(2025, 1, 1, 9, 0, tzinfo=UTC)
    assert first.end == datetime(2025, 1, 1, 10, 0, tzinfo=UTC)
    assert first.timezone == "Europe/Paris"
    assert first.attendees == ("a@example.com",)
    assert seen[0].url.path == "/v3/grants/me/events"
    assert seen[0].url.params["calendar_id"] == "primary"
    assert seen[1].url.params["page_token"] == "c2"


async def test_malformed_event_is_reported_without_ending_listing():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json={"data": [{"id": "bad", "title": "no when"}, _event("ok")]}
        )

    items = [i async for i in _adapter(handler).list_remote_events("tok", WINDOW)]

    assert items[0].external_id == "bad"
    with pytest.raises(ProviderApiError) as exc_info:
        items[0].unwrap()
    assert exc_info.value.retryable is False
    assert items[1].unwrap().external_id == "ok"


def test_decode_all_day_event_spans_whole_day():
    adapter = NylasAdapter()
    event = adapter.decode_event({"id": "d1", "when": {"date": "2025-03-04"}})

    assert event.all_day is True
    assert event.title == "(No Title)"
    assert event.start == datetime(2025, 3, 4, tzinfo=UTC)
    assert event.end == datetime(2025, 3, 5, tzinfo=UTC)


def test_encode_event_uses_epoch_seconds():
    event = CanonicalEvent(
        title="Call",
        start=datetime(2025, 1, 1, 9, 0, tzinfo=UTC),
        end=datetime(2025, 1, 1, 9, 30, tzinfo=UTC),
        attendees=("b@example.com",),
    )
    body = NylasAdapter().encode_event(event)

    assert body["when"]["start_time"] == 1735722000
    assert body["when"]["end_time"] == 1735723800
    assert body["participants"] == [{"email": "b@example.com"}]


async def test_create_event_returns_remote_id():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.params["calendar_id"] == "primary"
        assert json.loads(request.content)["title"] == "Call"
        return httpx.Response(200, json={"data": {"id": "new-evt"}})

    event = CanonicalEvent(
        title="Call",
        start=datetime(2025, 1, 1, 9, 0, tzinfo=UTC),
        end=datetime(2025, 1, 1, 9, 30, tzinfo=UTC),
    )
    assert await _adapter(handler).create_remote_event("tok", event) == "new-evt"


async def test_send_message_posts_to_send_endpoint():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v3/grants/me/messages/send"
        body = json.loads(request.content)
        assert body["to"] == [{"email": "to@example.com"}]
        assert body["body"] == "<p>Hi</p>"
        return httpx.Response(200, json={"data": {"id": "msg-9"}})

    message = CanonicalMessage(
        subject="Hello", sender="me@example.com", to=("to@example.com",), body_html="<p>Hi</p>"
    )
    assert await _adapter(handler).send_remote_message("tok", message) == "msg-9"


async def test_list_messages_respects_max_results():
    def handler(request: httpx.Request) -> httpx.Response:
        data = [
            {
                "id": f"m{i}",
                "subject": "s",
                "from": [{"email": "x@example.com"}],
                "date": 1735722000,
                "unread": False,
                "folders": ["SENT"],
            }
            for i in range(5)
        ]
        return httpx.Response(200, json={"data": data, "next_cursor": "more"})

    items = [i async for i in _adapter(handler).list_remote_messages("tok", 3)]

    assert [i.external_id for i in items] == ["m0", "m1", "m2"]
    message = items[0].unwrap()
    assert message.is_read is True
    assert message.folder is MessageFolder.SENT
    assert message.sent_at == datetime(2025, 1, 1, 9, 0, tzinfo=UTC)


async def test_error_status_becomes_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="busy")

    with pytest.raises(ProviderApiError) as exc_info:
        await _adapter(handler).fetch_remote_object("tok", RecordKind.MESSAGE, "m1")
    assert exc_info.value.status == 503
    assert exc_info.value.retryable is True


async def test_fetch_event_unwraps_data():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v3/grants/me/events/e1"
        return httpx.Response(200, json={"data": _event("e1")})

    event = await _adapter(handler).fetch_remote_object("tok", RecordKind.APPOINTMENT, "e1")
    assert event.external_id == "e1"


def test_parse_webhook_challenge():
    assert NylasAdapter().parse_webhook(None, {"challenge": "abc"}) == WebhookChallenge("abc")


def test_parse_webhook_v3_notification():
    body = {"type": "event.updated", "data": {"object": {"id": "e1", "grant_id": "g1"}}}
    (delta,) = NylasAdapter().parse_webhook(body, {})

    assert delta.account_ref == "g1"
    assert delta.kind is RecordKind.APPOINTMENT
    assert delta.change is ChangeType.UPDATED
    assert delta.external_id == "e1"


def test_parse_webhook_legacy_deltas_skip_unknown_types():
    body = {
        "deltas": [
            {"type": "message.created", "object_data": {"id": "m1", "grant_id": "g1"}},
            {"type": "contact.created", "object_data": {"id": "c1", "grant_id": "g1"}},
            {"type": "event.deleted", "object_data": {"id": "e1"}},
        ]
    }
    deltas = NylasAdapter().parse_webhook(body, {})

    assert [(d.kind, d.change, d.external_id) for d in deltas] == [
        (RecordKind.MESSAGE, ChangeType.CREATED, "m1")
    ]


def test_parse_webhook_rejects_missing_body_and_bad_deltas():
    with pytest.raises(ValidationException):
        NylasAdapter().parse_webhook(None, {})
    with pytest.raises(ValidationException):
        NylasAdapter().parse_webhook({"deltas": "nope"}, {})


def test_verify_signature():
    raw = b'{"type":"event.created"}'
    good = hmac.new(b"secret", raw, hashlib.sha256).hexdigest()

    assert verify_signature(raw, good, "secret") is True
    assert verify_signature(raw, good.upper(), "secret") is True
    assert verify_signature(raw, "deadbeef", "secret") is False
    assert verify_signature(raw, None, "secret") is False


def test_decoded_event_survives_encode_and_decode():
    adapter = NylasAdapter()
    payload = _event("n1") | {"location": "HQ", "description": "Numbers for Q1"}
    event = adapter.decode_event(payload)

    again = adapter.decode_event(adapter.encode_event(event))

    assert again.external_id is None
    assert (again.title, again.start, again.end) == (event.title, event.start, event.end)
    assert (again.location, again.description) == ("HQ", "Numbers for Q1")
    assert again.timezone == "Europe/Paris"
    assert again.attendees == ("a@example.com",)


def test_decoded_multi_day_event_survives_encode_and_decode():
    adapter = NylasAdapter()
    event = adapter.decode_event(
        {"id": "n2", "when": {"start_date": "2025-03-04", "end_date": "2025-03-06"}}
    )

    again = adapter.decode_event(adapter.encode_event(event))

    assert again.all_day is True
    assert (again.start, again.end) == (event.start, event.end)
