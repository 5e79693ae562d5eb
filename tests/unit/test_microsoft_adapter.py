"""Microsoft Graph adapter tests over httpx.MockTransport."""

import json
from datetime import UTC, datetime

import httpx
import pytest

from crm_sync.application.dtos.delta import WebhookChallenge
from crm_sync.domain.canonical import CanonicalMessage, TimeWindow
from crm_sync.domain.enums import ChangeType, MessageFolder, RecordKind
from crm_sync.domain.exceptions import ProviderApiError, ValidationException
from crm_sync.infrastructure.external.providers.microsoft import MicrosoftAdapter

GRAPH = "https://graph.test/v1.0"
WINDOW = TimeWindow(datetime(2025, 1, 1, tzinfo=UTC), datetime(2025, 2, 1, tzinfo=UTC))


def _adapter(handler, **kwargs) -> MicrosoftAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MicrosoftAdapter(GRAPH, http_client=client, **kwargs)


def _graph_event(event_id: str) -> dict:
    return {
        "id": event_id,
        "subject": "Standup",
        "start": {"dateTime": "2025-01-06T09:00:00.0000000", "timeZone": "UTC"},
        "end": {"dateTime": "2025-01-06T09:15:00.0000000", "timeZone": "UTC"},
        "originalStartTimeZone": "W. Europe Standard Time",
        "attendees": [{"emailAddress": {"address": "a@example.com"}}],
        "isCancelled": False,
        "@odata.etag": 'W/"1"',
    }


def _folder_response(request: httpx.Request) -> httpx.Response | None:
    if "/mailFolders/" in request.url.path:
        name = request.url.path.rsplit("/", 1)[-1]
        return httpx.Response(200, json={"id": f"folder-{name}"})
    return None


async def test_list_events_follows_next_link_with_immutable_ids():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if "$skip" not in request.url.params:
            return httpx.Response(
                200,
                json={
                    "value": [_graph_event("e1")],
                    "@odata.nextLink": f"{GRAPH}/me/calendar/calendarView?$skip=1",
                },
            )
        return httpx.Response(200, json={"value": [_graph_event("e2")]})

    items = [i async for i in _adapter(handler).list_remote_events("tok", WINDOW)]

    assert [i.external_id for i in items] == ["e1", "e2"]
    event = items[0].unwrap()
    assert event.start == datetime(2025, 1, 6, 9, 0, tzinfo=UTC)
    assert event.timezone == "W. Europe Standard Time"
    assert event.etag == 'W/"1"'
    assert 'IdType="ImmutableId"' in seen[0].headers.get_list("Prefer")
    assert seen[1].url.params["$skip"] == "1"


async def test_list_events_without_value_is_malformed():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"error": "nope"})

    with pytest.raises(ProviderApiError) as exc_info:
        [i async for i in _adapter(handler).list_remote_events("tok", WINDOW)]
    assert exc_info.value.details["malformed"] is True


async def test_list_messages_resolves_folders():
    def handler(request: httpx.Request) -> httpx.Response:
        folder = _folder_response(request)
        if folder is not None:
            return folder
        return httpx.Response(
            200,
            json={
                "value": [
                    {
                        "id": "m1",
                        "subject": "Re: quote",
                        "from": {"emailAddress": {"address": "c@example.com"}},
                        "toRecipients": [{"emailAddress": {"address": "me@example.com"}}],
                        "receivedDateTime": "2025-01-02T10:00:00Z",
                        "body": {"contentType": "html", "content": "<b>hi</b>"},
                        "isRead": True,
                        "flag": {"flagStatus": "flagged"},
                        "parentFolderId": "folder-sentitems",
                    }
                ]
            },
        )

    (item,) = [i async for i in _adapter(handler).list_remote_messages("tok", 10)]
    message = item.unwrap()

    assert message.folder is MessageFolder.SENT
    assert message.body_html == "<b>hi</b>"
    assert message.body_text == ""
    assert message.is_starred is True
    assert message.sent_at == datetime(2025, 1, 2, 10, 0, tzinfo=UTC)


async def test_send_creates_draft_then_sends_it():
    calls: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        if request.url.path == "/v1.0/me/messages":
            body = json.loads(request.content)
            assert body["toRecipients"] == [{"emailAddress": {"address": "to@example.com"}}]
            assert body["body"]["contentType"] == "Text"
            return httpx.Response(201, json={"id": "draft-1"})
        return httpx.Response(202)

    message = CanonicalMessage(
        subject="Quote", sender="me@example.com", to=("to@example.com",), body_text="Attached."
    )
    assert await _adapter(handler).send_remote_message("tok", message) == "draft-1"
    assert calls == [
        ("POST", "/v1.0/me/messages"),
        ("POST", "/v1.0/me/messages/draft-1/send"),
    ]


async def test_throttling_is_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429)

    with pytest.raises(ProviderApiError) as exc_info:
        await _adapter(handler).fetch_remote_object("tok", RecordKind.APPOINTMENT, "e1")
    assert exc_info.value.retryable is True


async def test_not_found_is_not_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    with pytest.raises(ProviderApiError) as exc_info:
        await _adapter(handler).fetch_remote_object("tok", RecordKind.APPOINTMENT, "e1")
    assert exc_info.value.retryable is False


async def test_create_subscription_registers_events_and_messages():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1.0/me":
            return httpx.Response(200, json={"id": "user-1"})
        body = json.loads(request.content)
        bodies.append(body)
        return httpx.Response(201, json={"id": f"sub-{len(bodies)}"})

    subscription = await _adapter(handler).create_subscription(
        "tok", "https://crm.test/api/v1/webhooks/microsoft", "state-1"
    )

    assert subscription.account_ref == "user-1"
    assert subscription.subscription_ids == ("sub-1", "sub-2")
    assert [b["resource"] for b in bodies] == ["me/events", "me/messages"]
    assert all(b["clientState"] == "state-1" for b in bodies)
    assert bodies[0]["expirationDateTime"].endswith("Z")


def test_parse_webhook_validation_token():
    result = MicrosoftAdapter().parse_webhook(None, {"validationToken": "tok-123"})
    assert result == WebhookChallenge("tok-123")


def test_parse_webhook_reads_user_and_kind_from_resource():
    body = {
        "value": [
            {
                "subscriptionId": "sub-1",
                "changeType": "deleted",
                "resource": "Users/user-1/Events/evt-9",
                "resourceData": {"id": "evt-9"},
            },
            {
                "subscriptionId": "sub-2",
                "changeType": "created",
                "resource": "Users/user-1/Messages/msg-1",
                "resourceData": {"id": "msg-1", "@odata.type": "#Microsoft.Graph.Message"},
            },
        ]
    }
    deltas = MicrosoftAdapter().parse_webhook(body, {})

    assert [(d.account_ref, d.kind, d.change, d.external_id) for d in deltas] == [
        ("user-1", RecordKind.APPOINTMENT, ChangeType.DELETED, "evt-9"),
        ("user-1", RecordKind.MESSAGE, ChangeType.CREATED, "msg-1"),
    ]


def test_parse_webhook_drops_mismatched_client_state():
    adapter = MicrosoftAdapter(webhook_client_state="expected")
    entry = {
        "changeType": "updated",
        "resource": "Users/user-1/Events/evt-1",
        "resourceData": {"id": "evt-1"},
    }
    body = {"value": [{**entry, "clientState": "forged"}, {**entry, "clientState": "expected"}]}

    deltas = adapter.parse_webhook(body, {})

    assert len(deltas) == 1


def test_parse_webhook_requires_value_array():
    with pytest.raises(ValidationException):
        MicrosoftAdapter().parse_webhook({"value": "x"}, {})


def test_granted_kinds_from_scopes():
    adapter = MicrosoftAdapter()
    assert adapter.granted_kinds(("Calendars.ReadWrite",)) == frozenset({RecordKind.APPOINTMENT})
    assert adapter.granted_kinds(("Mail.Send", "offline_access")) == frozenset({RecordKind.MESSAGE})
    assert adapter.granted_kinds(()) == frozenset(RecordKind)


def test_decoded_event_survives_encode_and_decode():
    adapter = MicrosoftAdapter(GRAPH)
    payload = _graph_event("e1") | {
        "location": {"displayName": "Teams"},
        "body": {"contentType": "text", "content": "Agenda in the doc"},
    }
    event = adapter.decode_event(payload)

    again = adapter.decode_event(adapter.encode_event(event))

    assert again.external_id is None
    assert (again.title, again.start, again.end) == (event.title, event.start, event.end)
    assert (again.location, again.description) == ("Teams", "Agenda in the doc")
    assert again.attendees == ("a@example.com",)


async def test_event_description_uses_full_text_body():
    long_text = "line of notes " * 40
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        event = _graph_event("e1") | {
            "bodyPreview": long_text[:255],
            "body": {"contentType": "text", "content": long_text},
        }
        return httpx.Response(200, json={"value": [event]})

    items = [i async for i in _adapter(handler).list_remote_events("tok", WINDOW)]

    assert items[0].unwrap().description == long_text
    assert 'outlook.body-content-type="text"' in seen[0].headers.get_list("Prefer")


def test_event_description_falls_back_to_preview_for_html_body():
    payload = _graph_event("e1") | {
        "bodyPreview": "Plain preview",
        "body": {"contentType": "html", "content": "<p>Plain preview</p>"},
    }

    assert MicrosoftAdapter(GRAPH).decode_event(payload).description == "Plain preview"
