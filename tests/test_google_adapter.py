"""Tests for GoogleCalendarAdapter against an httpx.MockTransport."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import timedelta

import httpx
import pytest

from calsync.config import OAuthClientConfig, OAuthConfig
from calsync.models import EventMapping
from calsync.providers.base import (
    DeleteOutcome,
    PermanentProviderError,
    ProviderAuthError,
    TransientProviderError,
)
from calsync.providers.google import (
    GOOGLE_CALENDAR_API_BASE_URL,
    MAX_PAGES,
    GoogleCalendarAdapter,
)
from calsync.providers.oauth import GOOGLE_TOKEN_URL, OAuthClient
from tests.conftest import NOW, make_booking, make_connection

pytestmark = pytest.mark.unit

EVENTS_URL = f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/primary/events"


def _adapter(
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    on_unauthorized=None,
    with_oauth: bool = False,
) -> GoogleCalendarAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    oauth_client = None
    if with_oauth:
        oauth_client = OAuthClient(
            OAuthConfig(google=OAuthClientConfig(client_id="cid", client_secret="csecret")),
            http_client=client,
        )
    return GoogleCalendarAdapter(
        make_connection(),
        oauth_client=oauth_client,
        on_unauthorized=on_unauthorized,
        http_client=client,
    )


def _mapping(event_id: str = "evt-1") -> EventMapping:
    connection = make_connection()
    return EventMapping.model_validate(
        {
            "id": "3f1c2a3e-8f1d-4c55-9a26-3a0f2f54b0d1",
            "calendar_connection_id": connection.id,
            "business_id": connection.business_id,
            "booking_id": 101,
            "external_event_id": event_id,
            "external_calendar_id": "primary",
        }
    )


class TestCreateEvent:
    async def test_posts_event_body(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"id": "evt-1"})

        created = await _adapter(handler).create_event(make_booking(location="Main St 1"))

        assert created.external_event_id == "evt-1"
        assert created.external_calendar_id == "primary"
        (request,) = requests
        assert request.method == "POST"
        assert str(request.url) == EVENTS_URL
        assert request.headers["Authorization"] == "Bearer access-1"
        body = json.loads(request.content)
        assert body["summary"] == "Haircut with Ada Lovelace"
        assert body["location"] == "Main St 1"
        assert body["start"] == {"dateTime": "2026-03-03T09:00:00Z", "timeZone": "UTC"}
        assert body["reminders"]["useDefault"] is False
        emails = {a["email"]: a for a in body["attendees"]}
        assert emails["sam@example.com"]["organizer"] is True
        assert "organizer" not in emails["ada@example.com"]

    async def test_invalid_time_range_is_rejected_before_request(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        booking = make_booking(end_time=NOW)
        with pytest.raises(PermanentProviderError):
            await _adapter(handler).create_event(booking)

    async def test_missing_event_id(self) -> None:
        adapter = _adapter(lambda request: httpx.Response(200, json={}))
        with pytest.raises(PermanentProviderError, match="missing an event id"):
            await adapter.create_event(make_booking())

    async def test_server_error_is_transient(self) -> None:
        adapter = _adapter(lambda request: httpx.Response(500, json={"error": {"message": "x"}}))
        with pytest.raises(TransientProviderError):
            await adapter.create_event(make_booking())

    async def test_bad_request_is_permanent(self) -> None:
        adapter = _adapter(
            lambda request: httpx.Response(400, json={"error": {"message": "Invalid start"}})
        )
        with pytest.raises(PermanentProviderError, match="Invalid start"):
            await adapter.create_event(make_booking())


class TestUpdateAndDelete:
    async def test_update_puts_to_event(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"id": "evt-1"})

        assert await _adapter(handler).update_event(_mapping(), make_booking()) is True
        assert requests[0].method == "PUT"
        assert str(requests[0].url) == f"{EVENTS_URL}/evt-1"

    async def test_update_missing_event_returns_false(self) -> None:
        adapter = _adapter(lambda request: httpx.Response(404))
        assert await adapter.update_event(_mapping(), make_booking()) is False

    async def test_delete(self) -> None:
        adapter = _adapter(lambda request: httpx.Response(204))
        assert await adapter.delete_event("evt-1", "primary") is DeleteOutcome.deleted

    @pytest.mark.parametrize("status", [404, 410])
    async def test_delete_missing_is_not_found(self, status: int) -> None:
        adapter = _adapter(lambda request: httpx.Response(status))
        assert await adapter.delete_event("evt-1") is DeleteOutcome.not_found

    async def test_event_id_is_path_escaped(self) -> None:
        urls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            urls.append(request.url.raw_path.decode())
            return httpx.Response(204)

        await _adapter(handler).delete_event("a/b c")
        assert urls == ["/calendar/v3/calendars/primary/events/a%2Fb%20c"]


class TestImportEvents:
    async def test_pages_and_filters(self) -> None:
        pages = {
            None: {
                "items": [
                    {
                        "id": "busy-1",
                        "summary": "Dentist",
                        "start": {"dateTime": "2026-03-02T10:00:00+01:00"},
                        "end": {"dateTime": "2026-03-02T11:00:00+01:00"},
                    },
                    {
                        "id": "free-1",
                        "transparency": "transparent",
                        "start": {"dateTime": "2026-03-02T12:00:00Z"},
                        "end": {"dateTime": "2026-03-02T13:00:00Z"},
                    },
                    {"id": "gone", "status": "cancelled"},
                ],
                "nextPageToken": "p2",
            },
            "p2": {
                "items": [
                    {
                        "id": "holiday",
                        "start": {"date": "2026-03-05"},
                        "end": {"date": "2026-03-06"},
                    }
                ]
            },
        }
        seen_params: list[dict[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            params = dict(request.url.params)
            seen_params.append(params)
            return httpx.Response(200, json=pages[params.get("pageToken")])

        events = await _adapter(handler).import_events(NOW.date(), NOW.date() + timedelta(days=7))

        assert [e.external_event_id for e in events] == ["busy-1", "holiday"]
        busy, holiday = events
        assert busy.starts_at == NOW
        assert busy.summary == "Dentist"
        assert holiday.all_day is True
        assert holiday.summary == "Untitled Event"
        assert seen_params[0]["singleEvents"] == "true"
        assert seen_params[0]["timeMin"] == "2026-03-02T00:00:00Z"
        assert seen_params[0]["timeMax"] == "2026-03-10T00:00:00Z"
        assert seen_params[1]["pageToken"] == "p2"

    async def test_endless_pagination_fails_instead_of_truncating(self) -> None:
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.params.get("pageToken", ""))
            return httpx.Response(200, json={"items": [], "nextPageToken": "again"})

        with pytest.raises(TransientProviderError, match=f"within {MAX_PAGES} pages"):
            await _adapter(handler).import_events(NOW.date(), NOW.date() + timedelta(days=7))
        assert len(calls) == MAX_PAGES


class TestUnauthorized:
    async def test_401_refreshes_once_through_handler(self) -> None:
        tokens: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            tokens.append(request.headers["Authorization"])
            if request.headers["Authorization"] == "Bearer access-1":
                return httpx.Response(401)
            return httpx.Response(200, json={"id": "evt-1"})

        async def on_unauthorized(adapter) -> str:
            return "access-2"

        adapter = _adapter(handler, on_unauthorized=on_unauthorized)
        created = await adapter.create_event(make_booking())

        assert created.external_event_id == "evt-1"
        assert tokens == ["Bearer access-1", "Bearer access-2"]
        assert adapter.access_token == "access-2"

    async def test_second_401_is_auth_error(self) -> None:
        async def on_unauthorized(adapter) -> str:
            return "access-2"

        adapter = _adapter(lambda request: httpx.Response(401), on_unauthorized=on_unauthorized)
        with pytest.raises(ProviderAuthError):
            await adapter.create_event(make_booking())

    async def test_401_without_handler_refreshes_in_memory(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_TOKEN_URL:
                return httpx.Response(200, json={"access_token": "access-9", "expires_in": 3600})
            if request.headers["Authorization"] == "Bearer access-9":
                return httpx.Response(200, json={"id": "evt-1"})
            return httpx.Response(401)

        adapter = _adapter(handler, with_oauth=True)
        await adapter.create_event(make_booking())
        assert adapter.access_token == "access-9"


class TestRateLimit:
    async def test_429_retries_after_header(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                return httpx.Response(429, headers={"Retry-After": "0"})
            return httpx.Response(200, json={"id": "evt-1"})

        created = await _adapter(handler).create_event(make_booking())
        assert created.external_event_id == "evt-1"
        assert calls == 2

    async def test_network_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientProviderError):
            await _adapter(handler).create_event(make_booking())
