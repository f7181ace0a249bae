"""Google Calendar v3 adapter."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from typing import Any
from urllib.parse import quote

from calsync.models import Booking, EventMapping
from calsync.providers.base import (
    CreatedEvent,
    DeleteOutcome,
    PermanentProviderError,
    RemoteEvent,
    TransientProviderError,
    booking_attendees,
    day_end,
    day_start,
    parse_rfc3339,
    rfc3339,
    safe_error_message,
    status_error,
    validate_booking,
)
from calsync.providers.oauth import OAuthCalendarAdapter

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_CALENDAR_ID = "primary"
MAX_PAGE_SIZE = 250
# Guards against a provider that keeps returning the same page token; hitting it
# fails the import so a truncated listing never prunes imported events.
MAX_PAGES = 50


def _event_path(calendar_id: str, event_id: str | None = None) -> str:
    path = f"/calendars/{quote(calendar_id, safe='')}/events"
    if event_id is not None:
        path = f"{path}/{quote(event_id, safe='')}"
    return path


def _parse_event_time(value: Any) -> tuple[datetime | None, bool]:
    """Return ``(instant, all_day)`` for a Google ``start``/``end`` object."""
    if not isinstance(value, dict):
        return None, False
    try:
        if isinstance(value.get("dateTime"), str):
            return parse_rfc3339(value["dateTime"]), False
        if isinstance(value.get("date"), str):
            return day_start(date.fromisoformat(value["date"])), True
    except ValueError:
        return None, False
    return None, False


class GoogleCalendarAdapter(OAuthCalendarAdapter):
    """Google Calendar REST adapter writing to the connection's primary calendar."""

    provider_name = "google"
    api_base_url = GOOGLE_CALENDAR_API_BASE_URL

    def build_event_body(self, booking: Booking) -> dict[str, Any]:
        body: dict[str, Any] = {
            "summary": booking.summary,
            "description": booking.description,
            "start": {"dateTime": rfc3339(booking.start_time), "timeZone": booking.time_zone},
            "end": {"dateTime": rfc3339(booking.end_time), "timeZone": booking.time_zone},
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": "email", "minutes": 60},
                    {"method": "popup", "minutes": 15},
                ],
            },
        }
        if booking.location:
            body["location"] = booking.location
        attendees = []
        for attendee in booking_attendees(booking):
            entry: dict[str, Any] = {"email": attendee.email, "responseStatus": "accepted"}
            if attendee.display_name:
                entry["displayName"] = attendee.display_name
            if attendee.organizer:
                entry["organizer"] = True
            attendees.append(entry)
        if attendees:
            body["attendees"] = attendees
        return body

    async def create_event(self, booking: Booking) -> CreatedEvent:
        validate_booking(booking, provider=self.provider_name)
        payload = await self._request_json(
            "POST",
            _event_path(DEFAULT_CALENDAR_ID),
            json_body=self.build_event_body(booking),
        )
        event_id = payload.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise PermanentProviderError(
                status_code=None,
                message="Google Calendar create response is missing an event id",
                provider=self.provider_name,
            )
        return CreatedEvent(external_event_id=event_id, external_calendar_id=DEFAULT_CALENDAR_ID)

    async def update_event(self, mapping: EventMapping, booking: Booking) -> bool:
        validate_booking(booking, provider=self.provider_name)
        if not mapping.external_event_id:
            return False
        calendar_id = mapping.external_calendar_id or DEFAULT_CALENDAR_ID
        response = await self._request_with_bearer(
            "PUT",
            _event_path(calendar_id, mapping.external_event_id),
            json_body=self.build_event_body(booking),
        )
        if response.status_code in (404, 410):
            logger.info(
                "Google event %s no longer exists for connection %s",
                mapping.external_event_id,
                self.connection.id,
            )
            return False
        if response.status_code < 200 or response.status_code >= 300:
            raise status_error(
                response.status_code, safe_error_message(response), provider=self.provider_name
            )
        return True

    async def delete_event(
        self,
        external_event_id: str,
        external_calendar_id: str | None = None,
    ) -> DeleteOutcome:
        calendar_id = external_calendar_id or DEFAULT_CALENDAR_ID
        response = await self._request_with_bearer(
            "DELETE", _event_path(calendar_id, external_event_id)
        )
        # 404/410 means the event was already deleted.
        if response.status_code in (404, 410):
            return DeleteOutcome.not_found
        if response.status_code < 200 or response.status_code >= 300:
            raise status_error(
                response.status_code, safe_error_message(response), provider=self.provider_name
            )
        return DeleteOutcome.deleted

    async def import_events(
        self,
        start_date: date | datetime,
        end_date: date | datetime,
    ) -> list[RemoteEvent]:
        params: dict[str, Any] = {
            "timeMin": rfc3339(day_start(start_date)),
            "timeMax": rfc3339(day_end(end_date)),
            "singleEvents": True,
            "showDeleted": False,
            "orderBy": "startTime",
            "maxResults": MAX_PAGE_SIZE,
        }
        events: list[RemoteEvent] = []
        for _ in range(MAX_PAGES):
            payload = await self._request_json(
                "GET", _event_path(DEFAULT_CALENDAR_ID), params=params
            )
            items = payload.get("items")
            for item in items if isinstance(items, list) else []:
                event = self._remote_event(item)
                if event is not None:
                    events.append(event)
            page_token = payload.get("nextPageToken")
            if not isinstance(page_token, str) or not page_token:
                break
            params = {**params, "pageToken": page_token}
        else:
            raise TransientProviderError(
                status_code=None,
                message=f"event listing did not finish within {MAX_PAGES} pages",
                provider=self.provider_name,
            )
        return events

    async def test_connection(self) -> None:
        await self._request_json(
            "GET", f"/calendars/{quote(DEFAULT_CALENDAR_ID, safe='')}"
        )

    async def account_uid(self) -> str | None:
        """The primary calendar id, which Google sets to the account email."""
        payload = await self._request_json(
            "GET", f"/calendars/{quote(DEFAULT_CALENDAR_ID, safe='')}"
        )
        uid = payload.get("id")
        return uid if isinstance(uid, str) and uid else None

    def _remote_event(self, item: Any) -> RemoteEvent | None:
        if not isinstance(item, dict) or item.get("status") == "cancelled":
            return None
        # Transparent events do not block availability.
        if item.get("transparency") == "transparent":
            return None
        event_id = item.get("id")
        if not isinstance(event_id, str) or not event_id:
            return None
        starts_at, all_day = _parse_event_time(item.get("start"))
        ends_at, _ = _parse_event_time(item.get("end"))
        if starts_at is None or ends_at is None:
            return None
        summary = item.get("summary")
        return RemoteEvent(
            external_event_id=event_id,
            external_calendar_id=DEFAULT_CALENDAR_ID,
            starts_at=starts_at.astimezone(UTC),
            ends_at=ends_at.astimezone(UTC),
            summary=summary if isinstance(summary, str) and summary.strip() else "Untitled Event",
            all_day=all_day,
        )
