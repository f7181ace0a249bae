"""Microsoft Graph (Outlook / Microsoft 365) calendar adapter."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, tzinfo
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

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
    safe_error_message,
    status_error,
    validate_booking,
)
from calsync.providers.oauth import OAuthCalendarAdapter

logger = logging.getLogger(__name__)

GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
DEFAULT_CALENDAR_ID = "primary"
PAGE_SIZE = 100
MAX_PAGES = 50
# Ask Graph to express every returned dateTime in UTC.
UTC_PREFER_HEADER = {"Prefer": 'outlook.timezone="UTC"'}


def _zone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def _graph_datetime(value: datetime, zone_name: str) -> dict[str, str]:
    """Graph wants a wall-clock ``dateTime`` plus the zone it is expressed in."""
    zone = _zone(zone_name)
    local = value.astimezone(zone).replace(tzinfo=None)
    return {
        "dateTime": local.isoformat(timespec="seconds"),
        "timeZone": zone_name if zone is not UTC else "UTC",
    }


def _parse_graph_datetime(value: Any) -> datetime | None:
    if not isinstance(value, dict) or not isinstance(value.get("dateTime"), str):
        return None
    raw = value["dateTime"].strip()
    # Graph emits up to seven fractional digits; fromisoformat accepts at most six.
    if "." in raw:
        head, fraction = raw.split(".", 1)
        raw = f"{head}.{fraction[:6]}"
    try:
        parsed = datetime.fromisoformat(raw.removesuffix("Z"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_zone(value.get("timeZone") or "UTC"))
    return parsed.astimezone(UTC)


class MicrosoftCalendarAdapter(OAuthCalendarAdapter):
    """Microsoft Graph adapter writing to the signed-in user's default calendar."""

    provider_name = "microsoft"
    api_base_url = GRAPH_API_BASE_URL

    def build_event_body(self, booking: Booking) -> dict[str, Any]:
        body: dict[str, Any] = {
            "subject": booking.summary,
            "body": {"contentType": "text", "content": booking.description},
            "start": _graph_datetime(booking.start_time, booking.time_zone),
            "end": _graph_datetime(booking.end_time, booking.time_zone),
            "reminderMinutesBeforeStart": 60,
            "isReminderOn": True,
        }
        if booking.location:
            body["location"] = {"displayName": booking.location}
        attendees = [
            {
                "emailAddress": {"address": attendee.email, "name": attendee.display_name},
                "type": "required" if attendee.organizer else "optional",
            }
            for attendee in booking_attendees(booking)
        ]
        if attendees:
            body["attendees"] = attendees
        return body

    async def create_event(self, booking: Booking) -> CreatedEvent:
        validate_booking(booking, provider=self.provider_name)
        payload = await self._request_json(
            "POST", "/me/events", json_body=self.build_event_body(booking)
        )
        event_id = payload.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise PermanentProviderError(
                status_code=None,
                message="Microsoft Graph create response is missing an event id",
                provider=self.provider_name,
            )
        return CreatedEvent(external_event_id=event_id, external_calendar_id=DEFAULT_CALENDAR_ID)

    async def update_event(self, mapping: EventMapping, booking: Booking) -> bool:
        validate_booking(booking, provider=self.provider_name)
        if not mapping.external_event_id:
            return False
        response = await self._request_with_bearer(
            "PATCH",
            f"/me/events/{quote(mapping.external_event_id, safe='')}",
            json_body=self.build_event_body(booking),
        )
        if response.status_code in (404, 410):
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
        response = await self._request_with_bearer(
            "DELETE", f"/me/events/{quote(external_event_id, safe='')}"
        )
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
        url: str = "/me/calendarView"
        params: dict[str, Any] | None = {
            "startDateTime": day_start(start_date).astimezone(UTC).isoformat(),
            "endDateTime": day_end(end_date).astimezone(UTC).isoformat(),
            "$select": "id,subject,start,end,isCancelled,isAllDay,showAs",
            "$orderby": "start/dateTime",
            "$top": PAGE_SIZE,
        }
        events: list[RemoteEvent] = []
        for _ in range(MAX_PAGES):
            payload = await self._request_json(
                "GET", url, params=params, extra_headers=UTC_PREFER_HEADER
            )
            items = payload.get("value")
            for item in items if isinstance(items, list) else []:
                event = self._remote_event(item)
                if event is not None:
                    events.append(event)
            next_link = payload.get("@odata.nextLink")
            if not isinstance(next_link, str) or not next_link:
                break
            # nextLink already carries every query parameter.
            url, params = next_link, None
        else:
            raise TransientProviderError(
                status_code=None,
                message=f"event listing did not finish within {MAX_PAGES} pages",
                provider=self.provider_name,
            )
        return events

    async def test_connection(self) -> None:
        await self._request_json("GET", "/me/calendar")

    async def account_uid(self) -> str | None:
        payload = await self._request_json("GET", "/me")
        uid = payload.get("id") or payload.get("userPrincipalName")
        return uid if isinstance(uid, str) and uid else None

    def _remote_event(self, item: Any) -> RemoteEvent | None:
        if not isinstance(item, dict) or item.get("isCancelled"):
            return None
        if item.get("showAs") == "free":
            return None
        event_id = item.get("id")
        if not isinstance(event_id, str) or not event_id:
            return None
        starts_at = _parse_graph_datetime(item.get("start"))
        ends_at = _parse_graph_datetime(item.get("end"))
        if starts_at is None or ends_at is None:
            return None
        subject = item.get("subject")
        return RemoteEvent(
            external_event_id=event_id,
            external_calendar_id=DEFAULT_CALENDAR_ID,
            starts_at=starts_at,
            ends_at=ends_at,
            summary=subject if isinstance(subject, str) and subject.strip() else "Untitled Event",
            all_day=bool(item.get("isAllDay")),
        )
