"""CalDAV adapters: generic servers, iCloud, and Nextcloud/ownCloud.

All variants speak plain CalDAV over HTTPS with Basic auth:

- ``PROPFIND`` for discovery (``Depth: 0`` on principal / calendar-home-set
  lookups, ``Depth: 1`` when listing calendars in a collection),
- ``REPORT`` calendar-query with a UTC time range for imports,
- ``PUT`` of a single-VEVENT iCalendar object (``If-None-Match: *`` on create,
  ``If-Match: *`` on update so a vanished resource is reported, not recreated),
- ``DELETE`` of the event resource.

The variants differ only in how the writable event calendars are discovered.
"""

from __future__ import annotations

import logging
import secrets
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from urllib.parse import quote, urljoin, urlsplit

import httpx
from defusedxml import DefusedXmlException
from defusedxml import ElementTree as SafeET
from icalendar import Calendar as iCalendar
from icalendar import Event as iEvent

from calsync.core.metrics import SyncMetrics
from calsync.models import Booking, CalendarConnection, EventMapping
from calsync.providers.base import (
    USER_AGENT,
    CalendarAdapter,
    CreatedEvent,
    CredentialError,
    DeleteOutcome,
    PermanentProviderError,
    ProviderAuthError,
    RemoteEvent,
    day_end,
    day_start,
    safe_error_message,
    status_error,
    validate_booking,
)

logger = logging.getLogger(__name__)

DAV_NS = "DAV:"
CALDAV_NS = "urn:ietf:params:xml:ns:caldav"
ICLOUD_CALDAV_BASE_URL = "https://caldav.icloud.com"
EVENT_UID_PREFIX = "calsync"
PRODID = "-//calsync//Calendar Sync//EN"

PREFERRED_CALENDAR_NAMES = ("work", "calendar", "personal", "main", "default", "home")
COMMON_CALENDAR_PATHS = ("/calendars/", "/cal/", "/calendar/", "/dav/calendars/", "/caldav/")

_CALENDAR_CHECK_XML = """<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <D:resourcetype />
    <C:supported-calendar-component-set />
  </D:prop>
</D:propfind>
"""

_CALENDAR_LIST_XML = """<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <D:resourcetype />
    <D:displayname />
    <C:supported-calendar-component-set />
    <D:current-user-privilege-set />
  </D:prop>
</D:propfind>
"""

_CURRENT_USER_PRINCIPAL_XML = """<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:">
  <D:prop>
    <D:current-user-principal />
  </D:prop>
</D:propfind>
"""

_CALENDAR_HOME_SET_XML = """<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <C:calendar-home-set />
  </D:prop>
</D:propfind>
"""


def _dav(tag: str) -> str:
    return f"{{{DAV_NS}}}{tag}"


def _caldav(tag: str) -> str:
    return f"{{{CALDAV_NS}}}{tag}"


def _ical_utc(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")


def calendar_query_xml(start: datetime, end: datetime) -> str:
    """REPORT body listing VEVENTs in ``[start, end)`` with recurrences expanded."""
    start_s, end_s = _ical_utc(start), _ical_utc(end)
    return f"""<?xml version="1.0" encoding="utf-8" ?>
<C:calendar-query xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <D:getetag />
    <C:calendar-data>
      <C:expand start="{start_s}" end="{end_s}"/>
    </C:calendar-data>
  </D:prop>
  <C:filter>
    <C:comp-filter name="VCALENDAR">
      <C:comp-filter name="VEVENT">
        <C:time-range start="{start_s}" end="{end_s}"/>
      </C:comp-filter>
    </C:comp-filter>
  </C:filter>
</C:calendar-query>
"""


def generate_event_uid(booking: Booking) -> str:
    return f"{EVENT_UID_PREFIX}-{booking.id}-{secrets.token_hex(4)}"


def select_primary_calendar(calendar_urls: list[str]) -> str:
    """Pick the calendar new events go to, preferring conventional names."""
    if len(calendar_urls) > 1:
        for name in PREFERRED_CALENDAR_NAMES:
            for url in calendar_urls:
                if f"/{name}/" in url.lower():
                    return url
    return calendar_urls[0]


def build_ical_event(booking: Booking, uid: str) -> bytes:
    cal = iCalendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")
    cal.add("calscale", "GREGORIAN")

    event = iEvent()
    event.add("uid", uid)
    event.add("dtstamp", datetime.now(UTC))
    event.add("dtstart", booking.start_time.astimezone(UTC))
    event.add("dtend", booking.end_time.astimezone(UTC))
    event.add("summary", booking.summary)
    event.add("description", booking.description)
    if booking.location:
        event.add("location", booking.location)
    event.add("status", "CONFIRMED")
    event.add("transp", "OPAQUE")
    cal.add_component(event)
    return cal.to_ical()


def _as_utc_instant(value: date | datetime) -> tuple[datetime, bool]:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC), False
    return day_start(value), True


def parse_ical_events(ical_text: str, calendar_url: str) -> list[RemoteEvent]:
    """Extract busy VEVENTs from one iCalendar object.

    Expanded recurrence instances share a UID, so their identifier carries the
    RECURRENCE-ID as a suffix.
    """
    try:
        cal = iCalendar.from_ical(ical_text)
    except ValueError as exc:
        logger.warning("Skipping unparseable calendar object from %s: %s", calendar_url, exc)
        return []

    events: list[RemoteEvent] = []
    for component in cal.walk("VEVENT"):
        uid = str(component.get("uid") or "").strip()
        if not uid or "dtstart" not in component:
            continue
        if str(component.get("status") or "").upper() == "CANCELLED":
            continue
        if str(component.get("transp") or "").upper() == "TRANSPARENT":
            continue
        starts_at, all_day = _as_utc_instant(component.decoded("dtstart"))
        if "dtend" in component:
            ends_at, _ = _as_utc_instant(component.decoded("dtend"))
        elif "duration" in component:
            ends_at = starts_at + component.decoded("duration")
        else:
            ends_at = starts_at + (timedelta(days=1) if all_day else timedelta(0))
        if "recurrence-id" in component:
            recurrence, _ = _as_utc_instant(component.decoded("recurrence-id"))
            uid = f"{uid}:{_ical_utc(recurrence)}"
        summary = str(component.get("summary") or "").strip()
        events.append(
            RemoteEvent(
                external_event_id=uid,
                external_calendar_id=calendar_url,
                starts_at=starts_at,
                ends_at=ends_at,
                summary=summary or "Untitled Event",
                all_day=all_day,
            )
        )
    return events


@dataclass(frozen=True)
class CalendarCollection:
    url: str
    name: str
    supports_events: bool
    writable: bool


def _parse_xml(body: str) -> ET.Element | None:
    try:
        return SafeET.fromstring(body)
    except SafeET.ParseError:
        return None
    except DefusedXmlException as exc:
        logger.warning("Rejected CalDAV response with forbidden XML construct: %s", exc)
        return None


def _find_href(root: ET.Element | None, prop: str) -> str | None:
    if root is None:
        return None
    for element in root.iter(prop):
        href = element.find(_dav("href"))
        if href is not None and href.text and href.text.strip():
            return href.text.strip()
    return None


def parse_calendar_list(body: str, base_url: str) -> list[CalendarCollection]:
    """Parse a ``Depth: 1`` PROPFIND multistatus into calendar collections."""
    root = _parse_xml(body)
    if root is None:
        logger.warning("Failed to parse CalDAV calendar list from %s", base_url)
        return []

    base_path = urlsplit(base_url).path.rstrip("/")
    calendars: list[CalendarCollection] = []
    for response in root.iter(_dav("response")):
        href_node = response.find(_dav("href"))
        href = (href_node.text or "").strip() if href_node is not None else ""
        if not href or not href.endswith("/"):
            continue
        if urlsplit(href).path.rstrip("/") == base_path:
            continue
        resourcetype = response.find(f".//{_dav('resourcetype')}")
        if resourcetype is None or resourcetype.find(_caldav("calendar")) is None:
            continue

        components = response.find(f".//{_caldav('supported-calendar-component-set')}")
        comp_names = (
            {comp.get("name", "").upper() for comp in components.iter(_caldav("comp"))}
            if components is not None
            else set()
        )
        privileges = response.find(f".//{_dav('current-user-privilege-set')}")
        privilege_names = (
            {child.tag for privilege in privileges.iter(_dav("privilege")) for child in privilege}
            if privileges is not None
            else set()
        )
        display_node = response.find(f".//{_dav('displayname')}")
        name = (display_node.text or "").strip() if display_node is not None else ""
        calendars.append(
            CalendarCollection(
                url=urljoin(base_url, href),
                name=name or href.rstrip("/").rsplit("/", 1)[-1],
                supports_events=not comp_names or "VEVENT" in comp_names,
                writable=(
                    privileges is None
                    or bool(
                        privilege_names
                        & {_dav("write"), _dav("write-content"), _dav("all")}
                    )
                ),
            )
        )
    return calendars


def parse_calendar_data(body: str) -> list[str]:
    """Return every ``calendar-data`` payload in a REPORT multistatus."""
    root = _parse_xml(body)
    if root is not None:
        return [
            node.text
            for node in root.iter(_caldav("calendar-data"))
            if node.text and node.text.strip()
        ]
    # Some servers send malformed XML; fall back to slicing raw VCALENDAR blocks.
    blocks: list[str] = []
    for chunk in body.split("BEGIN:VCALENDAR")[1:]:
        end = chunk.find("END:VCALENDAR")
        if end != -1:
            blocks.append("BEGIN:VCALENDAR" + chunk[: end + len("END:VCALENDAR")])
    return blocks


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc.rsplit('@', 1)[-1]}"


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


class CalDAVAdapter(CalendarAdapter):
    """Generic CalDAV server.

    Discovery: the configured URL itself if it is a calendar collection, else
    the calendars one level below it, else the calendars below a handful of
    conventional paths on the same host.
    """

    provider_name = "caldav"
    user_agent_suffix = "Generic CalDAV"

    def __init__(
        self,
        connection: CalendarConnection,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        super().__init__(connection, http_client=http_client, timeout=timeout, metrics=metrics)
        if not connection.caldav_username or not connection.caldav_password:
            raise CredentialError("CalDAV username and password are required")
        self._auth = httpx.BasicAuth(connection.caldav_username, connection.caldav_password)
        self._calendar_urls: list[str] | None = None
        self.validate_server_url()

    def validate_server_url(self) -> None:
        url = self.connection.caldav_url
        parts = urlsplit(url or "")
        if not parts.scheme or not parts.hostname:
            raise CredentialError("A valid CalDAV server URL is required for generic CalDAV")

    # -- HTTP ----------------------------------------------------------------

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {"User-Agent": f"{USER_AGENT} ({self.user_agent_suffix})"}
        if extra:
            headers.update(extra)
        return headers

    async def _dav_request(
        self,
        method: str,
        url: str,
        *,
        body: str | bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        response = await self._send(
            method, url, headers=self._headers(headers), content=body, auth=self._auth
        )
        if response.status_code == 401:
            raise ProviderAuthError(
                f"{self.provider_name} rejected the stored username/password (401)"
            )
        return response

    async def _propfind(self, url: str, body: str, depth: str) -> httpx.Response:
        return await self._dav_request(
            "PROPFIND",
            url,
            body=body,
            headers={
                "Content-Type": "application/xml; charset=utf-8",
                "Accept": "application/xml, text/xml",
                "Depth": depth,
            },
        )

    # -- discovery -----------------------------------------------------------

    async def list_calendars(self, url: str) -> list[CalendarCollection]:
        response = await self._propfind(url, _CALENDAR_LIST_XML, "1")
        if not response.is_success:
            logger.debug("Calendar listing at %s failed with %d", url, response.status_code)
            return []
        return parse_calendar_list(response.text, url)

    async def list_event_calendar_urls(self, url: str) -> list[str]:
        return [
            calendar.url
            for calendar in await self.list_calendars(url)
            if calendar.supports_events and calendar.writable
        ]

    async def is_calendar_collection(self, url: str) -> bool:
        response = await self._propfind(url, _CALENDAR_CHECK_XML, "0")
        if not response.is_success:
            return False
        root = _parse_xml(response.text)
        return root is not None and any(True for _ in root.iter(_caldav("calendar")))

    async def _discover(self) -> list[str]:
        server_url = self.connection.caldav_url or ""
        if await self.is_calendar_collection(server_url):
            return [server_url]
        urls = await self.list_event_calendar_urls(server_url)
        if urls:
            return urls
        origin = _origin(server_url)
        for path in COMMON_CALENDAR_PATHS:
            urls = await self.list_event_calendar_urls(f"{origin}{path}")
            if urls:
                return urls
        return []

    async def discover_calendars(self) -> list[str]:
        """Return writable event calendar URLs, discovering them once per adapter."""
        if self._calendar_urls is None:
            urls = await self._discover()
            if not urls:
                raise PermanentProviderError(
                    status_code=None,
                    message="no writable event calendars discovered",
                    provider=self.provider_name,
                )
            logger.info(
                "Discovered %d %s calendar(s) for connection %s",
                len(urls),
                self.provider_name,
                self.connection.id,
            )
            self._calendar_urls = urls
        return self._calendar_urls

    # -- capability set ------------------------------------------------------

    def _event_url(self, calendar_url: str, uid: str) -> str:
        return f"{calendar_url.rstrip('/')}/{quote(uid, safe='')}.ics"

    async def create_event(self, booking: Booking) -> CreatedEvent:
        validate_booking(booking, provider=self.provider_name)
        calendar_url = select_primary_calendar(await self.discover_calendars())
        uid = generate_event_uid(booking)
        response = await self._dav_request(
            "PUT",
            self._event_url(calendar_url, uid),
            body=build_ical_event(booking, uid),
            headers={"Content-Type": "text/calendar; charset=utf-8", "If-None-Match": "*"},
        )
        if response.status_code not in (200, 201, 204):
            raise status_error(
                response.status_code, safe_error_message(response), provider=self.provider_name
            )
        return CreatedEvent(external_event_id=uid, external_calendar_id=calendar_url)

    async def update_event(self, mapping: EventMapping, booking: Booking) -> bool:
        validate_booking(booking, provider=self.provider_name)
        if not mapping.external_event_id:
            return False
        calendar_url = mapping.external_calendar_id or select_primary_calendar(
            await self.discover_calendars()
        )
        response = await self._dav_request(
            "PUT",
            self._event_url(calendar_url, mapping.external_event_id),
            body=build_ical_event(booking, mapping.external_event_id),
            headers={"Content-Type": "text/calendar; charset=utf-8", "If-Match": "*"},
        )
        # 412 with If-Match: * means the resource is gone.
        if response.status_code in (404, 410, 412):
            return False
        if response.status_code not in (200, 201, 204):
            raise status_error(
                response.status_code, safe_error_message(response), provider=self.provider_name
            )
        return True

    async def delete_event(
        self,
        external_event_id: str,
        external_calendar_id: str | None = None,
    ) -> DeleteOutcome:
        calendar_url = external_calendar_id or select_primary_calendar(
            await self.discover_calendars()
        )
        response = await self._dav_request("DELETE", self._event_url(calendar_url, external_event_id))
        if response.status_code in (404, 410):
            return DeleteOutcome.not_found
        if response.status_code not in (200, 202, 204):
            raise status_error(
                response.status_code, safe_error_message(response), provider=self.provider_name
            )
        return DeleteOutcome.deleted

    async def import_events(
        self,
        start_date: date | datetime,
        end_date: date | datetime,
    ) -> list[RemoteEvent]:
        query = calendar_query_xml(day_start(start_date), day_end(end_date))
        events: list[RemoteEvent] = []
        for calendar_url in await self.discover_calendars():
            response = await self._dav_request(
                "REPORT",
                calendar_url,
                body=query,
                headers={"Content-Type": "application/xml; charset=utf-8", "Depth": "1"},
            )
            if not response.is_success:
                raise status_error(
                    response.status_code, safe_error_message(response), provider=self.provider_name
                )
            for ical_text in parse_calendar_data(response.text):
                events.extend(parse_ical_events(ical_text, calendar_url))
        return events

    async def refresh_token(self) -> None:
        # Basic-auth credentials never expire.
        return None

    async def test_connection(self) -> None:
        await self.discover_calendars()


class ICloudCalDAVAdapter(CalDAVAdapter):
    """iCloud: principal, then calendar-home-set (both ``Depth: 0``), then the calendar list."""

    provider_name = "icloud"
    user_agent_suffix = "CalDAV"
    base_url = ICLOUD_CALDAV_BASE_URL

    def validate_server_url(self) -> None:
        return None

    async def _lookup_href(self, url: str, body: str, prop: str, what: str) -> str:
        response = await self._propfind(url, body, "0")
        if not response.is_success:
            raise status_error(
                response.status_code,
                f"{what} discovery failed: {safe_error_message(response)}",
                provider=self.provider_name,
            )
        href = _find_href(_parse_xml(response.text), prop)
        if href is None:
            raise PermanentProviderError(
                status_code=response.status_code,
                message=f"could not find {what} in discovery response",
                provider=self.provider_name,
            )
        return urljoin(url, href)

    async def _discover(self) -> list[str]:
        principal_url = await self._lookup_href(
            self.base_url,
            _CURRENT_USER_PRINCIPAL_XML,
            _dav("current-user-principal"),
            "principal URL",
        )
        home_url = await self._lookup_href(
            principal_url,
            _CALENDAR_HOME_SET_XML,
            _caldav("calendar-home-set"),
            "calendar home set",
        )
        return await self.list_event_calendar_urls(home_url)


class NextcloudCalDAVAdapter(CalDAVAdapter):
    """Nextcloud/ownCloud: calendars live under ``/remote.php/dav/calendars/<user>/``."""

    provider_name = "nextcloud"
    user_agent_suffix = "Nextcloud CalDAV"

    def calendar_home_url(self) -> str:
        server_url = self.connection.caldav_url or ""
        path = urlsplit(server_url).path
        # Keep any sub-path the instance is installed under (e.g. /nextcloud).
        prefix = path.split("/remote.php", 1)[0].rstrip("/") if "/remote.php" in path else ""
        username = quote(self.connection.caldav_username or "", safe="")
        return f"{_origin(server_url)}{prefix}/remote.php/dav/calendars/{username}/"

    async def _discover(self) -> list[str]:
        return await self.list_event_calendar_urls(self.calendar_home_url())
