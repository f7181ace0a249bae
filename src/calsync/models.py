"""Domain records for calendar synchronization.

Rows from ``calendar_connections``, ``calendar_event_mappings``, ``bookings``
and ``staff_members`` are loaded into these pydantic models by the stores.
The booking and staff records belong to the booking domain; the sync
subsystem only reads them (and writes ``bookings.calendar_event_status``).
"""

from __future__ import annotations

import re
import uuid
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

GOOGLE_CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"
MICROSOFT_CALENDAR_SCOPES = frozenset(
    {
        "Calendars.ReadWrite",
        "Calendars.Read",
        "https://graph.microsoft.com/Calendars.ReadWrite",
        "https://graph.microsoft.com/Calendars.Read",
    }
)
_SCOPE_SEPARATOR = re.compile(r"[,\s]+")


class ProviderType(StrEnum):
    """Calendar provider a connection authenticates against."""

    google = "google"
    microsoft = "microsoft"
    caldav = "caldav"


class CaldavFlavor(StrEnum):
    """CalDAV server family, used to pick discovery quirks."""

    icloud = "icloud"
    nextcloud = "nextcloud"
    generic = "generic"


class AdapterKind(StrEnum):
    """Closed set of adapter implementations, resolved once per loaded connection."""

    google = "google"
    microsoft = "microsoft"
    caldav_generic = "caldav_generic"
    caldav_icloud = "caldav_icloud"
    caldav_nextcloud = "caldav_nextcloud"


class MappingStatus(StrEnum):
    pending = "pending"
    synced = "synced"
    failed = "failed"
    deleted = "deleted"


class MappingSource(StrEnum):
    """Whether a mapping row was pushed from a booking or pulled by an import."""

    booking = "booking"
    imported = "import"


class BookingCalendarStatus(StrEnum):
    """Value of ``bookings.calendar_event_status`` surfaced to the booking domain."""

    not_synced = "not_synced"
    sync_pending = "sync_pending"
    synced = "synced"
    sync_failed = "sync_failed"


class SyncAction(StrEnum):
    event_create = "event_create"
    event_update = "event_update"
    event_delete = "event_delete"
    event_import = "event_import"
    token_refresh = "token_refresh"


class SyncOutcome(StrEnum):
    success = "success"
    failed = "failed"


def _ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Calendar connection
# ---------------------------------------------------------------------------


class CalendarConnection(BaseModel):
    """A staff member's stored link to one external calendar provider."""

    model_config = ConfigDict(extra="ignore")

    id: uuid.UUID
    business_id: int
    staff_member_id: int
    provider: ProviderType
    caldav_provider: CaldavFlavor | None = None
    uid: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    scopes: str | None = None
    caldav_username: str | None = None
    caldav_password: str | None = None
    caldav_url: str | None = None
    active: bool = True
    last_synced_at: datetime | None = None
    last_sync_error: str | None = None
    connected_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    # Set by the connection store when the row is loaded.
    adapter_kind: AdapterKind | None = Field(default=None, exclude=True)

    @field_validator("token_expires_at", "last_synced_at", "connected_at", mode="after")
    @classmethod
    def _normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return _ensure_utc(value)

    @classmethod
    def from_row(cls, row: Any) -> CalendarConnection:
        return cls.model_validate(dict(row))

    def __repr__(self) -> str:
        return (
            f"CalendarConnection(id={self.id}, provider={self.provider.value!r}, "
            f"staff_member_id={self.staff_member_id}, active={self.active})"
        )

    __str__ = __repr__

    @property
    def is_oauth(self) -> bool:
        return self.provider in (ProviderType.google, ProviderType.microsoft)

    @property
    def is_caldav(self) -> bool:
        return self.provider is ProviderType.caldav

    def token_expired(self, now: datetime | None = None) -> bool:
        """Return True when the access token has a known expiry in the past."""
        if self.token_expires_at is None:
            return False
        return self.token_expires_at <= (now or datetime.now(UTC))

    def needs_refresh(self, now: datetime | None = None, window: timedelta | None = None) -> bool:
        """Return True when a refreshable token expires within *window*."""
        if not self.refresh_token or self.token_expires_at is None:
            return False
        horizon = (now or datetime.now(UTC)) + (window or timedelta(0))
        return self.token_expires_at <= horizon

    def scope_list(self) -> list[str]:
        if not self.scopes:
            return []
        return [token for token in _SCOPE_SEPARATOR.split(self.scopes.strip()) if token]

    def has_calendar_permissions(self) -> bool:
        """Check for the provider's calendar scope as an exact scope token.

        A scope string that merely contains the calendar scope (for example as
        a query parameter of another URL) does not grant permission.
        """
        if self.provider is ProviderType.caldav:
            return True
        granted = set(self.scope_list())
        if self.provider is ProviderType.google:
            return GOOGLE_CALENDAR_SCOPE in granted
        return bool(granted & MICROSOFT_CALENDAR_SCOPES)

    @property
    def display_name(self) -> str:
        if self.provider is ProviderType.google:
            return "Google Calendar"
        if self.provider is ProviderType.microsoft:
            return "Microsoft Outlook"
        if self.adapter_kind is AdapterKind.caldav_icloud:
            return "iCloud Calendar"
        if self.adapter_kind is AdapterKind.caldav_nextcloud:
            return "Nextcloud Calendar"
        if self.caldav_provider is CaldavFlavor.icloud:
            return "iCloud Calendar"
        if self.caldav_provider is CaldavFlavor.nextcloud:
            return "Nextcloud Calendar"
        return "CalDAV Calendar"


# ---------------------------------------------------------------------------
# Event mapping
# ---------------------------------------------------------------------------


class EventMapping(BaseModel):
    """Correlation between a local booking (or imported event) and a remote event."""

    model_config = ConfigDict(extra="ignore")

    id: uuid.UUID
    calendar_connection_id: uuid.UUID
    business_id: int
    booking_id: int | None = None
    source: MappingSource = MappingSource.booking
    # Null when the remote create never succeeded.
    external_event_id: str | None = None
    external_calendar_id: str | None = None
    status: MappingStatus = MappingStatus.pending
    last_error: str | None = None
    attempt_count: int = 0
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    summary: str | None = None
    last_synced_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> EventMapping:
        return cls.model_validate(dict(row))

    @property
    def is_live(self) -> bool:
        return self.status is not MappingStatus.deleted

    def can_retry(self, max_attempts: int) -> bool:
        return self.attempt_count < max_attempts


# ---------------------------------------------------------------------------
# Booking domain records (read-only collaborators)
# ---------------------------------------------------------------------------


class Booking(BaseModel):
    """A booking row as seen by the sync subsystem."""

    model_config = ConfigDict(extra="ignore")

    id: int
    business_id: int
    staff_member_id: int
    start_time: datetime
    end_time: datetime
    status: str = "confirmed"
    service_name: str | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    notes: str | None = None
    location: str | None = None
    time_zone: str = "UTC"
    staff_name: str | None = None
    staff_email: str | None = None
    calendar_event_status: BookingCalendarStatus = BookingCalendarStatus.not_synced

    @field_validator("start_time", "end_time", mode="after")
    @classmethod
    def _normalize_times(cls, value: datetime) -> datetime:
        return _ensure_utc(value)  # type: ignore[return-value]

    @field_validator("time_zone", mode="before")
    @classmethod
    def _default_time_zone(cls, value: Any) -> str:
        return value or "UTC"

    @classmethod
    def from_row(cls, row: Any) -> Booking:
        return cls.model_validate(dict(row))

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    @property
    def summary(self) -> str:
        service = self.service_name or "Booking"
        if self.customer_name:
            return f"{service} with {self.customer_name}"
        return service

    @property
    def description(self) -> str:
        lines: list[str] = []
        if self.service_name:
            lines.append(f"Service: {self.service_name}")
        if self.customer_name:
            lines.append(f"Customer: {self.customer_name}")
        if self.customer_phone:
            lines.append(f"Phone: {self.customer_phone}")
        if self.customer_email:
            lines.append(f"Email: {self.customer_email}")
        if self.notes:
            lines.append(f"Notes: {self.notes}")
        lines.append(f"Booking ID: {self.id}")
        return "\n".join(lines)


class StaffMember(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    business_id: int
    name: str | None = None
    email: str | None = None
    active: bool = True

    @classmethod
    def from_row(cls, row: Any) -> StaffMember:
        return cls.model_validate(dict(row))
