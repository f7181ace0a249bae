"""Shared fixtures and in-memory doubles for the calsync test suite.

The doubles mirror the async method signatures of the real stores and the
booking gateway so the coordinator and jobs can be exercised without
PostgreSQL.  DB-backed tests use the ``provisioned_postgres_pool`` fixture
from the root ``conftest.py`` instead.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime, timedelta
from typing import Any

import pytest

from calsync.coordinator import SyncCoordinator
from calsync.credential_store import connection_from_row
from calsync.mapping_store import SyncLogEntry, SyncStatistics
from calsync.models import (
    Booking,
    BookingCalendarStatus,
    CalendarConnection,
    EventMapping,
    MappingSource,
    MappingStatus,
    ProviderType,
    StaffMember,
    SyncAction,
    SyncOutcome,
)
from calsync.providers.base import (
    CreatedEvent,
    DeleteOutcome,
    RemoteEvent,
    TokenGrant,
)

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
BUSINESS_ID = 7
STAFF_ID = 11


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------


def make_connection(**overrides: Any) -> CalendarConnection:
    fields: dict[str, Any] = {
        "id": uuid.uuid4(),
        "business_id": BUSINESS_ID,
        "staff_member_id": STAFF_ID,
        "provider": ProviderType.google,
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "token_expires_at": datetime.now(UTC) + timedelta(hours=1),
        "scopes": "https://www.googleapis.com/auth/calendar",
        "active": True,
        "last_synced_at": datetime.now(UTC) - timedelta(hours=1),
    }
    fields.update(overrides)
    return connection_from_row(fields)


def make_caldav_connection(**overrides: Any) -> CalendarConnection:
    fields: dict[str, Any] = {
        "provider": ProviderType.caldav,
        "access_token": None,
        "refresh_token": None,
        "token_expires_at": None,
        "scopes": None,
        "caldav_username": "staff@example.com",
        "caldav_password": "app-password",
        "caldav_url": "https://dav.example.com/calendars/staff/",
    }
    fields.update(overrides)
    return make_connection(**fields)


def make_booking(**overrides: Any) -> Booking:
    fields: dict[str, Any] = {
        "id": 101,
        "business_id": BUSINESS_ID,
        "staff_member_id": STAFF_ID,
        "start_time": NOW + timedelta(days=1),
        "end_time": NOW + timedelta(days=1, hours=1),
        "status": "confirmed",
        "service_name": "Haircut",
        "customer_name": "Ada Lovelace",
        "customer_email": "ada@example.com",
        "staff_name": "Sam Staff",
        "staff_email": "sam@example.com",
    }
    fields.update(overrides)
    return Booking.model_validate(fields)


# ---------------------------------------------------------------------------
# Store doubles
# ---------------------------------------------------------------------------


class InMemoryConnectionStore:
    """Connection store double; reads return copies, like a fresh DB read."""

    def __init__(self) -> None:
        self.rows: dict[uuid.UUID, CalendarConnection] = {}
        self.pool = _NullPool()
        self.token_updates: list[dict[str, Any]] = []
        self._locks: dict[uuid.UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    def add(self, connection: CalendarConnection) -> CalendarConnection:
        self.rows[connection.id] = connection
        return connection

    def _copy(self, connection: CalendarConnection) -> CalendarConnection:
        return connection_from_row(connection.model_dump())

    def _update(self, connection_id: uuid.UUID, **fields: Any) -> None:
        current = self.rows[connection_id]
        self.rows[connection_id] = connection_from_row({**current.model_dump(), **fields})

    async def create(self, *, conn: Any = None, **fields: Any) -> CalendarConnection:
        provider = ProviderType(fields["provider"])
        for existing in self.rows.values():
            if (
                existing.active
                and existing.staff_member_id == fields["staff_member_id"]
                and existing.provider is provider
            ):
                raise AssertionError("active connection already exists for staff/provider")
        connection = connection_from_row({"id": uuid.uuid4(), "active": True, **fields})
        self.rows[connection.id] = connection
        return self._copy(connection)

    async def update_tokens(
        self,
        connection_id: uuid.UUID,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
        conn: Any = None,
    ) -> None:
        self.token_updates.append(
            {"id": connection_id, "access_token": access_token, "refresh_token": refresh_token}
        )
        current = self.rows[connection_id]
        self._update(
            connection_id,
            access_token=access_token,
            refresh_token=refresh_token or current.refresh_token,
            token_expires_at=expires_at,
            last_sync_error=None,
        )

    async def mark_synced(
        self, connection_id: uuid.UUID, *, at: datetime | None = None, conn: Any = None
    ) -> None:
        self._update(connection_id, last_synced_at=at or datetime.now(UTC), last_sync_error=None)

    async def record_error(self, connection_id: uuid.UUID, message: str, *, conn: Any = None) -> None:
        self._update(connection_id, last_sync_error=message)

    async def deactivate(
        self, connection_id: uuid.UUID, *, reason: str | None = None, conn: Any = None
    ) -> bool:
        current = self.rows.get(connection_id)
        if current is None or not current.active:
            return False
        self._update(
            connection_id, active=False, last_sync_error=reason or current.last_sync_error
        )
        return True

    async def deactivate_for_staff_provider(
        self, staff_member_id: int, provider: ProviderType | str, *, conn: Any = None
    ) -> int:
        count = 0
        for connection in list(self.rows.values()):
            if (
                connection.active
                and connection.staff_member_id == staff_member_id
                and connection.provider is ProviderType(provider)
            ):
                self._update(connection.id, active=False)
                count += 1
        return count

    async def get(self, connection_id: uuid.UUID, *, conn: Any = None) -> CalendarConnection | None:
        connection = self.rows.get(connection_id)
        return self._copy(connection) if connection is not None else None

    async def list_active_for_staff(
        self, staff_member_id: int, business_id: int
    ) -> list[CalendarConnection]:
        return [
            self._copy(c)
            for c in self.rows.values()
            if c.active and c.staff_member_id == staff_member_id and c.business_id == business_id
        ]

    async def list_active(self, business_id: int | None = None) -> list[CalendarConnection]:
        return [
            self._copy(c)
            for c in self.rows.values()
            if c.active and (business_id is None or c.business_id == business_id)
        ]

    async def list_expiring(self, before: datetime) -> list[CalendarConnection]:
        return [
            self._copy(c)
            for c in self.rows.values()
            if c.active
            and c.refresh_token
            and c.token_expires_at is not None
            and c.token_expires_at <= before
        ]

    async def list_staff_with_active_connections(
        self, business_id: int | None = None
    ) -> list[tuple[int, int]]:
        pairs = {
            (c.business_id, c.staff_member_id)
            for c in self.rows.values()
            if c.active and (business_id is None or c.business_id == business_id)
        }
        return sorted(pairs)

    @asynccontextmanager
    async def lock_for_update(
        self, connection_id: uuid.UUID
    ) -> AsyncIterator[tuple[Any, CalendarConnection | None]]:
        async with self._locks[connection_id]:
            connection = self.rows.get(connection_id)
            yield object(), (self._copy(connection) if connection is not None else None)


class InMemoryMappingStore:
    def __init__(self) -> None:
        self.rows: dict[uuid.UUID, EventMapping] = {}
        self.logs: list[dict[str, Any]] = []
        self.existing_booking_ids: set[int] = set()

    def add(self, **fields: Any) -> EventMapping:
        mapping = EventMapping.model_validate({"id": uuid.uuid4(), **fields})
        self.rows[mapping.id] = mapping
        return mapping

    def _replace(self, mapping: EventMapping, **fields: Any) -> EventMapping:
        updated = mapping.model_copy(update=fields)
        self.rows[mapping.id] = updated
        return updated

    def _find(self, connection_id: uuid.UUID, booking_id: int) -> EventMapping | None:
        for mapping in self.rows.values():
            if mapping.calendar_connection_id == connection_id and mapping.booking_id == booking_id:
                return mapping
        return None

    def for_booking(self, booking_id: int) -> list[EventMapping]:
        return [m for m in self.rows.values() if m.booking_id == booking_id]

    async def upsert_for_booking(
        self,
        *,
        connection_id: uuid.UUID,
        business_id: int,
        booking_id: int,
        external_event_id: str,
        external_calendar_id: str | None,
        conn: Any = None,
    ) -> EventMapping:
        fields = {
            "external_event_id": external_event_id,
            "external_calendar_id": external_calendar_id,
            "status": MappingStatus.synced,
            "last_error": None,
            "attempt_count": 0,
            "last_synced_at": datetime.now(UTC),
        }
        existing = self._find(connection_id, booking_id)
        if existing is not None:
            return self._replace(existing, **fields)
        return self.add(
            calendar_connection_id=connection_id,
            business_id=business_id,
            booking_id=booking_id,
            source=MappingSource.booking,
            **fields,
        )

    async def record_failure(
        self,
        *,
        connection_id: uuid.UUID,
        business_id: int,
        booking_id: int,
        error: str,
        conn: Any = None,
    ) -> EventMapping:
        existing = self._find(connection_id, booking_id)
        if existing is not None:
            return self._replace(
                existing,
                status=MappingStatus.failed,
                last_error=error,
                attempt_count=existing.attempt_count + 1,
            )
        return self.add(
            calendar_connection_id=connection_id,
            business_id=business_id,
            booking_id=booking_id,
            status=MappingStatus.failed,
            last_error=error,
            attempt_count=1,
        )

    async def mark_deleted(self, mapping_id: uuid.UUID, *, conn: Any = None) -> bool:
        mapping = self.rows.get(mapping_id)
        if mapping is None or mapping.status is MappingStatus.deleted:
            return False
        self._replace(mapping, status=MappingStatus.deleted, last_error=None)
        return True

    async def get_for_booking(
        self, connection_id: uuid.UUID, booking_id: int, *, conn: Any = None
    ) -> EventMapping | None:
        return self._find(connection_id, booking_id)

    async def get_by_external_id(
        self, connection_id: uuid.UUID, external_event_id: str, *, conn: Any = None
    ) -> EventMapping | None:
        for mapping in self.rows.values():
            if (
                mapping.calendar_connection_id == connection_id
                and mapping.external_event_id == external_event_id
            ):
                return mapping
        return None

    async def list_live_for_booking(
        self, booking_id: int, business_id: int, *, conn: Any = None
    ) -> list[EventMapping]:
        return [
            m
            for m in self.rows.values()
            if m.booking_id == booking_id
            and m.business_id == business_id
            and m.source is MappingSource.booking
            and m.status is not MappingStatus.deleted
            and m.external_event_id is not None
        ]

    async def list_for_connection(
        self, connection_id: uuid.UUID, *, source: MappingSource | None = None
    ) -> list[EventMapping]:
        return [
            m
            for m in self.rows.values()
            if m.calendar_connection_id == connection_id and (source is None or m.source is source)
        ]

    async def list_exhausted_booking_ids(self, business_id: int, max_attempts: int) -> set[int]:
        return {
            m.booking_id
            for m in self.rows.values()
            if m.business_id == business_id
            and m.status is MappingStatus.failed
            and m.attempt_count >= max_attempts
            and m.booking_id is not None
        }

    async def list_failed(self, business_id: int, *, limit: int = 20) -> list[EventMapping]:
        failed = [
            m
            for m in self.rows.values()
            if m.business_id == business_id
            and m.source is MappingSource.booking
            and m.status is MappingStatus.failed
        ]
        return failed[:limit]

    async def find_orphaned(
        self, *, business_id: int | None = None, connection_id: uuid.UUID | None = None
    ) -> list[EventMapping]:
        if business_id is None and connection_id is None:
            raise ValueError("find_orphaned requires business_id or connection_id")
        return [
            m
            for m in self.rows.values()
            if m.source is MappingSource.booking
            and m.status is not MappingStatus.deleted
            and m.booking_id is not None
            and m.booking_id not in self.existing_booking_ids
            and (business_id is None or m.business_id == business_id)
            and (connection_id is None or m.calendar_connection_id == connection_id)
        ]

    async def list_imported(
        self, connection_id: uuid.UUID, start: datetime, end: datetime, *, conn: Any = None
    ) -> list[EventMapping]:
        return [
            m
            for m in self.rows.values()
            if m.calendar_connection_id == connection_id
            and m.source is MappingSource.imported
            and m.starts_at < end
            and m.ends_at > start
        ]

    def imported(self, connection_id: uuid.UUID) -> list[EventMapping]:
        return [
            m
            for m in self.rows.values()
            if m.calendar_connection_id == connection_id and m.source is MappingSource.imported
        ]

    async def insert_imported(
        self,
        *,
        connection_id: uuid.UUID,
        business_id: int,
        events: Iterable[RemoteEvent],
        conn: Any = None,
    ) -> int:
        inserted = 0
        for event in events:
            if await self.get_by_external_id(connection_id, event.external_event_id) is not None:
                continue
            self.add(
                calendar_connection_id=connection_id,
                business_id=business_id,
                source=MappingSource.imported,
                external_event_id=event.external_event_id,
                external_calendar_id=event.external_calendar_id,
                status=MappingStatus.synced,
                starts_at=event.starts_at,
                ends_at=event.ends_at,
                summary=event.summary,
            )
            inserted += 1
        return inserted

    async def update_imported(
        self, mapping_id: uuid.UUID, event: RemoteEvent, *, conn: Any = None
    ) -> None:
        self._replace(
            self.rows[mapping_id],
            starts_at=event.starts_at,
            ends_at=event.ends_at,
            summary=event.summary,
        )

    async def prune_imported(
        self, connection_id: uuid.UUID, mapping_ids: Iterable[uuid.UUID], *, conn: Any = None
    ) -> int:
        pruned = 0
        for mapping_id in list(mapping_ids):
            mapping = self.rows.get(mapping_id)
            if mapping is not None and mapping.source is MappingSource.imported:
                del self.rows[mapping_id]
                pruned += 1
        return pruned

    async def log_attempt(self, **fields: Any) -> None:
        fields.pop("conn", None)
        self.logs.append({"created_at": datetime.now(UTC), **fields})

    async def recent_failures(self, business_id: int, *, limit: int = 10) -> list[SyncLogEntry]:
        failures = [
            log
            for log in reversed(self.logs)
            if log["business_id"] == business_id and log["outcome"] is SyncOutcome.failed
        ]
        return [
            SyncLogEntry(
                id=index,
                business_id=log["business_id"],
                booking_id=log.get("booking_id"),
                provider=log["provider"],
                action=log["action"].value,
                outcome=log["outcome"].value,
                message=log.get("message"),
                created_at=log["created_at"],
            )
            for index, log in enumerate(failures[:limit], start=1)
        ]

    async def statistics(self, business_id: int, since: datetime) -> SyncStatistics:
        booking_actions = {SyncAction.event_create, SyncAction.event_update, SyncAction.event_delete}
        relevant = [
            log
            for log in self.logs
            if log["business_id"] == business_id
            and log["created_at"] >= since
            and log["action"] in booking_actions
        ]
        successful = sum(1 for log in relevant if log["outcome"] is SyncOutcome.success)
        return SyncStatistics(
            total_attempts=len(relevant),
            successful=successful,
            failed=len(relevant) - successful,
        )


class InMemoryBookingGateway:
    def __init__(self, mappings: InMemoryMappingStore | None = None) -> None:
        self.bookings: dict[int, Booking] = {}
        self.staff: dict[int, StaffMember] = {}
        self.status_history: list[tuple[int, BookingCalendarStatus]] = []
        self.lock_history: list[int] = []
        self._locks: dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._mappings = mappings

    def add(self, booking: Booking) -> Booking:
        self.bookings[booking.id] = booking
        self.staff.setdefault(
            booking.staff_member_id,
            StaffMember(id=booking.staff_member_id, business_id=booking.business_id),
        )
        if self._mappings is not None:
            self._mappings.existing_booking_ids.add(booking.id)
        return booking

    def destroy(self, booking_id: int) -> None:
        del self.bookings[booking_id]
        if self._mappings is not None:
            self._mappings.existing_booking_ids.discard(booking_id)

    async def get(self, booking_id: int, *, conn: Any = None) -> Booking | None:
        booking = self.bookings.get(booking_id)
        return booking.model_copy() if booking is not None else None

    async def get_staff_member(self, staff_member_id: int) -> StaffMember | None:
        return self.staff.get(staff_member_id)

    async def list_staff(self, business_id: int) -> list[StaffMember]:
        return [s for s in self.staff.values() if s.business_id == business_id and s.active]

    async def list_booking_ids_by_status(
        self,
        business_id: int,
        statuses: Iterable[BookingCalendarStatus],
        *,
        limit: int,
        exclude: Iterable[int] = (),
    ) -> list[int]:
        wanted = set(statuses)
        excluded = set(exclude)
        matches = sorted(
            (
                b
                for b in self.bookings.values()
                if b.business_id == business_id
                and b.calendar_event_status in wanted
                and not b.is_cancelled
                and b.id not in excluded
            ),
            key=lambda b: (b.start_time, b.id),
        )
        return [b.id for b in matches[:limit]]

    async def list_in_window(
        self, business_id: int, *, start: datetime, end: datetime, limit: int
    ) -> list[tuple[int, int]]:
        matches = sorted(
            (
                b
                for b in self.bookings.values()
                if b.business_id == business_id
                and not b.is_cancelled
                and start <= b.start_time <= end
            ),
            key=lambda b: (b.start_time, b.id),
        )
        return [(b.id, b.staff_member_id) for b in matches[:limit]]

    async def count_by_calendar_status(
        self, business_id: int, staff_member_ids: Iterable[int], *, since: datetime
    ) -> dict[BookingCalendarStatus, int]:
        staff = set(staff_member_ids)
        counts: dict[BookingCalendarStatus, int] = {}
        for booking in self.bookings.values():
            if (
                booking.business_id == business_id
                and booking.staff_member_id in staff
                and not booking.is_cancelled
                and booking.start_time >= since
            ):
                status = booking.calendar_event_status
                counts[status] = counts.get(status, 0) + 1
        return counts

    async def update_calendar_status(
        self, booking_id: int, status: BookingCalendarStatus, *, conn: Any = None
    ) -> bool:
        self.status_history.append((booking_id, status))
        booking = self.bookings.get(booking_id)
        if booking is None:
            return False
        self.bookings[booking_id] = booking.model_copy(update={"calendar_event_status": status})
        return True

    @asynccontextmanager
    async def lock_booking(self, booking_id: int) -> AsyncIterator[Any]:
        async with self._locks[booking_id]:
            self.lock_history.append(booking_id)
            yield object()


class _NullPool:
    """Stands in for a pool where a double never touches it."""

    def acquire(self) -> Any:
        raise AssertionError("in-memory store double does not use a pool")


# ---------------------------------------------------------------------------
# Adapter and token manager doubles
# ---------------------------------------------------------------------------


class FakeAdapter:
    """Scripted provider adapter holding its remote events in memory."""

    provider_name = "fake"

    def __init__(self, connection: CalendarConnection) -> None:
        self.connection = connection
        self.remote: dict[str, Booking] = {}
        self.busy: list[RemoteEvent] = []
        self.calls: list[tuple[str, Any]] = []
        self.create_error: BaseException | None = None
        self.update_error: BaseException | None = None
        self.delete_error: BaseException | None = None
        self.import_error: BaseException | None = None
        self.test_error: BaseException | None = None
        self._counter = 0

    async def __aenter__(self) -> FakeAdapter:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None

    async def aclose(self) -> None:
        return None

    async def create_event(self, booking: Booking) -> CreatedEvent:
        self.calls.append(("create", booking.id))
        # Yield like a network call so concurrent callers interleave.
        await asyncio.sleep(0)
        if self.create_error is not None:
            raise self.create_error
        self._counter += 1
        event_id = f"evt-{self.connection.id.hex[:6]}-{self._counter}"
        self.remote[event_id] = booking
        return CreatedEvent(event_id, "primary")

    async def update_event(self, mapping: EventMapping, booking: Booking) -> bool:
        self.calls.append(("update", mapping.external_event_id))
        if self.update_error is not None:
            raise self.update_error
        if mapping.external_event_id not in self.remote:
            return False
        self.remote[mapping.external_event_id] = booking
        return True

    async def delete_event(
        self, external_event_id: str, external_calendar_id: str | None = None
    ) -> DeleteOutcome:
        self.calls.append(("delete", external_event_id))
        if self.delete_error is not None:
            raise self.delete_error
        if self.remote.pop(external_event_id, None) is None:
            return DeleteOutcome.not_found
        return DeleteOutcome.deleted

    async def import_events(
        self, start_date: date | datetime, end_date: date | datetime
    ) -> list[RemoteEvent]:
        self.calls.append(("import", (start_date, end_date)))
        if self.import_error is not None:
            raise self.import_error
        return list(self.busy)

    async def refresh_token(self) -> TokenGrant | None:
        return None

    async def test_connection(self) -> None:
        self.calls.append(("test", None))
        if self.test_error is not None:
            raise self.test_error


class AdapterPool:
    """Adapter factory handing out one persistent FakeAdapter per connection."""

    def __init__(self) -> None:
        self.adapters: dict[uuid.UUID, FakeAdapter] = {}

    def __getitem__(self, connection: CalendarConnection | uuid.UUID) -> FakeAdapter:
        connection_id = connection if isinstance(connection, uuid.UUID) else connection.id
        return self.adapters[connection_id]

    def prepare(self, connection: CalendarConnection) -> FakeAdapter:
        return self.adapters.setdefault(connection.id, FakeAdapter(connection))

    def build(self, connection: CalendarConnection) -> FakeAdapter:
        adapter = self.prepare(connection)
        adapter.connection = connection
        return adapter


class FakeTokenManager:
    def __init__(self) -> None:
        self.unusable: set[uuid.UUID] = set()
        self.checked: list[uuid.UUID] = []

    async def ensure_fresh(self, connection: CalendarConnection) -> CalendarConnection | None:
        self.checked.append(connection.id)
        if connection.id in self.unusable:
            return None
        return connection

    async def handle_unauthorized(self, adapter: Any) -> str:
        return "fresh-token"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def connections() -> InMemoryConnectionStore:
    return InMemoryConnectionStore()


@pytest.fixture
def mappings() -> InMemoryMappingStore:
    return InMemoryMappingStore()


@pytest.fixture
def bookings(mappings: InMemoryMappingStore) -> InMemoryBookingGateway:
    return InMemoryBookingGateway(mappings)


@pytest.fixture
def token_manager() -> FakeTokenManager:
    return FakeTokenManager()


@pytest.fixture
def adapters() -> AdapterPool:
    return AdapterPool()


@pytest.fixture
def coordinator_factory(
    connections: InMemoryConnectionStore,
    mappings: InMemoryMappingStore,
    bookings: InMemoryBookingGateway,
    token_manager: FakeTokenManager,
    adapters: AdapterPool,
):
    def _factory() -> SyncCoordinator:
        return SyncCoordinator(
            connections,  # type: ignore[arg-type]
            mappings,  # type: ignore[arg-type]
            bookings,  # type: ignore[arg-type]
            token_manager,  # type: ignore[arg-type]
            adapter_factory=adapters.build,
        )

    return _factory


@pytest.fixture
def coordinator(coordinator_factory) -> SyncCoordinator:
    return coordinator_factory()
