"""Read access to the booking domain's ``bookings`` and ``staff_members`` tables.

The sync subsystem does not own these tables.  The only column it writes is
``bookings.calendar_event_status``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any

from calsync.db import acquire_advisory_xact_lock, acquire_conn, affected_rows, transaction
from calsync.models import Booking, BookingCalendarStatus, StaffMember

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

BOOKING_LOCK_NAMESPACE = "calsync.booking"

_BOOKING_SELECT = """
SELECT b.id, b.business_id, b.staff_member_id, b.start_time, b.end_time, b.status,
       b.service_name, b.customer_name, b.customer_email, b.customer_phone,
       b.notes, b.location, b.time_zone, b.calendar_event_status,
       s.name AS staff_name, s.email AS staff_email
FROM bookings b
LEFT JOIN staff_members s ON s.id = b.staff_member_id
"""


class BookingGateway:
    """Booking and staff lookups plus the booking calendar status write."""

    def __init__(self, pool: asyncpg.Pool | Any) -> None:
        self.pool = pool

    async def get(self, booking_id: int, *, conn: Any = None) -> Booking | None:
        async with acquire_conn(self.pool, conn) as db:
            row = await db.fetchrow(f"{_BOOKING_SELECT} WHERE b.id = $1", booking_id)
        return Booking.from_row(row) if row is not None else None

    async def get_staff_member(self, staff_member_id: int) -> StaffMember | None:
        async with acquire_conn(self.pool) as db:
            row = await db.fetchrow(
                "SELECT id, business_id, name, email, active FROM staff_members WHERE id = $1",
                staff_member_id,
            )
        return StaffMember.from_row(row) if row is not None else None

    async def list_staff(self, business_id: int) -> list[StaffMember]:
        async with acquire_conn(self.pool) as db:
            rows = await db.fetch(
                """
                SELECT id, business_id, name, email, active FROM staff_members
                WHERE business_id = $1 AND active
                ORDER BY id
                """,
                business_id,
            )
        return [StaffMember.from_row(row) for row in rows]

    async def list_booking_ids_by_status(
        self,
        business_id: int,
        statuses: Iterable[BookingCalendarStatus],
        *,
        limit: int,
        exclude: Iterable[int] = (),
    ) -> list[int]:
        """Non-cancelled booking ids in the given calendar statuses, earliest start first."""
        async with acquire_conn(self.pool) as db:
            rows = await db.fetch(
                """
                SELECT id FROM bookings
                WHERE business_id = $1
                  AND calendar_event_status = ANY($2::text[])
                  AND status <> 'cancelled'
                  AND NOT (id = ANY($3::bigint[]))
                ORDER BY start_time, id
                LIMIT $4
                """,
                business_id,
                [BookingCalendarStatus(s).value for s in statuses],
                list(exclude),
                limit,
            )
        return [row["id"] for row in rows]

    async def list_in_window(
        self,
        business_id: int,
        *,
        start: datetime,
        end: datetime,
        limit: int,
    ) -> list[tuple[int, int]]:
        """``(booking_id, staff_member_id)`` of non-cancelled bookings starting in ``[start, end]``."""
        async with acquire_conn(self.pool) as db:
            rows = await db.fetch(
                """
                SELECT id, staff_member_id FROM bookings
                WHERE business_id = $1
                  AND status <> 'cancelled'
                  AND start_time BETWEEN $2 AND $3
                ORDER BY start_time, id
                LIMIT $4
                """,
                business_id,
                start,
                end,
                limit,
            )
        return [(row["id"], row["staff_member_id"]) for row in rows]

    async def count_by_calendar_status(
        self,
        business_id: int,
        staff_member_ids: Iterable[int],
        *,
        since: datetime,
    ) -> dict[BookingCalendarStatus, int]:
        """Non-cancelled bookings of *staff_member_ids* starting at or after *since*, per status."""
        staff = list(staff_member_ids)
        if not staff:
            return {}
        async with acquire_conn(self.pool) as db:
            rows = await db.fetch(
                """
                SELECT calendar_event_status, count(*) AS total FROM bookings
                WHERE business_id = $1
                  AND staff_member_id = ANY($2::bigint[])
                  AND status <> 'cancelled'
                  AND start_time >= $3
                GROUP BY calendar_event_status
                """,
                business_id,
                staff,
                since,
            )
        return {BookingCalendarStatus(row["calendar_event_status"]): row["total"] for row in rows}

    async def update_calendar_status(
        self,
        booking_id: int,
        status: BookingCalendarStatus,
        *,
        conn: Any = None,
    ) -> bool:
        async with acquire_conn(self.pool, conn) as db:
            result = await db.execute(
                "UPDATE bookings SET calendar_event_status = $2 WHERE id = $1",
                booking_id,
                BookingCalendarStatus(status).value,
            )
        return affected_rows(result) > 0

    @asynccontextmanager
    async def lock_booking(self, booking_id: int) -> AsyncIterator[Any]:
        """Serialize work on one booking for the duration of the block.

        Holds a transaction-scoped advisory lock keyed on the booking id; the
        row itself may not exist (destroyed bookings are still locked by id).
        Yields the connection holding the lock.
        """
        async with transaction(self.pool) as conn:
            await acquire_advisory_xact_lock(conn, BOOKING_LOCK_NAMESPACE, booking_id)
            yield conn
