"""Event mapping and sync log store.

``calendar_event_mappings`` correlates one local booking (or one imported
remote event) with one remote event per calendar connection:

- booking rows (``source = 'booking'``) are upserted on
  ``(calendar_connection_id, booking_id)`` so a re-sync updates rather than
  duplicates, and are soft-deleted (``status = 'deleted'``);
- import rows (``source = 'import'``) hold the busy intervals pulled from a
  provider and are hard-deleted when the remote event disappears.

``booking_id`` is a weak reference: there is no foreign key to ``bookings``.
Mappings whose booking has gone are found by :meth:`EventMappingStore.find_orphaned`.

``calendar_sync_logs`` is an append-only record of every sync attempt and
backs :meth:`EventMappingStore.statistics`.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from calsync.credential_store import ensure_connections_schema
from calsync.db import acquire_conn, affected_rows
from calsync.models import (
    EventMapping,
    MappingSource,
    SyncAction,
    SyncOutcome,
)
from calsync.providers.base import RemoteEvent, sanitize_error_message

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_MAPPINGS = "calendar_event_mappings"
_LOGS = "calendar_sync_logs"
_BOOKINGS = "bookings"

_MAPPINGS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_MAPPINGS} (
    id                     UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    calendar_connection_id UUID NOT NULL REFERENCES calendar_connections (id) ON DELETE CASCADE,
    business_id            BIGINT NOT NULL,
    booking_id             BIGINT,
    source                 TEXT NOT NULL DEFAULT 'booking' CHECK (source IN ('booking', 'import')),
    external_event_id      TEXT,
    external_calendar_id   TEXT,
    status                 TEXT NOT NULL DEFAULT 'pending'
                           CHECK (status IN ('pending', 'synced', 'failed', 'deleted')),
    last_error             TEXT,
    attempt_count          INTEGER NOT NULL DEFAULT 0,
    starts_at              TIMESTAMPTZ,
    ends_at                TIMESTAMPTZ,
    summary                TEXT,
    last_synced_at         TIMESTAMPTZ,
    created_at             TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at             TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT uq_calendar_event_mappings_external
        UNIQUE (calendar_connection_id, external_event_id)
)
"""

_MAPPINGS_INDEXES_DDL = (
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS uq_calendar_event_mappings_booking
    ON {_MAPPINGS} (calendar_connection_id, booking_id)
    WHERE booking_id IS NOT NULL
    """,
    f"""
    CREATE INDEX IF NOT EXISTS ix_calendar_event_mappings_business_booking
    ON {_MAPPINGS} (business_id, booking_id)
    """,
    f"""
    CREATE INDEX IF NOT EXISTS ix_calendar_event_mappings_import_window
    ON {_MAPPINGS} (calendar_connection_id, starts_at)
    WHERE source = 'import'
    """,
)

_LOGS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_LOGS} (
    id                     BIGSERIAL PRIMARY KEY,
    mapping_id             UUID REFERENCES {_MAPPINGS} (id) ON DELETE SET NULL,
    calendar_connection_id UUID,
    business_id            BIGINT NOT NULL,
    booking_id             BIGINT,
    provider               TEXT NOT NULL,
    action                 TEXT NOT NULL,
    outcome                TEXT NOT NULL CHECK (outcome IN ('success', 'failed')),
    message                TEXT,
    created_at             TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_LOGS_INDEX_DDL = f"""
CREATE INDEX IF NOT EXISTS ix_calendar_sync_logs_business_created
ON {_LOGS} (business_id, created_at DESC)
"""

# Actions that count towards booking sync statistics.
_BOOKING_ACTIONS = [
    SyncAction.event_create.value,
    SyncAction.event_update.value,
    SyncAction.event_delete.value,
]


@dataclass(frozen=True)
class SyncLogEntry:
    id: int
    business_id: int
    booking_id: int | None
    provider: str
    action: str
    outcome: str
    message: str | None
    created_at: datetime

    @classmethod
    def from_row(cls, row: Any) -> SyncLogEntry:
        return cls(
            id=row["id"],
            business_id=row["business_id"],
            booking_id=row["booking_id"],
            provider=row["provider"],
            action=row["action"],
            outcome=row["outcome"],
            message=row["message"],
            created_at=row["created_at"],
        )


@dataclass
class SyncStatistics:
    """Aggregate sync attempt counts for an admin dashboard."""

    total_attempts: int = 0
    successful: int = 0
    failed: int = 0
    recent_failures: list[SyncLogEntry] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        """Successful attempts as a percentage, rounded to one decimal."""
        if self.total_attempts == 0:
            return 0.0
        return round(self.successful / self.total_attempts * 100, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_attempts": self.total_attempts,
            "successful": self.successful,
            "failed": self.failed,
            "success_rate": self.success_rate,
        }


def _mappings(rows: Iterable[Any]) -> list[EventMapping]:
    return [EventMapping.from_row(row) for row in rows]


class EventMappingStore:
    """Async data access for ``calendar_event_mappings`` and ``calendar_sync_logs``."""

    def __init__(self, pool: asyncpg.Pool | Any) -> None:
        self.pool = pool

    def __repr__(self) -> str:
        return f"EventMappingStore(table={_MAPPINGS!r})"

    # ------------------------------------------------------------------
    # Booking mappings
    # ------------------------------------------------------------------

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
        """Record a successful push; one row per (connection, booking)."""
        async with acquire_conn(self.pool, conn) as db:
            row = await db.fetchrow(
                f"""
                INSERT INTO {_MAPPINGS}
                    (calendar_connection_id, business_id, booking_id, source,
                     external_event_id, external_calendar_id, status,
                     last_error, attempt_count, last_synced_at)
                VALUES ($1, $2, $3, 'booking', $4, $5, 'synced', NULL, 0, now())
                ON CONFLICT (calendar_connection_id, booking_id) WHERE booking_id IS NOT NULL
                DO UPDATE SET
                    external_event_id    = EXCLUDED.external_event_id,
                    external_calendar_id = EXCLUDED.external_calendar_id,
                    status               = 'synced',
                    last_error           = NULL,
                    attempt_count        = 0,
                    last_synced_at       = now(),
                    updated_at           = now()
                RETURNING *
                """,
                connection_id,
                business_id,
                booking_id,
                external_event_id,
                external_calendar_id,
            )
        return EventMapping.from_row(row)

    async def record_failure(
        self,
        *,
        connection_id: uuid.UUID,
        business_id: int,
        booking_id: int,
        error: str,
        conn: Any = None,
    ) -> EventMapping:
        """Mark the (connection, booking) mapping failed and bump its attempt count.

        Remote identifiers already recorded are kept so the next attempt updates
        the existing remote event instead of creating a second one.
        """
        async with acquire_conn(self.pool, conn) as db:
            row = await db.fetchrow(
                f"""
                INSERT INTO {_MAPPINGS}
                    (calendar_connection_id, business_id, booking_id, source,
                     status, last_error, attempt_count)
                VALUES ($1, $2, $3, 'booking', 'failed', $4, 1)
                ON CONFLICT (calendar_connection_id, booking_id) WHERE booking_id IS NOT NULL
                DO UPDATE SET
                    status        = 'failed',
                    last_error    = EXCLUDED.last_error,
                    attempt_count = {_MAPPINGS}.attempt_count + 1,
                    updated_at    = now()
                RETURNING *
                """,
                connection_id,
                business_id,
                booking_id,
                sanitize_error_message(error),
            )
        return EventMapping.from_row(row)

    async def mark_deleted(self, mapping_id: uuid.UUID, *, conn: Any = None) -> bool:
        async with acquire_conn(self.pool, conn) as db:
            result = await db.execute(
                f"""
                UPDATE {_MAPPINGS}
                SET status = 'deleted', last_error = NULL, updated_at = now()
                WHERE id = $1 AND status <> 'deleted'
                """,
                mapping_id,
            )
        return affected_rows(result) > 0

    async def get_for_booking(
        self,
        connection_id: uuid.UUID,
        booking_id: int,
        *,
        conn: Any = None,
    ) -> EventMapping | None:
        async with acquire_conn(self.pool, conn) as db:
            row = await db.fetchrow(
                f"""
                SELECT * FROM {_MAPPINGS}
                WHERE calendar_connection_id = $1 AND booking_id = $2
                """,
                connection_id,
                booking_id,
            )
        return EventMapping.from_row(row) if row is not None else None

    async def get_by_external_id(
        self,
        connection_id: uuid.UUID,
        external_event_id: str,
        *,
        conn: Any = None,
    ) -> EventMapping | None:
        async with acquire_conn(self.pool, conn) as db:
            row = await db.fetchrow(
                f"""
                SELECT * FROM {_MAPPINGS}
                WHERE calendar_connection_id = $1 AND external_event_id = $2
                """,
                connection_id,
                external_event_id,
            )
        return EventMapping.from_row(row) if row is not None else None

    async def list_live_for_booking(
        self,
        booking_id: int,
        business_id: int,
        *,
        conn: Any = None,
    ) -> list[EventMapping]:
        """Non-deleted booking mappings that point at a remote event.

        Looks up by booking id and business id only, so it also serves bookings
        whose row has already been destroyed.
        """
        async with acquire_conn(self.pool, conn) as db:
            rows = await db.fetch(
                f"""
                SELECT * FROM {_MAPPINGS}
                WHERE booking_id = $1
                  AND business_id = $2
                  AND source = 'booking'
                  AND status <> 'deleted'
                  AND external_event_id IS NOT NULL
                ORDER BY created_at, id
                """,
                booking_id,
                business_id,
            )
        return _mappings(rows)

    async def list_for_connection(
        self,
        connection_id: uuid.UUID,
        *,
        source: MappingSource | None = None,
    ) -> list[EventMapping]:
        async with acquire_conn(self.pool) as db:
            if source is None:
                rows = await db.fetch(
                    f"SELECT * FROM {_MAPPINGS} WHERE calendar_connection_id = $1 ORDER BY created_at",
                    connection_id,
                )
            else:
                rows = await db.fetch(
                    f"""
                    SELECT * FROM {_MAPPINGS}
                    WHERE calendar_connection_id = $1 AND source = $2
                    ORDER BY created_at
                    """,
                    connection_id,
                    MappingSource(source).value,
                )
        return _mappings(rows)

    async def list_exhausted_booking_ids(self, business_id: int, max_attempts: int) -> set[int]:
        """Bookings with a failed mapping that has used up its attempts."""
        async with acquire_conn(self.pool) as db:
            rows = await db.fetch(
                f"""
                SELECT DISTINCT booking_id FROM {_MAPPINGS}
                WHERE business_id = $1
                  AND source = 'booking'
                  AND status = 'failed'
                  AND attempt_count >= $2
                  AND booking_id IS NOT NULL
                """,
                business_id,
                max_attempts,
            )
        return {row["booking_id"] for row in rows}

    async def list_failed(self, business_id: int, *, limit: int = 20) -> list[EventMapping]:
        """Failed booking mappings, most recently updated first."""
        async with acquire_conn(self.pool) as db:
            rows = await db.fetch(
                f"""
                SELECT * FROM {_MAPPINGS}
                WHERE business_id = $1
                  AND source = 'booking'
                  AND status = 'failed'
                ORDER BY updated_at DESC, id
                LIMIT $2
                """,
                business_id,
                limit,
            )
        return _mappings(rows)

    async def find_orphaned(
        self,
        *,
        business_id: int | None = None,
        connection_id: uuid.UUID | None = None,
    ) -> list[EventMapping]:
        """Live booking mappings whose booking row no longer exists.

        Scoped to one business or one connection; at least one is required.
        """
        if business_id is None and connection_id is None:
            raise ValueError("find_orphaned requires business_id or connection_id")
        async with acquire_conn(self.pool) as db:
            rows = await db.fetch(
                f"""
                SELECT m.* FROM {_MAPPINGS} m
                WHERE m.source = 'booking'
                  AND m.status <> 'deleted'
                  AND m.booking_id IS NOT NULL
                  AND ($1::bigint IS NULL OR m.business_id = $1)
                  AND ($2::uuid IS NULL OR m.calendar_connection_id = $2)
                  AND NOT EXISTS (SELECT 1 FROM {_BOOKINGS} b WHERE b.id = m.booking_id)
                ORDER BY m.created_at
                """,
                business_id,
                connection_id,
            )
        return _mappings(rows)

    # ------------------------------------------------------------------
    # Imported events
    # ------------------------------------------------------------------

    async def list_imported(
        self,
        connection_id: uuid.UUID,
        start: datetime,
        end: datetime,
        *,
        conn: Any = None,
    ) -> list[EventMapping]:
        """Import rows on *connection_id* overlapping ``[start, end)``."""
        async with acquire_conn(self.pool, conn) as db:
            rows = await db.fetch(
                f"""
                SELECT * FROM {_MAPPINGS}
                WHERE calendar_connection_id = $1
                  AND source = 'import'
                  AND starts_at < $3
                  AND ends_at > $2
                ORDER BY starts_at
                """,
                connection_id,
                start,
                end,
            )
        return _mappings(rows)

    async def insert_imported(
        self,
        *,
        connection_id: uuid.UUID,
        business_id: int,
        events: Iterable[RemoteEvent],
        conn: Any = None,
    ) -> int:
        """Insert import rows; remote ids already mapped on the connection are left alone."""
        inserted = 0
        async with acquire_conn(self.pool, conn) as db:
            for event in events:
                result = await db.execute(
                    f"""
                    INSERT INTO {_MAPPINGS}
                        (calendar_connection_id, business_id, source, external_event_id,
                         external_calendar_id, status, starts_at, ends_at, summary,
                         last_synced_at)
                    VALUES ($1, $2, 'import', $3, $4, 'synced', $5, $6, $7, now())
                    ON CONFLICT (calendar_connection_id, external_event_id) DO NOTHING
                    """,
                    connection_id,
                    business_id,
                    event.external_event_id,
                    event.external_calendar_id,
                    event.starts_at,
                    event.ends_at,
                    event.summary,
                )
                inserted += affected_rows(result)
        return inserted

    async def update_imported(
        self,
        mapping_id: uuid.UUID,
        event: RemoteEvent,
        *,
        conn: Any = None,
    ) -> None:
        """Move an import row to the remote event's current interval."""
        async with acquire_conn(self.pool, conn) as db:
            await db.execute(
                f"""
                UPDATE {_MAPPINGS}
                SET starts_at = $2, ends_at = $3, summary = $4,
                    last_synced_at = now(), updated_at = now()
                WHERE id = $1 AND source = 'import'
                """,
                mapping_id,
                event.starts_at,
                event.ends_at,
                event.summary,
            )

    async def prune_imported(
        self,
        connection_id: uuid.UUID,
        mapping_ids: Iterable[uuid.UUID],
        *,
        conn: Any = None,
    ) -> int:
        ids = list(mapping_ids)
        if not ids:
            return 0
        async with acquire_conn(self.pool, conn) as db:
            result = await db.execute(
                f"""
                DELETE FROM {_MAPPINGS}
                WHERE calendar_connection_id = $1
                  AND source = 'import'
                  AND id = ANY($2::uuid[])
                """,
                connection_id,
                ids,
            )
        return affected_rows(result)

    # ------------------------------------------------------------------
    # Sync log
    # ------------------------------------------------------------------

    async def log_attempt(
        self,
        *,
        business_id: int,
        provider: str,
        action: SyncAction,
        outcome: SyncOutcome,
        connection_id: uuid.UUID | None = None,
        booking_id: int | None = None,
        mapping_id: uuid.UUID | None = None,
        message: str | None = None,
        conn: Any = None,
    ) -> None:
        async with acquire_conn(self.pool, conn) as db:
            await db.execute(
                f"""
                INSERT INTO {_LOGS}
                    (mapping_id, calendar_connection_id, business_id, booking_id,
                     provider, action, outcome, message)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                mapping_id,
                connection_id,
                business_id,
                booking_id,
                provider,
                SyncAction(action).value,
                SyncOutcome(outcome).value,
                sanitize_error_message(message) if message else None,
            )

    async def recent_failures(self, business_id: int, *, limit: int = 10) -> list[SyncLogEntry]:
        async with acquire_conn(self.pool) as db:
            rows = await db.fetch(
                f"""
                SELECT * FROM {_LOGS}
                WHERE business_id = $1 AND outcome = 'failed'
                ORDER BY created_at DESC
                LIMIT $2
                """,
                business_id,
                limit,
            )
        return [SyncLogEntry.from_row(row) for row in rows]

    async def statistics(self, business_id: int, since: datetime) -> SyncStatistics:
        """Counts of booking sync attempts logged for *business_id* since *since*."""
        async with acquire_conn(self.pool) as db:
            row = await db.fetchrow(
                f"""
                SELECT
                    count(*) AS total,
                    count(*) FILTER (WHERE outcome = 'success') AS successful,
                    count(*) FILTER (WHERE outcome = 'failed') AS failed
                FROM {_LOGS}
                WHERE business_id = $1
                  AND created_at >= $2
                  AND action = ANY($3::text[])
                """,
                business_id,
                since,
                _BOOKING_ACTIONS,
            )
        if row is None:
            return SyncStatistics()
        return SyncStatistics(
            total_attempts=int(row["total"] or 0),
            successful=int(row["successful"] or 0),
            failed=int(row["failed"] or 0),
        )

    async def ensure_schema(self) -> None:
        await ensure_mappings_schema(self.pool)


async def ensure_mappings_schema(pool: asyncpg.Pool | Any) -> None:
    """Create the mapping and sync log tables (and their parent) if missing."""
    await ensure_connections_schema(pool)
    async with acquire_conn(pool) as conn:
        await conn.execute(_MAPPINGS_TABLE_DDL)
        for ddl in _MAPPINGS_INDEXES_DDL:
            await conn.execute(ddl)
        await conn.execute(_LOGS_TABLE_DDL)
        await conn.execute(_LOGS_INDEX_DDL)
