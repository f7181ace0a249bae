"""Calendar connection store backed by the ``calendar_connections`` table.

Each row links one staff member to one external calendar provider and holds
the credentials needed to talk to it: OAuth access/refresh tokens for Google
and Microsoft, Basic-auth username/password and server URL for CalDAV.

At most one *active* connection exists per (staff member, provider); a
partial unique index enforces it.  Connections are deactivated, never
deleted, when their credentials stop working.

Every write accepts an optional ``conn`` so callers holding a row lock (see
:meth:`ConnectionStore.lock_for_update`) can write on the locking connection.

Note: credential values are NEVER logged or included in ``__repr__``.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from calsync.db import acquire_conn, affected_rows
from calsync.models import CaldavFlavor, CalendarConnection, ProviderType
from calsync.providers.detection import resolve_adapter_kind

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "calendar_connections"
_MAX_ERROR_LENGTH = 500

_CONNECTIONS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    id               UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    business_id      BIGINT NOT NULL,
    staff_member_id  BIGINT NOT NULL,
    provider         TEXT NOT NULL CHECK (provider IN ('google', 'microsoft', 'caldav')),
    caldav_provider  TEXT CHECK (caldav_provider IN ('icloud', 'nextcloud', 'generic')),
    uid              TEXT,
    access_token     TEXT,
    refresh_token    TEXT,
    token_expires_at TIMESTAMPTZ,
    scopes           TEXT,
    caldav_username  TEXT,
    caldav_password  TEXT,
    caldav_url       TEXT,
    active           BOOLEAN NOT NULL DEFAULT true,
    last_synced_at   TIMESTAMPTZ,
    last_sync_error  TEXT,
    connected_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
    created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at       TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_ACTIVE_UNIQUE_INDEX_DDL = f"""
CREATE UNIQUE INDEX IF NOT EXISTS uq_calendar_connections_active_staff_provider
ON {_TABLE} (staff_member_id, provider)
WHERE active
"""

_EXPIRY_INDEX_DDL = f"""
CREATE INDEX IF NOT EXISTS ix_calendar_connections_expiry
ON {_TABLE} (token_expires_at)
WHERE active AND refresh_token IS NOT NULL
"""


def _truncate_error(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:_MAX_ERROR_LENGTH]


def connection_from_row(row: Any) -> CalendarConnection:
    """Build a :class:`CalendarConnection` and resolve its adapter kind."""
    connection = CalendarConnection.from_row(row)
    connection.adapter_kind = resolve_adapter_kind(connection)
    return connection


class ConnectionStore:
    """Async data access for ``calendar_connections``.

    Parameters
    ----------
    pool:
        An asyncpg connection pool (or :class:`calsync.db.Database`).
    """

    def __init__(self, pool: asyncpg.Pool | Any) -> None:
        self.pool = pool

    def __repr__(self) -> str:
        return f"ConnectionStore(table={_TABLE!r})"

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def create(
        self,
        *,
        business_id: int,
        staff_member_id: int,
        provider: ProviderType | str,
        access_token: str | None = None,
        refresh_token: str | None = None,
        token_expires_at: datetime | None = None,
        scopes: str | None = None,
        uid: str | None = None,
        caldav_username: str | None = None,
        caldav_password: str | None = None,
        caldav_url: str | None = None,
        caldav_provider: CaldavFlavor | str | None = None,
        conn: Any = None,
    ) -> CalendarConnection:
        """Insert a new active connection and return it.

        Raises ``asyncpg.UniqueViolationError`` when an active connection for
        the same staff member and provider already exists; callers replacing a
        connection deactivate the old one first (same transaction).
        """
        provider = ProviderType(provider)
        flavor = CaldavFlavor(caldav_provider).value if caldav_provider else None
        async with acquire_conn(self.pool, conn) as db:
            row = await db.fetchrow(
                f"""
                INSERT INTO {_TABLE}
                    (business_id, staff_member_id, provider, caldav_provider, uid,
                     access_token, refresh_token, token_expires_at, scopes,
                     caldav_username, caldav_password, caldav_url)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                RETURNING *
                """,
                business_id,
                staff_member_id,
                provider.value,
                flavor,
                uid,
                access_token,
                refresh_token,
                token_expires_at,
                scopes,
                caldav_username,
                caldav_password,
                caldav_url,
            )
        connection = connection_from_row(row)
        logger.info(
            "Calendar connection created: id=%s provider=%s staff_member_id=%s",
            connection.id,
            provider.value,
            staff_member_id,
        )
        return connection

    async def update_tokens(
        self,
        connection_id: uuid.UUID,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
        conn: Any = None,
    ) -> None:
        """Persist a refreshed token pair; a ``None`` refresh token keeps the stored one."""
        async with acquire_conn(self.pool, conn) as db:
            await db.execute(
                f"""
                UPDATE {_TABLE}
                SET access_token     = $2,
                    refresh_token    = COALESCE($3, refresh_token),
                    token_expires_at = $4,
                    last_sync_error  = NULL,
                    updated_at       = now()
                WHERE id = $1
                """,
                connection_id,
                access_token,
                refresh_token,
                expires_at,
            )
        logger.info("Calendar connection tokens updated: id=%s", connection_id)

    async def mark_synced(
        self,
        connection_id: uuid.UUID,
        *,
        at: datetime | None = None,
        conn: Any = None,
    ) -> None:
        """Record a successful sync: stamp ``last_synced_at`` and clear the error."""
        async with acquire_conn(self.pool, conn) as db:
            await db.execute(
                f"""
                UPDATE {_TABLE}
                SET last_synced_at = $2, last_sync_error = NULL, updated_at = now()
                WHERE id = $1
                """,
                connection_id,
                at or datetime.now(UTC),
            )

    async def record_error(
        self,
        connection_id: uuid.UUID,
        message: str,
        *,
        conn: Any = None,
    ) -> None:
        async with acquire_conn(self.pool, conn) as db:
            await db.execute(
                f"""
                UPDATE {_TABLE}
                SET last_sync_error = $2, updated_at = now()
                WHERE id = $1
                """,
                connection_id,
                _truncate_error(message),
            )

    async def deactivate(
        self,
        connection_id: uuid.UUID,
        *,
        reason: str | None = None,
        conn: Any = None,
    ) -> bool:
        """Deactivate a connection, keeping the row for history.

        Returns ``True`` when an active row was deactivated.
        """
        async with acquire_conn(self.pool, conn) as db:
            result = await db.execute(
                f"""
                UPDATE {_TABLE}
                SET active = false,
                    last_sync_error = COALESCE($2, last_sync_error),
                    updated_at = now()
                WHERE id = $1 AND active
                """,
                connection_id,
                _truncate_error(reason),
            )
        deactivated = affected_rows(result) > 0
        if deactivated:
            logger.warning("Calendar connection deactivated: id=%s", connection_id)
        return deactivated

    async def deactivate_for_staff_provider(
        self,
        staff_member_id: int,
        provider: ProviderType | str,
        *,
        conn: Any = None,
    ) -> int:
        """Deactivate every active connection for (staff member, provider)."""
        async with acquire_conn(self.pool, conn) as db:
            result = await db.execute(
                f"""
                UPDATE {_TABLE}
                SET active = false, updated_at = now()
                WHERE staff_member_id = $1 AND provider = $2 AND active
                """,
                staff_member_id,
                ProviderType(provider).value,
            )
        return affected_rows(result)

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def get(self, connection_id: uuid.UUID, *, conn: Any = None) -> CalendarConnection | None:
        async with acquire_conn(self.pool, conn) as db:
            row = await db.fetchrow(f"SELECT * FROM {_TABLE} WHERE id = $1", connection_id)
        return connection_from_row(row) if row is not None else None

    async def list_active_for_staff(
        self,
        staff_member_id: int,
        business_id: int,
    ) -> list[CalendarConnection]:
        async with acquire_conn(self.pool) as db:
            rows = await db.fetch(
                f"""
                SELECT * FROM {_TABLE}
                WHERE staff_member_id = $1 AND business_id = $2 AND active
                ORDER BY created_at, id
                """,
                staff_member_id,
                business_id,
            )
        return [connection_from_row(row) for row in rows]

    async def list_active(self, business_id: int | None = None) -> list[CalendarConnection]:
        async with acquire_conn(self.pool) as db:
            if business_id is None:
                rows = await db.fetch(
                    f"SELECT * FROM {_TABLE} WHERE active ORDER BY business_id, staff_member_id"
                )
            else:
                rows = await db.fetch(
                    f"""
                    SELECT * FROM {_TABLE}
                    WHERE active AND business_id = $1
                    ORDER BY staff_member_id
                    """,
                    business_id,
                )
        return [connection_from_row(row) for row in rows]

    async def list_expiring(self, before: datetime) -> list[CalendarConnection]:
        """Active, refreshable connections whose token expires at or before *before*."""
        async with acquire_conn(self.pool) as db:
            rows = await db.fetch(
                f"""
                SELECT * FROM {_TABLE}
                WHERE active
                  AND refresh_token IS NOT NULL
                  AND token_expires_at IS NOT NULL
                  AND token_expires_at <= $1
                ORDER BY token_expires_at
                """,
                before,
            )
        return [connection_from_row(row) for row in rows]

    async def list_staff_with_active_connections(
        self,
        business_id: int | None = None,
    ) -> list[tuple[int, int]]:
        """Distinct ``(business_id, staff_member_id)`` pairs with an active connection."""
        async with acquire_conn(self.pool) as db:
            if business_id is None:
                rows = await db.fetch(
                    f"""
                    SELECT DISTINCT business_id, staff_member_id FROM {_TABLE}
                    WHERE active ORDER BY business_id, staff_member_id
                    """
                )
            else:
                rows = await db.fetch(
                    f"""
                    SELECT DISTINCT business_id, staff_member_id FROM {_TABLE}
                    WHERE active AND business_id = $1 ORDER BY staff_member_id
                    """,
                    business_id,
                )
        return [(row["business_id"], row["staff_member_id"]) for row in rows]

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def lock_for_update(
        self,
        connection_id: uuid.UUID,
    ) -> AsyncIterator[tuple[Any, CalendarConnection | None]]:
        """Hold ``SELECT ... FOR UPDATE`` on the connection row for the block.

        Yields ``(conn, connection)``; *connection* is the row as re-read under
        the lock (``None`` if it no longer exists).  Writes inside the block
        must pass ``conn=conn``.
        """
        async with acquire_conn(self.pool) as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT * FROM {_TABLE} WHERE id = $1 FOR UPDATE",
                    connection_id,
                )
                yield conn, (connection_from_row(row) if row is not None else None)

    async def ensure_schema(self) -> None:
        """Create ``calendar_connections`` and its indexes if missing."""
        await ensure_connections_schema(self.pool)


async def ensure_connections_schema(pool: asyncpg.Pool | Any) -> None:
    async with acquire_conn(pool) as conn:
        await conn.execute(_CONNECTIONS_TABLE_DDL)
        await conn.execute(_ACTIVE_UNIQUE_INDEX_DDL)
        await conn.execute(_EXPIRY_INDEX_DDL)
