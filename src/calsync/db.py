"""Database provisioning and connection pool management for calendar sync."""

from __future__ import annotations

import hashlib
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import parse_qs, urlparse

import asyncpg

logger = logging.getLogger(__name__)

_VALID_SSL_MODES = {"disable", "prefer", "allow", "require", "verify-ca", "verify-full"}
_SSL_UPGRADE_CONNECTION_LOST = "unexpected connection_lost() call"


def _normalize_ssl_mode(value: str | None) -> str | None:
    """Normalize an SSL mode value for asyncpg or return None if unset/invalid."""
    if value is None:
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    if normalized in _VALID_SSL_MODES:
        return normalized
    logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
    return None


def _db_params_from_database_url(database_url: str) -> dict[str, str | int | None]:
    """Parse connection params from a libpq-style DATABASE_URL."""
    parsed = urlparse(database_url)
    sslmode = _normalize_ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0])
    return {
        "host": parsed.hostname or "localhost",
        "port": parsed.port or 5432,
        "user": parsed.username or "postgres",
        "password": parsed.password or "postgres",
        "ssl": sslmode,
    }


def should_retry_with_ssl_disable(exc: Exception, configured_ssl: str | None) -> bool:
    """Return True when asyncpg SSL STARTTLS fallback should retry with ssl=disable."""
    return (
        configured_ssl is None
        and isinstance(exc, ConnectionError)
        and _SSL_UPGRADE_CONNECTION_LOST in str(exc)
    )


def db_params_from_env() -> dict[str, str | int | None]:
    """Read DB connection params from environment variables."""
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        return _db_params_from_database_url(database_url)
    return {
        "host": os.environ.get("POSTGRES_HOST", "localhost"),
        "port": int(os.environ.get("POSTGRES_PORT", "5432")),
        "user": os.environ.get("POSTGRES_USER", "postgres"),
        "password": os.environ.get("POSTGRES_PASSWORD", "postgres"),
        "ssl": _normalize_ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
    }


def advisory_lock_key(namespace: str, identifier: Any) -> int:
    """Derive a signed 64-bit advisory lock key for ``(namespace, identifier)``.

    Postgres advisory locks take a ``bigint``; the key is the first eight
    bytes of a SHA-256 digest so unrelated namespaces never collide on the
    same integer id.
    """
    digest = hashlib.sha256(f"{namespace}:{identifier}".encode()).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


async def acquire_advisory_xact_lock(conn: Any, namespace: str, identifier: Any) -> None:
    """Block until the transaction-scoped advisory lock is held on *conn*.

    The lock is released automatically when the surrounding transaction
    commits or rolls back.
    """
    await conn.execute("SELECT pg_advisory_xact_lock($1)", advisory_lock_key(namespace, identifier))


class Database:
    """Manages the asyncpg connection pool and database provisioning.

    Stores receive either a :class:`Database` or a raw ``asyncpg.Pool``; both
    expose ``fetch``/``fetchrow``/``fetchval``/``execute`` and ``acquire()``.
    """

    def __init__(
        self,
        db_name: str,
        host: str = "localhost",
        port: int = 5432,
        user: str = "postgres",
        password: str = "postgres",
        ssl: str | None = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ) -> None:
        self.db_name = db_name
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.ssl = ssl
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    def __repr__(self) -> str:
        return f"Database(db_name={self.db_name!r}, host={self.host!r}, port={self.port})"

    async def provision(self) -> None:
        """Create the database if it doesn't exist.

        Connects to the 'postgres' maintenance database to check for and
        optionally create the target database.
        """
        connect_kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": "postgres",
        }
        if self.ssl is not None:
            connect_kwargs["ssl"] = self.ssl
        try:
            conn = await asyncpg.connect(**connect_kwargs)
        except Exception as exc:
            if not should_retry_with_ssl_disable(exc, self.ssl):
                raise
            retry_kwargs = dict(connect_kwargs)
            retry_kwargs["ssl"] = "disable"
            logger.info(
                "Retrying PostgreSQL provision connection with ssl=disable after SSL upgrade loss"
            )
            conn = await asyncpg.connect(**retry_kwargs)
        try:
            exists = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1",
                self.db_name,
            )
            if not exists:
                # CREATE DATABASE cannot be parameterized
                safe_name = self.db_name.replace('"', '""')
                await conn.execute(f'CREATE DATABASE "{safe_name}" TEMPLATE template0')
                logger.info("Created database: %s", self.db_name)
            else:
                logger.info("Database already exists: %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        """Create and return a connection pool to the sync database."""
        pool_kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": self.db_name,
            "min_size": self.min_pool_size,
            "max_size": self.max_pool_size,
        }
        if self.ssl is not None:
            pool_kwargs["ssl"] = self.ssl
        try:
            self.pool = await asyncpg.create_pool(**pool_kwargs)
        except Exception as exc:
            if not should_retry_with_ssl_disable(exc, self.ssl):
                raise
            retry_kwargs = dict(pool_kwargs)
            retry_kwargs["ssl"] = "disable"
            logger.info("Retrying PostgreSQL pool creation with ssl=disable after SSL upgrade loss")
            self.pool = await asyncpg.create_pool(**retry_kwargs)
        logger.info("Connection pool created for: %s", self.db_name)
        return self.pool

    async def close(self) -> None:
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Connection pool closed for: %s", self.db_name)

    # -- Pool proxy methods ------------------------------------------------

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise RuntimeError(f"Database '{self.db_name}' has no active connection pool")
        return self.pool

    def acquire(self) -> Any:
        """Proxy to asyncpg Pool.acquire (async context manager)."""
        return self._require_pool().acquire()

    async def fetch(self, query: str, *args: Any, timeout: float | None = None) -> list[Any]:
        """Proxy to asyncpg Pool.fetch."""
        return await self._require_pool().fetch(query, *args, timeout=timeout)

    async def fetchrow(self, query: str, *args: Any, timeout: float | None = None) -> Any:
        """Proxy to asyncpg Pool.fetchrow."""
        return await self._require_pool().fetchrow(query, *args, timeout=timeout)

    async def fetchval(self, query: str, *args: Any, timeout: float | None = None) -> Any:
        """Proxy to asyncpg Pool.fetchval."""
        return await self._require_pool().fetchval(query, *args, timeout=timeout)

    async def execute(self, query: str, *args: Any, timeout: float | None = None) -> str:
        """Proxy to asyncpg Pool.execute."""
        return await self._require_pool().execute(query, *args, timeout=timeout)

    @classmethod
    def from_env(cls, db_name: str) -> Database:
        """Create Database instance from environment variables.

        Checks DATABASE_URL first, then falls back to individual POSTGRES_*
        vars. Supports ``sslmode`` in DATABASE_URL query params and
        ``POSTGRES_SSLMODE``.
        """
        params = db_params_from_env()
        return cls(
            db_name=db_name,
            host=str(params["host"]),
            port=int(params["port"]),
            user=str(params["user"]),
            password=str(params["password"]),
            ssl=params["ssl"] if isinstance(params["ssl"], str) else None,
        )


@asynccontextmanager
async def acquire_conn(pool: Any, conn: Any = None) -> AsyncIterator[Any]:
    """Yield *conn* when given, else acquire one from *pool*.

    Stores accept an optional ``conn`` so that writes issued while a row lock
    is held run on the locking connection.  Also tolerates AsyncMock-style
    test doubles whose ``acquire()`` is awaitable rather than a context manager.
    """
    if conn is not None:
        yield conn
        return
    acquired = pool.acquire()
    if hasattr(acquired, "__aenter__"):
        async with acquired as pooled:
            yield pooled
        return
    if hasattr(acquired, "__await__"):
        acquired = await acquired
    if hasattr(acquired, "__aenter__"):
        async with acquired as pooled:
            yield pooled
        return
    yield acquired


@asynccontextmanager
async def transaction(pool: Any) -> AsyncIterator[Any]:
    """Acquire a connection from *pool* and run the body inside a transaction."""
    async with acquire_conn(pool) as conn:
        async with conn.transaction():
            yield conn


def affected_rows(status: str | None) -> int:
    """Parse the row count out of an asyncpg command status (``"UPDATE 3"``)."""
    if not status:
        return 0
    try:
        return int(status.split()[-1])
    except ValueError:
        return 0
