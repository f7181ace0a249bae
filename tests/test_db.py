"""Tests for calsync.db: connection params, helpers, and pool provisioning."""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from calsync.db import (
    Database,
    acquire_conn,
    advisory_lock_key,
    affected_rows,
    db_params_from_env,
    should_retry_with_ssl_disable,
)


def _unique_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Connection parameters
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestParams:
    def test_from_env(self, monkeypatch) -> None:
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setenv("POSTGRES_HOST", "myhost")
        monkeypatch.setenv("POSTGRES_PORT", "6543")
        monkeypatch.setenv("POSTGRES_USER", "myuser")
        monkeypatch.setenv("POSTGRES_PASSWORD", "mypass")

        db = Database.from_env("test_db")

        assert db.db_name == "test_db"
        assert db.host == "myhost"
        assert db.port == 6543
        assert db.user == "myuser"
        assert db.password == "mypass"

    def test_from_env_defaults(self, monkeypatch) -> None:
        for name in (
            "DATABASE_URL",
            "POSTGRES_HOST",
            "POSTGRES_PORT",
            "POSTGRES_USER",
            "POSTGRES_PASSWORD",
            "POSTGRES_SSLMODE",
        ):
            monkeypatch.delenv(name, raising=False)

        db = Database.from_env("test_db")

        assert (db.host, db.port, db.user, db.password, db.ssl) == (
            "localhost",
            5432,
            "postgres",
            "postgres",
            None,
        )

    def test_database_url_wins(self, monkeypatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db.internal:6000/x?sslmode=REQUIRE")
        monkeypatch.setenv("POSTGRES_HOST", "ignored")

        assert db_params_from_env() == {
            "host": "db.internal",
            "port": 6000,
            "user": "u",
            "password": "p",
            "ssl": "require",
        }

    def test_invalid_sslmode_is_ignored(self, monkeypatch) -> None:
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setenv("POSTGRES_SSLMODE", "sometimes")
        assert db_params_from_env()["ssl"] is None

    def test_ssl_fallback_only_when_unconfigured(self) -> None:
        lost = ConnectionError("unexpected connection_lost() call")
        assert should_retry_with_ssl_disable(lost, None) is True
        assert should_retry_with_ssl_disable(lost, "require") is False
        assert should_retry_with_ssl_disable(ConnectionError("refused"), None) is False

    def test_repr_hides_password(self) -> None:
        assert "secret" not in repr(Database("x", password="secret"))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestHelpers:
    def test_advisory_lock_key_is_stable_and_namespaced(self) -> None:
        key = advisory_lock_key("booking", 101)
        assert key == advisory_lock_key("booking", 101)
        assert key != advisory_lock_key("connection", 101)
        assert -(2**63) <= key < 2**63

    @pytest.mark.parametrize(
        ("status", "expected"),
        [("UPDATE 3", 3), ("INSERT 0 1", 1), ("DELETE 0", 0), ("", 0), (None, 0), ("SELECT x", 0)],
    )
    def test_affected_rows(self, status, expected) -> None:
        assert affected_rows(status) == expected

    async def test_acquire_conn_prefers_given_connection(self) -> None:
        pool = MagicMock()
        given = object()
        async with acquire_conn(pool, given) as conn:
            assert conn is given
        pool.acquire.assert_not_called()

    async def test_acquire_conn_with_awaitable_acquire(self) -> None:
        conn = object()
        pool = MagicMock()
        pool.acquire = AsyncMock(return_value=conn)
        async with acquire_conn(pool) as acquired:
            assert acquired is conn

    def test_pool_proxy_requires_connect(self) -> None:
        with pytest.raises(RuntimeError, match="no active connection pool"):
            Database("x").acquire()


# ---------------------------------------------------------------------------
# Provisioning against a real server
# ---------------------------------------------------------------------------


@pytest.fixture
def db_factory(postgres_container):
    """Factory that creates Database instances wired to the test container."""

    def _make(db_name: str | None = None) -> Database:
        return Database(
            db_name=db_name or _unique_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=1,
            max_pool_size=3,
        )

    return _make


async def _database_exists(db: Database) -> bool:
    conn = await asyncpg.connect(
        host=db.host, port=db.port, user=db.user, password=db.password, database="postgres"
    )
    try:
        return (
            await conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", db.db_name)
            == 1
        )
    finally:
        await conn.close()


@pytest.mark.integration
async def test_provision_is_idempotent(db_factory) -> None:
    db = db_factory()
    assert await _database_exists(db) is False

    await db.provision()
    await db.provision()

    assert await _database_exists(db) is True


@pytest.mark.integration
async def test_connect_execute_close(db_factory) -> None:
    db = db_factory()
    await db.provision()

    pool = await db.connect()
    try:
        assert isinstance(pool, asyncpg.Pool)
        assert await db.fetchval("SELECT 1 + 1") == 2
        async with db.acquire() as conn:
            await conn.execute("CREATE TABLE t (id serial PRIMARY KEY, value text)")
            await conn.execute("INSERT INTO t (value) VALUES ($1)", "hello")
        assert affected_rows(await db.execute("UPDATE t SET value = 'x'")) == 1
    finally:
        await db.close()

    assert db.pool is None
    await db.close()
