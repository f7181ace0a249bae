"""Root conftest: PostgreSQL testcontainer fixtures for DB-backed tests.

Unit tests use the in-memory doubles from ``tests/conftest.py``; tests marked
``integration`` request :func:`provisioned_postgres_pool` and are skipped when
Docker is not available.
"""

from __future__ import annotations

import logging
import shutil
import time
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING, Any

import pytest

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None
logger = logging.getLogger(__name__)

_TESTCONTAINER_STOP_RETRY_ATTEMPTS = 4
_TESTCONTAINER_STOP_BASE_DELAY_SECONDS = 0.1
_TRANSIENT_DOCKER_TEARDOWN_ERROR_MARKERS = (
    "did not receive an exit event",
    "tried to kill container",
    "no such container",
    "removal of container",
    "is already in progress",
    "is dead or marked for removal",
)


def _is_transient_docker_teardown_error(exc: BaseException) -> bool:
    message = f"{getattr(exc, 'explanation', '') or ''} {exc}".lower()
    return any(marker in message for marker in _TRANSIENT_DOCKER_TEARDOWN_ERROR_MARKERS)


def _retry_testcontainer_stop(
    stop_call: Callable[[], None],
    *,
    max_attempts: int = _TESTCONTAINER_STOP_RETRY_ATTEMPTS,
    base_delay_seconds: float = _TESTCONTAINER_STOP_BASE_DELAY_SECONDS,
) -> None:
    """Retry transient Docker teardown races with bounded backoff."""
    delay = base_delay_seconds
    for attempt in range(1, max_attempts + 1):
        try:
            stop_call()
            return
        except Exception as exc:
            if attempt >= max_attempts or not _is_transient_docker_teardown_error(exc):
                raise
            logger.warning(
                "Transient Docker API teardown race (attempt %s/%s): %s",
                attempt,
                max_attempts,
                exc,
            )
            time.sleep(delay)
            delay *= 2


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if docker_available:
        return
    skip_docker = pytest.mark.skip(reason="Docker is not available")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_docker)


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session.

    The container is shared; each :func:`provisioned_postgres_pool` usage
    creates a database with a random name, so rows never leak between tests.
    """
    from testcontainers.postgres import PostgresContainer

    pg = PostgresContainer("postgres:16")
    pg.start()
    try:
        yield pg
    finally:
        _retry_testcontainer_stop(pg.stop)


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh database and asyncpg pool for a single test usage.

    Tests should use this as:
        async with provisioned_postgres_pool() as pool:
            ...
    """
    from calsync.db import Database

    @asynccontextmanager
    async def _provision(
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 3,
    ) -> AsyncIterator[Any]:
        db = Database(
            db_name=_unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        pool = await db.connect()
        try:
            yield pool
        finally:
            await db.close()

    return _provision
