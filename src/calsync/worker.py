"""Sync worker: wires configuration, stores, the job queue and the scheduler.

The worker is the in-process execution substrate.  The host application (or a
test) calls :meth:`SyncWorker.start`, uses :attr:`SyncWorker.jobs` to hook
booking lifecycle events, and awaits :meth:`SyncWorker.shutdown` on exit.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import httpx

from calsync.bookings import BookingGateway
from calsync.config import SyncConfig, load_config, validate_pool_capacity
from calsync.coordinator import AvailabilityCache, Notifier, SyncCoordinator
from calsync.core.logging import configure_logging
from calsync.core.metrics import SyncMetrics, init_metrics
from calsync.core.telemetry import init_telemetry
from calsync.credential_store import ConnectionStore
from calsync.db import Database
from calsync.diagnostics import SyncDiagnostics
from calsync.jobs.handlers import SyncJobs
from calsync.jobs.queue import AsyncioJobQueue, JobRegistry
from calsync.jobs.scheduler import PeriodicScheduler
from calsync.mapping_store import EventMappingStore, ensure_mappings_schema
from calsync.oauth import OAuthHandler
from calsync.providers.oauth import OAuthClient
from calsync.token_refresh import TokenRefreshManager

logger = logging.getLogger(__name__)

SERVICE_NAME = "calsync"


class SyncWorker:
    """Owns every long-lived object of a sync worker process."""

    def __init__(
        self,
        config: SyncConfig,
        *,
        notifier: Notifier | None = None,
        availability_cache: AvailabilityCache | None = None,
    ) -> None:
        self.config = config
        self._notifier = notifier
        self._availability_cache = availability_cache
        self.db: Database | None = None
        self.http_client: httpx.AsyncClient | None = None
        self.oauth_client: OAuthClient | None = None
        self.connections: ConnectionStore | None = None
        self.mappings: EventMappingStore | None = None
        self.bookings: BookingGateway | None = None
        self.token_manager: TokenRefreshManager | None = None
        self.oauth: OAuthHandler | None = None
        self.queue: AsyncioJobQueue | None = None
        self.jobs: SyncJobs | None = None
        self.scheduler: PeriodicScheduler | None = None
        self._metrics = SyncMetrics()
        self._scheduler_task: asyncio.Task[None] | None = None

    @classmethod
    def from_path(cls, path: Path | str | None = None) -> SyncWorker:
        return cls(load_config(path))

    def new_coordinator(self) -> SyncCoordinator:
        if self.token_manager is None:
            raise RuntimeError("SyncWorker has not been started")
        return SyncCoordinator(
            self.connections,
            self.mappings,
            self.bookings,
            self.token_manager,
            oauth_client=self.oauth_client,
            settings=self.config.sync,
            http_client=self.http_client,
            metrics=self._metrics,
        )

    async def diagnostics(self, business_id: int) -> SyncDiagnostics:
        return await self.new_coordinator().diagnostics(business_id, oauth=self.config.oauth)

    async def start(self, *, run_scheduler: bool = True) -> None:
        """Execute the startup sequence; a failing step stops the rest."""
        cfg = self.config
        validate_pool_capacity(cfg)

        # 1. Logging and telemetry
        configure_logging(cfg.logging.level, cfg.logging.format, cfg.logging.log_root)
        init_telemetry(SERVICE_NAME)
        init_metrics(SERVICE_NAME)

        # 2. Database and schema
        self.db = Database(
            cfg.database.name,
            host=cfg.database.host,
            port=cfg.database.port,
            user=cfg.database.user,
            password=cfg.database.password,
            ssl=cfg.database.ssl,
            min_pool_size=cfg.database.min_pool_size,
            max_pool_size=cfg.database.max_pool_size,
        )
        await self.db.provision()
        await self.db.connect()
        await ensure_mappings_schema(self.db)

        # 3. Shared HTTP client and stores
        self.http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                cfg.sync.http_timeout_seconds,
                connect=cfg.sync.http_connect_timeout_seconds,
            )
        )
        self.oauth_client = OAuthClient(cfg.oauth, http_client=self.http_client)
        self.connections = ConnectionStore(self.db)
        self.mappings = EventMappingStore(self.db)
        self.bookings = BookingGateway(self.db)
        self.token_manager = TokenRefreshManager(
            self.connections,
            oauth_client=self.oauth_client,
            mappings=self.mappings,
            settings=cfg.sync,
            http_client=self.http_client,
            metrics=self._metrics,
        )
        self.oauth = OAuthHandler(
            self.connections,
            cfg.oauth,
            oauth_client=self.oauth_client,
            http_client=self.http_client,
            metrics=self._metrics,
        )

        # 4. Jobs
        registry = JobRegistry()
        self.queue = AsyncioJobQueue(
            registry, concurrency=cfg.jobs.worker_concurrency, metrics=self._metrics
        )
        self.jobs = SyncJobs(
            self.new_coordinator,
            queue=self.queue,
            connections=self.connections,
            bookings=self.bookings,
            token_manager=self.token_manager,
            job_settings=cfg.jobs,
            sync_settings=cfg.sync,
            notifier=self._notifier,
            availability_cache=self._availability_cache,
        )
        self.jobs.register(registry)

        # 5. Scheduler
        self.scheduler = PeriodicScheduler.from_settings(self.queue, cfg.schedule)
        if run_scheduler:
            self._scheduler_task = asyncio.create_task(
                self.scheduler.run_forever(), name="calsync-scheduler"
            )
        logger.info("Sync worker started (jobs=%s)", ", ".join(registry.names))

    async def shutdown(self, *, drain: bool = True) -> None:
        """Stop the scheduler, finish or cancel queued jobs, close clients and the pool."""
        logger.info("Shutting down sync worker")
        if self.scheduler is not None:
            self.scheduler.stop()
        if self._scheduler_task is not None:
            try:
                await self._scheduler_task
            except Exception:
                logger.exception("Error while stopping scheduler")
            self._scheduler_task = None

        if self.queue is not None:
            if drain:
                await self.queue.drain()
            else:
                await self.queue.aclose()

        if self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None
        if self.db is not None:
            await self.db.close()
        logger.info("Sync worker shutdown complete")
