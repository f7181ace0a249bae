"""Periodic scheduler: cron-driven enqueue of the sweep jobs.

At each :meth:`PeriodicScheduler.tick`, entries whose ``next_run`` has passed
are enqueued on the job queue under their own name as dedupe key, so a slow
sweep is never stacked on top of itself.  ``next_run`` always advances,
whether the enqueue succeeded or not.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from croniter import croniter
from opentelemetry import trace

from calsync.config import ScheduleSettings
from calsync.jobs.handlers import RETRY_FAILED_SWEEP, SCHEDULE_IMPORTS, TOKEN_REFRESH
from calsync.jobs.queue import JobQueue

logger = logging.getLogger(__name__)


def _next_run(cron: str, *, now: datetime | None = None) -> datetime:
    """Compute the next run time for a cron expression from now (UTC)."""
    anchor = now or datetime.now(UTC)
    return croniter(cron, anchor).get_next(datetime).replace(tzinfo=UTC)


@dataclass
class ScheduleEntry:
    name: str
    cron: str
    job: str
    kwargs: dict[str, Any] = field(default_factory=dict)
    next_run: datetime | None = None
    last_run: datetime | None = None


class PeriodicScheduler:
    def __init__(self, queue: JobQueue, *, tick_seconds: float = 30.0) -> None:
        self._queue = queue
        self._tick_seconds = tick_seconds
        self._entries: dict[str, ScheduleEntry] = {}
        self._stopping = asyncio.Event()

    @classmethod
    def from_settings(
        cls,
        queue: JobQueue,
        settings: ScheduleSettings,
        *,
        tick_seconds: float = 30.0,
    ) -> PeriodicScheduler:
        """Build the standard sweeps.

        The retry-failed sweep is added only when ``retry_failed_cron`` is set.
        """
        scheduler = cls(queue, tick_seconds=tick_seconds)
        scheduler.add(TOKEN_REFRESH, settings.token_refresh_cron, TOKEN_REFRESH)
        scheduler.add(SCHEDULE_IMPORTS, settings.schedule_imports_cron, SCHEDULE_IMPORTS)
        if settings.retry_failed_cron:
            scheduler.add(RETRY_FAILED_SWEEP, settings.retry_failed_cron, RETRY_FAILED_SWEEP)
        return scheduler

    @property
    def entries(self) -> list[ScheduleEntry]:
        return list(self._entries.values())

    def add(
        self,
        name: str,
        cron: str,
        job: str,
        *,
        now: datetime | None = None,
        **kwargs: Any,
    ) -> ScheduleEntry:
        if not croniter.is_valid(cron):
            raise ValueError(f"Invalid cron expression for {name!r}: {cron!r}")
        entry = ScheduleEntry(name, cron, job, kwargs, next_run=_next_run(cron, now=now))
        self._entries[name] = entry
        return entry

    async def tick(self, now: datetime | None = None) -> int:
        """Enqueue every due entry; returns the number enqueued."""
        tracer = trace.get_tracer("calsync")
        with tracer.start_as_current_span("calsync.scheduler_tick") as span:
            now = now or datetime.now(UTC)
            due = [e for e in self._entries.values() if e.next_run is not None and e.next_run <= now]
            span.set_attribute("entries_due", len(due))

            dispatched = 0
            for entry in due:
                try:
                    if await self._queue.enqueue(entry.job, dedupe_key=entry.name, **entry.kwargs):
                        dispatched += 1
                        logger.info("Dispatched scheduled job: %s", entry.name)
                    else:
                        logger.info("Scheduled job %s still queued; skipping", entry.name)
                except Exception:
                    logger.exception("Failed to dispatch scheduled job: %s", entry.name)
                entry.last_run = now
                entry.next_run = _next_run(entry.cron, now=now)

            span.set_attribute("entries_run", dispatched)
        return dispatched

    async def run_forever(self) -> None:
        logger.info("Scheduler started with %d entries", len(self._entries))
        while not self._stopping.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._tick_seconds)
            except TimeoutError:
                pass
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        self._stopping.set()
