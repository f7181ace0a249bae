"""Job substrate: the enqueue interface the sync jobs depend on.

Jobs are referenced by name and dispatched with keyword arguments, so any
queue that can persist ``(name, kwargs, run_at)`` can carry them.
:class:`AsyncioJobQueue` is the in-process implementation used by the worker
and in tests.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from calsync.core.logging import job_context
from calsync.core.metrics import SyncMetrics

logger = logging.getLogger(__name__)

JobHandler = Callable[..., Awaitable[Any]]


class JobOutcome(StrEnum):
    success = "success"
    retry = "retry"
    failed = "failed"
    discarded = "discarded"


class UnknownJobError(KeyError):
    """Raised when a job name has no registered handler."""


@dataclass(frozen=True)
class Job:
    name: str
    kwargs: dict[str, Any] = field(default_factory=dict)
    run_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    dedupe_key: str | None = None


class JobRegistry:
    """Maps job names to async handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}

    def register(self, name: str, handler: JobHandler) -> None:
        if name in self._handlers:
            raise ValueError(f"Job {name!r} is already registered")
        self._handlers[name] = handler

    def get(self, name: str) -> JobHandler:
        try:
            return self._handlers[name]
        except KeyError:
            raise UnknownJobError(name) from None

    @property
    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers


class JobQueue(abc.ABC):
    """Where jobs are sent; implementations own persistence and dispatch."""

    @abc.abstractmethod
    async def enqueue(
        self,
        name: str,
        *,
        delay: float = 0.0,
        dedupe_key: str | None = None,
        **kwargs: Any,
    ) -> bool:
        """Schedule job *name* to run after *delay* seconds.

        Returns ``False`` when a job with the same *dedupe_key* is already
        waiting to start.
        """


class AsyncioJobQueue(JobQueue):
    """In-process queue running jobs as asyncio tasks with bounded concurrency.

    A dedupe key is held from enqueue until the job starts, so a job that
    re-enqueues itself under its own key is accepted.  Jobs enqueued with a
    delay sleep outside the semaphore; :meth:`join` does not wait for them and
    :meth:`drain` cancels whatever is still sleeping.
    """

    def __init__(
        self,
        registry: JobRegistry,
        *,
        concurrency: int = 4,
        history_size: int = 1000,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._registry = registry
        self._semaphore = asyncio.Semaphore(concurrency)
        self._metrics = metrics or SyncMetrics()
        self._tasks: set[asyncio.Task[None]] = set()
        self._sleeping: dict[asyncio.Task[None], Job] = {}
        self._pending_keys: set[str] = set()
        self.history: deque[tuple[Job, JobOutcome]] = deque(maxlen=history_size)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def delayed(self) -> int:
        """Jobs still waiting out their enqueue delay."""
        return len(self._sleeping)

    async def enqueue(
        self,
        name: str,
        *,
        delay: float = 0.0,
        dedupe_key: str | None = None,
        **kwargs: Any,
    ) -> bool:
        if name not in self._registry:
            raise UnknownJobError(name)
        if dedupe_key is not None:
            if dedupe_key in self._pending_keys:
                logger.debug("Job %s deduplicated (key=%s)", name, dedupe_key)
                return False
            self._pending_keys.add(dedupe_key)

        delay = max(delay, 0.0)
        job = Job(
            name=name,
            kwargs=kwargs,
            run_at=datetime.now(UTC) + timedelta(seconds=delay),
            dedupe_key=dedupe_key,
        )
        self._metrics.queue_depth_inc(name)
        task = asyncio.create_task(self._run(job, delay), name=f"calsync-job-{name}")
        self._tasks.add(task)
        task.add_done_callback(self._forget)
        if delay > 0:
            self._sleeping[task] = job
        logger.debug("Enqueued job %s (delay=%.1fs)", name, delay)
        return True

    def _forget(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        self._sleeping.pop(task, None)

    async def _run(self, job: Job, delay: float) -> None:
        started = False
        try:
            if delay > 0:
                try:
                    await asyncio.sleep(delay)
                finally:
                    self._sleeping.pop(asyncio.current_task(), None)
            async with self._semaphore:
                started = True
                self._release(job)
                with job_context(job.name):
                    outcome = await self._execute(job)
            self.history.append((job, outcome))
            self._metrics.record_job(job.name, outcome.value)
        finally:
            if not started:
                self._release(job)

    def _release(self, job: Job) -> None:
        if job.dedupe_key is not None:
            self._pending_keys.discard(job.dedupe_key)
        self._metrics.queue_depth_dec(job.name)

    async def _execute(self, job: Job) -> JobOutcome:
        handler = self._registry.get(job.name)
        try:
            result = await handler(**job.kwargs)
        except Exception:
            logger.exception("Job %s failed", job.name)
            return JobOutcome.failed
        return result if isinstance(result, JobOutcome) else JobOutcome.success

    async def join(self) -> None:
        """Wait until no job is due or running, including jobs enqueued while waiting.

        Jobs still sleeping out a delay are not waited for.
        """
        while active := [task for task in self._tasks if task not in self._sleeping]:
            await asyncio.gather(*active, return_exceptions=True)

    async def drain(self) -> list[Job]:
        """Finish due and running jobs, then cancel delayed ones.

        Returns the cancelled delayed jobs so a caller with durable storage
        can hand them back.
        """
        await self.join()
        dropped = list(self._sleeping.values())
        tasks = list(self._sleeping)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if dropped:
            logger.warning(
                "Dropped %d delayed job(s) on drain: %s",
                len(dropped),
                ", ".join(sorted({job.name for job in dropped})),
            )
        return dropped

    async def aclose(self) -> None:
        """Cancel every job that has not finished."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
