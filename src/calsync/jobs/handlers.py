"""Job handlers: thin wrappers that run one coordinator operation per job.

Each handler builds a fresh :class:`~calsync.coordinator.SyncCoordinator`,
awaits one operation, and decides what happens next:

- ``sync_booking`` and ``delete_booking`` retry transient failures with
  exponential backoff (``base * 2**(attempt - 1)``, capped) up to
  ``max_attempts``.  A sync that exhausts its attempts (or fails for a
  non-transient reason) leaves the booking ``sync_failed`` and notifies the
  business through the :class:`~calsync.coordinator.Notifier`.
- ``import_availability`` re-enqueues itself 4-6 hours later on success and
  is discarded when the staff member no longer exists.
- ``token_refresh``, ``schedule_imports`` and ``retry_failed_sweep`` are the
  periodic sweeps driven by :class:`~calsync.jobs.scheduler.PeriodicScheduler`.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from typing import Any

from calsync.bookings import BookingGateway
from calsync.config import JobSettings, SyncSettings
from calsync.coordinator import AvailabilityCache, Notifier, SyncCoordinator
from calsync.core.telemetry import sync_span
from calsync.credential_store import ConnectionStore
from calsync.jobs.batch import BatchAction, BatchSync
from calsync.jobs.queue import JobOutcome, JobQueue, JobRegistry
from calsync.models import Booking, BookingCalendarStatus
from calsync.providers.base import ErrorKind, classify_error, sanitize_error_message
from calsync.token_refresh import TokenRefreshManager

logger = logging.getLogger(__name__)

SYNC_BOOKING = "sync_booking"
DELETE_BOOKING = "delete_booking"
IMPORT_AVAILABILITY = "import_availability"
BATCH_SYNC = "batch_sync"
TOKEN_REFRESH = "token_refresh"
SCHEDULE_IMPORTS = "schedule_imports"
RETRY_FAILED_SWEEP = "retry_failed_sweep"


def backoff_delay(attempt: int, settings: JobSettings) -> float:
    """Seconds to wait before retry number *attempt* (1-based)."""
    delay = settings.base_delay_seconds * 2 ** max(attempt - 1, 0)
    return min(delay, settings.max_delay_seconds)


def import_dedupe_key(staff_member_id: int) -> str:
    return f"import:{staff_member_id}"


def _as_date(value: date | str | None, default: date) -> date:
    if value is None:
        return default
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


class SyncJobs:
    """The calendar sync job handlers and the enqueue-side entry points.

    Parameters
    ----------
    coordinator_factory:
        Returns a new coordinator; one is built per job since coordinators
        keep the results of their last operation.
    queue:
        Where follow-up jobs (retries, rescheduled imports) are enqueued.
    notifier:
        Optional; told about bookings whose sync failed for good.
    availability_cache:
        Optional; invalidated after a successful import.
    """

    def __init__(
        self,
        coordinator_factory: Callable[[], SyncCoordinator],
        *,
        queue: JobQueue,
        connections: ConnectionStore,
        bookings: BookingGateway,
        token_manager: TokenRefreshManager,
        job_settings: JobSettings | None = None,
        sync_settings: SyncSettings | None = None,
        notifier: Notifier | None = None,
        availability_cache: AvailabilityCache | None = None,
        batch: BatchSync | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._coordinator_factory = coordinator_factory
        self._queue = queue
        self._connections = connections
        self._bookings = bookings
        self._token_manager = token_manager
        self._job_settings = job_settings or JobSettings()
        self._sync_settings = sync_settings or SyncSettings()
        self._notifier = notifier
        self._availability_cache = availability_cache
        self._batch = batch or BatchSync(
            coordinator_factory, connections=connections, bookings=bookings
        )
        self._rng = rng or random.Random()

    def register(self, registry: JobRegistry) -> None:
        registry.register(SYNC_BOOKING, self.sync_booking_job)
        registry.register(DELETE_BOOKING, self.delete_booking_job)
        registry.register(IMPORT_AVAILABILITY, self.import_availability_job)
        registry.register(BATCH_SYNC, self.batch_sync_job)
        registry.register(TOKEN_REFRESH, self.token_refresh_job)
        registry.register(SCHEDULE_IMPORTS, self.schedule_imports_job)
        registry.register(RETRY_FAILED_SWEEP, self.retry_failed_sweep_job)

    def _can_retry(self, attempt: int) -> bool:
        return attempt < self._job_settings.max_attempts

    async def _retry(self, name: str, attempt: int, **kwargs: Any) -> JobOutcome:
        delay = backoff_delay(attempt, self._job_settings)
        logger.info(
            "Retrying %s in %.0fs (attempt %d of %d)",
            name,
            delay,
            attempt + 1,
            self._job_settings.max_attempts,
        )
        await self._queue.enqueue(name, delay=delay, attempt=attempt + 1, **kwargs)
        return JobOutcome.retry

    # ------------------------------------------------------------------
    # Booking sync
    # ------------------------------------------------------------------

    async def sync_booking_job(self, booking_id: int, attempt: int = 1) -> JobOutcome:
        coordinator = self._coordinator_factory()
        with sync_span("job.sync_booking", booking_id=booking_id, attempt=attempt):
            try:
                if await coordinator.sync_booking(booking_id):
                    return JobOutcome.success
                transient = coordinator.has_transient_failures
                errors = list(coordinator.errors)
            except Exception as exc:
                transient = classify_error(exc) is ErrorKind.transient
                errors = [sanitize_error_message(exc)]
                logger.warning("Sync job for booking %s raised: %s", booking_id, errors[0])

            if transient and self._can_retry(attempt):
                return await self._retry(SYNC_BOOKING, attempt, booking_id=booking_id)
            await self._final_sync_failure(booking_id, errors, attempt)
            return JobOutcome.failed

    async def _final_sync_failure(self, booking_id: int, errors: list[str], attempt: int) -> None:
        logger.error(
            "Booking %s calendar sync failed after %d attempt(s): %s",
            booking_id,
            attempt,
            "; ".join(errors) or "unknown error",
        )
        await self._bookings.update_calendar_status(booking_id, BookingCalendarStatus.sync_failed)
        if self._notifier is None:
            return
        booking = await self._bookings.get(booking_id)
        if booking is None:
            return
        try:
            await self._notifier.sync_failed(booking, errors)
        except Exception:
            logger.exception("Failed to send sync failure notification for booking %s", booking_id)

    async def delete_booking_job(
        self, booking_id: int, business_id: int, attempt: int = 1
    ) -> JobOutcome:
        coordinator = self._coordinator_factory()
        with sync_span(
            "job.delete_booking", booking_id=booking_id, business_id=business_id, attempt=attempt
        ):
            try:
                if await coordinator.delete_booking(booking_id, business_id):
                    return JobOutcome.success
                transient = coordinator.has_transient_failures
                errors = list(coordinator.errors)
            except Exception as exc:
                transient = classify_error(exc) is ErrorKind.transient
                errors = [sanitize_error_message(exc)]

            if transient and self._can_retry(attempt):
                return await self._retry(
                    DELETE_BOOKING, attempt, booking_id=booking_id, business_id=business_id
                )
            logger.error(
                "Deleting calendar events for booking %s failed after %d attempt(s): %s",
                booking_id,
                attempt,
                "; ".join(errors) or "unknown error",
            )
            return JobOutcome.failed

    # ------------------------------------------------------------------
    # Availability import
    # ------------------------------------------------------------------

    async def import_availability_job(
        self,
        staff_member_id: int,
        business_id: int,
        start_date: date | str | None = None,
        end_date: date | str | None = None,
    ) -> JobOutcome:
        staff = await self._bookings.get_staff_member(staff_member_id)
        if staff is None:
            logger.info("Staff member %s no longer exists; discarding import", staff_member_id)
            return JobOutcome.discarded

        today = datetime.now(UTC).date()
        start = _as_date(start_date, today)
        end = _as_date(end_date, start + timedelta(days=self._sync_settings.import_window_days))

        coordinator = self._coordinator_factory()
        with sync_span("job.import_availability", staff_member_id=staff_member_id):
            success = await coordinator.import_availability(staff_member_id, business_id, start, end)
        if not success:
            # The next scheduled sweep is the recovery path.
            logger.warning(
                "Availability import for staff member %s failed: %s",
                staff_member_id,
                "; ".join(coordinator.errors),
            )
            return JobOutcome.failed

        if self._availability_cache is not None:
            await self._availability_cache.invalidate(staff_member_id)
        await self.schedule_next_import(staff_member_id, business_id)
        return JobOutcome.success

    def next_import_delay(self) -> float:
        """Seconds until the next import, jittered to spread provider load."""
        low = self._job_settings.import_interval_min_hours * 3600
        high = self._job_settings.import_interval_max_hours * 3600
        return self._rng.uniform(low, high)

    async def schedule_next_import(self, staff_member_id: int, business_id: int) -> bool:
        return await self._queue.enqueue(
            IMPORT_AVAILABILITY,
            delay=self.next_import_delay(),
            dedupe_key=import_dedupe_key(staff_member_id),
            staff_member_id=staff_member_id,
            business_id=business_id,
        )

    # ------------------------------------------------------------------
    # Periodic sweeps
    # ------------------------------------------------------------------

    async def token_refresh_job(self) -> JobOutcome:
        summary = await self._token_manager.refresh_expiring()
        return JobOutcome.failed if summary.failed else JobOutcome.success

    async def schedule_imports_job(self) -> JobOutcome:
        """Enqueue one import per staff member with an active connection."""
        enqueued = 0
        pairs = await self._connections.list_staff_with_active_connections()
        for business_id, staff_member_id in pairs:
            if await self._queue.enqueue(
                IMPORT_AVAILABILITY,
                dedupe_key=import_dedupe_key(staff_member_id),
                staff_member_id=staff_member_id,
                business_id=business_id,
            ):
                enqueued += 1
        logger.info(
            "Scheduled %d availability import(s) (%d already queued)",
            enqueued,
            len(pairs) - enqueued,
        )
        return JobOutcome.success

    async def retry_failed_sweep_job(self) -> JobOutcome:
        """Enqueue a retry-failed batch for every business with an active connection."""
        pairs = await self._connections.list_staff_with_active_connections()
        business_ids = sorted({business_id for business_id, _ in pairs})
        for business_id in business_ids:
            await self.retry_failed_syncs_for_business(
                business_id, limit=self._sync_settings.retry_failed_limit
            )
        return JobOutcome.success

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def batch_sync_job(
        self,
        business_id: int,
        action: BatchAction | str,
        limit: int | None = None,
        days_ahead: int | None = None,
    ) -> JobOutcome:
        with sync_span("job.batch_sync", business_id=business_id, action=str(action)):
            result = await self._batch.run(
                business_id, action, limit=limit, days_ahead=days_ahead
            )
        return JobOutcome.failed if result.failed else JobOutcome.success

    async def _enqueue_batch(self, business_id: int, action: BatchAction, **kwargs: Any) -> bool:
        return await self._queue.enqueue(
            BATCH_SYNC,
            dedupe_key=f"batch:{business_id}:{action.value}",
            business_id=business_id,
            action=action.value,
            **kwargs,
        )

    async def retry_failed_syncs_for_business(self, business_id: int, limit: int = 50) -> bool:
        return await self._enqueue_batch(business_id, BatchAction.retry_failed, limit=limit)

    async def sync_pending_bookings_for_business(
        self, business_id: int, limit: int = 100
    ) -> bool:
        return await self._enqueue_batch(business_id, BatchAction.sync_pending, limit=limit)

    async def import_availability_for_business(
        self, business_id: int, days_ahead: int = 30
    ) -> bool:
        return await self._enqueue_batch(
            business_id, BatchAction.import_all_availability, days_ahead=days_ahead
        )

    async def full_sync_for_business(self, business_id: int, limit: int = 200) -> bool:
        return await self._enqueue_batch(business_id, BatchAction.full_sync, limit=limit)

    # ------------------------------------------------------------------
    # Booking lifecycle hooks
    # ------------------------------------------------------------------

    async def on_booking_created(self, booking: Booking) -> bool:
        return await self._enqueue_sync(booking)

    async def on_booking_updated(self, booking: Booking) -> bool:
        return await self._enqueue_sync(booking)

    async def on_booking_cancelled(self, booking: Booking) -> bool:
        return await self._enqueue_delete(booking.id, booking.business_id)

    async def on_booking_destroyed(self, booking_id: int, business_id: int) -> bool:
        return await self._enqueue_delete(booking_id, business_id)

    async def _enqueue_sync(self, booking: Booking) -> bool:
        if booking.is_cancelled:
            return await self._enqueue_delete(booking.id, booking.business_id)
        return await self._queue.enqueue(
            SYNC_BOOKING, dedupe_key=f"sync:{booking.id}", booking_id=booking.id
        )

    async def _enqueue_delete(self, booking_id: int, business_id: int) -> bool:
        return await self._queue.enqueue(
            DELETE_BOOKING,
            dedupe_key=f"delete:{booking_id}",
            booking_id=booking_id,
            business_id=business_id,
        )
