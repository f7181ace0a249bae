"""Business-wide batch operations: retry failed, sync pending, full sync, bulk import.

Long batches sleep briefly between items to stay inside provider rate limits:
0.1 s between bookings when syncing more than 10, 1 s between staff members
when importing for more than 5, and 0.5 s between staff groups when a full
sync spans more than 3 staff members.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from calsync.bookings import BookingGateway
from calsync.coordinator import SyncCoordinator
from calsync.credential_store import ConnectionStore
from calsync.models import BookingCalendarStatus

logger = logging.getLogger(__name__)

BOOKING_DELAY_SECONDS = 0.1
BOOKING_DELAY_THRESHOLD = 10
STAFF_DELAY_SECONDS = 1.0
STAFF_DELAY_THRESHOLD = 5
STAFF_GROUP_DELAY_SECONDS = 0.5
STAFF_GROUP_DELAY_THRESHOLD = 3

DEFAULT_LIMITS = {
    "retry_failed": 50,
    "sync_pending": 100,
    "full_sync": 200,
}
DEFAULT_DAYS_AHEAD = 30
FULL_SYNC_DAYS_BEHIND = 7
FULL_SYNC_DAYS_AHEAD = 30


class BatchAction(StrEnum):
    retry_failed = "retry_failed"
    sync_pending = "sync_pending"
    import_all_availability = "import_all_availability"
    full_sync = "full_sync"


@dataclass
class BatchResult:
    action: BatchAction
    processed: int = 0
    successful: int = 0
    failed: int = 0


class BatchSync:
    """Runs one :class:`BatchAction` for one business."""

    def __init__(
        self,
        coordinator_factory: Callable[[], SyncCoordinator],
        *,
        connections: ConnectionStore,
        bookings: BookingGateway,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._coordinator_factory = coordinator_factory
        self._connections = connections
        self._bookings = bookings
        self._sleep = sleep

    async def run(
        self,
        business_id: int,
        action: BatchAction | str,
        *,
        limit: int | None = None,
        days_ahead: int | None = None,
    ) -> BatchResult:
        action = BatchAction(action)
        if limit is None:
            limit = DEFAULT_LIMITS.get(action.value, 0)
        if days_ahead is None:
            days_ahead = DEFAULT_DAYS_AHEAD
        logger.info("Starting batch %s for business %s", action.value, business_id)
        if action is BatchAction.retry_failed:
            result = await self._retry_failed(business_id, limit)
        elif action is BatchAction.sync_pending:
            result = await self._sync_pending(business_id, limit)
        elif action is BatchAction.import_all_availability:
            result = await self._import_all(business_id, days_ahead)
        else:
            result = await self._full_sync(business_id, limit)
        logger.info(
            "Completed batch %s for business %s: processed=%d successful=%d failed=%d",
            action.value,
            business_id,
            result.processed,
            result.successful,
            result.failed,
        )
        return result

    async def _retry_failed(self, business_id: int, limit: int) -> BatchResult:
        summary = await self._coordinator_factory().retry_failed_syncs(business_id, limit)
        return BatchResult(
            BatchAction.retry_failed,
            processed=summary.total_attempted,
            successful=summary.successful,
            failed=summary.failed,
        )

    async def _sync_pending(self, business_id: int, limit: int) -> BatchResult:
        result = BatchResult(BatchAction.sync_pending)
        booking_ids = await self._bookings.list_booking_ids_by_status(
            business_id,
            [BookingCalendarStatus.not_synced, BookingCalendarStatus.sync_pending],
            limit=limit,
        )
        coordinator = self._coordinator_factory()
        for index, booking_id in enumerate(booking_ids):
            if index and len(booking_ids) > BOOKING_DELAY_THRESHOLD:
                await self._sleep(BOOKING_DELAY_SECONDS)
            result.processed += 1
            if await coordinator.sync_booking(booking_id):
                result.successful += 1
            else:
                result.failed += 1
        return result

    async def _import_all(self, business_id: int, days_ahead: int) -> BatchResult:
        result = BatchResult(BatchAction.import_all_availability)
        staff_ids = [
            staff_member_id
            for _, staff_member_id in await self._connections.list_staff_with_active_connections(
                business_id
            )
        ]
        active_staff = {staff.id for staff in await self._bookings.list_staff(business_id)}
        staff_ids = [staff_id for staff_id in staff_ids if staff_id in active_staff]

        start = datetime.now(UTC).date()
        end = start + timedelta(days=days_ahead)
        coordinator = self._coordinator_factory()
        for index, staff_member_id in enumerate(staff_ids):
            if index and len(staff_ids) > STAFF_DELAY_THRESHOLD:
                await self._sleep(STAFF_DELAY_SECONDS)
            result.processed += 1
            if await coordinator.import_availability(staff_member_id, business_id, start, end):
                result.successful += 1
            else:
                result.failed += 1
        return result

    async def _full_sync(self, business_id: int, limit: int) -> BatchResult:
        result = BatchResult(BatchAction.full_sync)
        now = datetime.now(UTC)
        rows = await self._bookings.list_in_window(
            business_id,
            start=now - timedelta(days=FULL_SYNC_DAYS_BEHIND),
            end=now + timedelta(days=FULL_SYNC_DAYS_AHEAD),
            limit=limit,
        )
        groups: dict[int, list[int]] = {}
        for booking_id, staff_member_id in rows:
            groups.setdefault(staff_member_id, []).append(booking_id)
        connected = {
            staff_member_id
            for _, staff_member_id in await self._connections.list_staff_with_active_connections(
                business_id
            )
        }

        coordinator = self._coordinator_factory()
        for index, (staff_member_id, booking_ids) in enumerate(groups.items()):
            if index and len(groups) > STAFF_GROUP_DELAY_THRESHOLD:
                await self._sleep(STAFF_GROUP_DELAY_SECONDS)
            if staff_member_id not in connected:
                continue
            for booking_id in booking_ids:
                result.processed += 1
                if await coordinator.sync_booking(booking_id):
                    result.successful += 1
                else:
                    result.failed += 1
        return result
