"""Sync coordinator: fans booking and availability work out to every connection.

For one booking (or one staff member and date range) the coordinator loads
the staff member's active connections, asks each connection's adapter to do
the remote work, and records the outcome in the event mapping store.

Rules the coordinator keeps:

- Work on one booking is serialized by the booking lock, held across the
  remote call and the local write.  The booking is re-read under the lock; a
  booking that has since been cancelled or destroyed turns a queued sync into
  a no-op.
- A booking gets at most one remote event per connection: once a live
  mapping with a remote id exists, later syncs update that event.
- Failures are contained per connection.  Any exception raised while handling
  one connection is recorded against that connection (mapping, connection
  error, sync log) and the remaining connections are still processed.
- ``business_id`` is always passed explicitly.

A coordinator keeps the per-connection results of its last operation in
:attr:`SyncCoordinator.results` and :attr:`SyncCoordinator.errors`, so use
one instance per unit of work.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Protocol

import httpx

from calsync.bookings import BookingGateway
from calsync.config import OAuthConfig, SyncSettings
from calsync.core.metrics import SyncMetrics
from calsync.core.telemetry import sync_span
from calsync.credential_store import ConnectionStore
from calsync.diagnostics import (
    ConnectionHealth,
    SyncDiagnostics,
    find_issues,
    oauth_configuration,
)
from calsync.mapping_store import EventMappingStore, SyncStatistics
from calsync.models import (
    Booking,
    BookingCalendarStatus,
    CalendarConnection,
    EventMapping,
    MappingSource,
    SyncAction,
    SyncOutcome,
)
from calsync.providers.base import (
    CalendarAdapter,
    DeleteOutcome,
    ErrorKind,
    ProviderAuthError,
    RemoteEvent,
    classify_error,
    day_end,
    day_start,
    sanitize_error_message,
)
from calsync.providers.detection import resolve_adapter_kind
from calsync.providers.oauth import OAuthClient
from calsync.providers.registry import ADAPTER_CLASSES, build_adapter
from calsync.token_refresh import TokenRefreshManager

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Collaborator contracts
# ---------------------------------------------------------------------------


class Notifier(Protocol):
    """Delivers final sync failure notices to the business."""

    async def sync_failed(self, booking: Booking, errors: list[str]) -> None:
        """Tell the business that *booking* could not be synced."""
        ...


class AvailabilityCache(Protocol):
    """Cached availability views that imports must invalidate."""

    async def invalidate(self, staff_member_id: int) -> None:
        """Drop any cached availability for *staff_member_id*."""
        ...


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectionResult:
    """Outcome of one coordinator operation against one connection."""

    connection_id: uuid.UUID
    provider: str
    action: SyncAction
    success: bool
    error: str | None = None
    error_kind: ErrorKind | None = None
    skipped: bool = False

    @property
    def transient(self) -> bool:
        return not self.success and self.error_kind is ErrorKind.transient


@dataclass
class RetrySummary:
    total_attempted: int = 0
    successful: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total_attempted": self.total_attempted,
            "successful": self.successful,
            "failed": self.failed,
        }


@dataclass(frozen=True)
class ConnectionTestResult:
    success: bool
    message: str
    error_kind: ErrorKind | None = None


def provider_label(connection: CalendarConnection) -> str:
    """Short provider name used to qualify error messages (``google``, ``icloud``...)."""
    kind = connection.adapter_kind or resolve_adapter_kind(connection)
    return ADAPTER_CLASSES[kind].provider_name


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class SyncCoordinator:
    """Orchestrates adapter calls across a staff member's calendar connections.

    Parameters
    ----------
    connections, mappings, bookings:
        Stores for connections, event mappings/sync logs, and the booking domain.
    token_manager:
        Ensures tokens are fresh before use and serves adapters' 401 callbacks.
    adapter_factory:
        Builds an adapter for a connection.  Defaults to
        :func:`calsync.providers.registry.build_adapter` wired to
        *token_manager* for 401 handling.
    """

    def __init__(
        self,
        connections: ConnectionStore,
        mappings: EventMappingStore,
        bookings: BookingGateway,
        token_manager: TokenRefreshManager,
        *,
        oauth_client: OAuthClient | None = None,
        adapter_factory: Callable[[CalendarConnection], CalendarAdapter] | None = None,
        settings: SyncSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._connections = connections
        self._mappings = mappings
        self._bookings = bookings
        self._token_manager = token_manager
        self._oauth_client = oauth_client
        self._adapter_factory = adapter_factory
        self._settings = settings or SyncSettings()
        self._http_client = http_client
        self._metrics = metrics or SyncMetrics()
        self.results: list[ConnectionResult] = []
        self.errors: list[str] = []

    def _reset(self) -> None:
        self.results = []
        self.errors = []

    def _build_adapter(self, connection: CalendarConnection) -> CalendarAdapter:
        if self._adapter_factory is not None:
            return self._adapter_factory(connection)
        return build_adapter(
            connection,
            oauth_client=self._oauth_client,
            on_unauthorized=self._token_manager.handle_unauthorized,
            http_client=self._http_client,
            timeout=httpx.Timeout(
                self._settings.http_timeout_seconds,
                connect=self._settings.http_connect_timeout_seconds,
            ),
            metrics=self._metrics,
        )

    async def _usable_connection(self, connection: CalendarConnection) -> CalendarConnection:
        fresh = await self._token_manager.ensure_fresh(connection)
        if fresh is None:
            raise ProviderAuthError(
                f"{provider_label(connection)} credentials expired and could not be refreshed"
            )
        return fresh

    @property
    def has_transient_failures(self) -> bool:
        return any(result.transient for result in self.results)

    # ------------------------------------------------------------------
    # Booking sync
    # ------------------------------------------------------------------

    async def sync_booking(self, booking: Booking | int) -> bool:
        """Push *booking* to every active connection of its staff member.

        Returns ``True`` only if every connection succeeded.  A booking with no
        active connections (or one that no longer needs syncing) returns
        ``True`` without touching its status.
        """
        self._reset()
        booking_id = booking if isinstance(booking, int) else booking.id
        with sync_span("sync_booking", booking_id=booking_id):
            async with self._bookings.lock_booking(booking_id):
                current = await self._bookings.get(booking_id)
                if current is None:
                    logger.info("Booking %s no longer exists; nothing to sync", booking_id)
                    return True
                if current.is_cancelled:
                    logger.info("Booking %s is cancelled; skipping sync", booking_id)
                    return True

                connections = await self._connections.list_active_for_staff(
                    current.staff_member_id, current.business_id
                )
                if not connections:
                    logger.debug(
                        "Staff member %s has no active calendar connections",
                        current.staff_member_id,
                    )
                    return True

                await self._bookings.update_calendar_status(
                    booking_id, BookingCalendarStatus.sync_pending
                )
                for connection in connections:
                    self.results.append(await self._push_to_connection(current, connection))

                success = all(result.success for result in self.results)
                await self._bookings.update_calendar_status(
                    booking_id,
                    BookingCalendarStatus.synced if success else BookingCalendarStatus.sync_failed,
                )
        if success:
            logger.info("Booking %s synced to %d calendar(s)", booking_id, len(self.results))
        else:
            logger.warning("Booking %s sync failed: %s", booking_id, "; ".join(self.errors))
        return success

    async def _push_to_connection(
        self,
        booking: Booking,
        connection: CalendarConnection,
    ) -> ConnectionResult:
        label = provider_label(connection)
        action = SyncAction.event_create
        try:
            usable = await self._usable_connection(connection)
            mapping = await self._mappings.get_for_booking(connection.id, booking.id)
            async with self._build_adapter(usable) as adapter:
                if mapping is not None and mapping.is_live and mapping.external_event_id:
                    action = SyncAction.event_update
                    external_event_id = mapping.external_event_id
                    external_calendar_id = mapping.external_calendar_id
                    if not await adapter.update_event(mapping, booking):
                        logger.info(
                            "Remote event %s for booking %s is gone on %s; recreating",
                            mapping.external_event_id,
                            booking.id,
                            label,
                        )
                        action = SyncAction.event_create
                        created = await adapter.create_event(booking)
                        external_event_id = created.external_event_id
                        external_calendar_id = created.external_calendar_id
                else:
                    created = await adapter.create_event(booking)
                    external_event_id = created.external_event_id
                    external_calendar_id = created.external_calendar_id

            saved = await self._mappings.upsert_for_booking(
                connection_id=connection.id,
                business_id=booking.business_id,
                booking_id=booking.id,
                external_event_id=external_event_id,
                external_calendar_id=external_calendar_id,
            )
            await self._connections.mark_synced(connection.id)
            await self._mappings.log_attempt(
                business_id=booking.business_id,
                provider=label,
                action=action,
                outcome=SyncOutcome.success,
                connection_id=connection.id,
                booking_id=booking.id,
                mapping_id=saved.id,
            )
        except Exception as exc:
            return await self._failure(
                connection,
                action,
                exc,
                business_id=booking.business_id,
                booking_id=booking.id,
            )
        self._metrics.record_operation(action.value, label, "success")
        return ConnectionResult(connection.id, label, action, success=True)

    async def _failure(
        self,
        connection: CalendarConnection,
        action: SyncAction,
        exc: BaseException,
        *,
        business_id: int,
        booking_id: int | None = None,
    ) -> ConnectionResult:
        """Record one connection's failure; never raises."""
        label = provider_label(connection)
        kind = classify_error(exc)
        message = sanitize_error_message(exc)
        self.errors.append(f"{label}: {message}")
        logger.warning(
            "%s %s failed for connection %s (kind=%s): %s",
            label,
            action.value,
            connection.id,
            kind.value,
            message,
        )
        try:
            mapping_id = None
            if booking_id is not None:
                mapping = await self._mappings.record_failure(
                    connection_id=connection.id,
                    business_id=business_id,
                    booking_id=booking_id,
                    error=message,
                )
                mapping_id = mapping.id
            await self._connections.record_error(connection.id, f"{label}: {message}")
            await self._mappings.log_attempt(
                business_id=business_id,
                provider=label,
                action=action,
                outcome=SyncOutcome.failed,
                connection_id=connection.id,
                booking_id=booking_id,
                mapping_id=mapping_id,
                message=message,
            )
        except Exception:
            logger.exception("Could not record sync failure for connection %s", connection.id)
        self._metrics.record_operation(action.value, label, "failed")
        return ConnectionResult(
            connection.id, label, action, success=False, error=message, error_kind=kind
        )

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete_booking(self, booking: Booking | int, business_id: int | None = None) -> bool:
        """Delete the remote events of a booking and mark its mappings deleted.

        Mappings are located by booking id and business id, so this works
        whether or not the booking row still exists.  A remote event that is
        already gone counts as deleted.
        """
        self._reset()
        if isinstance(booking, Booking):
            booking_id, business_id = booking.id, booking.business_id
        else:
            booking_id = booking
        if business_id is None:
            raise ValueError("business_id is required when deleting by booking id")

        with sync_span("delete_booking", booking_id=booking_id, business_id=business_id):
            async with self._bookings.lock_booking(booking_id):
                mappings = await self._mappings.list_live_for_booking(booking_id, business_id)
                if not mappings:
                    return True
                if await self._bookings.get(booking_id) is None:
                    logger.info(
                        "Booking %s no longer exists; deleting %d orphaned mapping(s)",
                        booking_id,
                        len(mappings),
                    )
                for mapping in mappings:
                    self.results.append(await self._delete_mapping(mapping))
        return all(result.success for result in self.results)

    async def _delete_mapping(self, mapping: EventMapping) -> ConnectionResult:
        action = SyncAction.event_delete
        connection = await self._connections.get(mapping.calendar_connection_id)
        if connection is None or not connection.active:
            logger.info(
                "Skipping mapping %s: connection %s is not active",
                mapping.id,
                mapping.calendar_connection_id,
            )
            return ConnectionResult(
                mapping.calendar_connection_id, "unknown", action, success=True, skipped=True
            )

        label = provider_label(connection)
        try:
            usable = await self._usable_connection(connection)
            async with self._build_adapter(usable) as adapter:
                outcome = await adapter.delete_event(
                    mapping.external_event_id or "", mapping.external_calendar_id
                )
            await self._mappings.mark_deleted(mapping.id)
            await self._mappings.log_attempt(
                business_id=mapping.business_id,
                provider=label,
                action=action,
                outcome=SyncOutcome.success,
                connection_id=connection.id,
                booking_id=mapping.booking_id,
                mapping_id=mapping.id,
                message=(
                    "remote event already removed" if outcome is DeleteOutcome.not_found else None
                ),
            )
        except Exception as exc:
            return await self._failure(
                connection,
                action,
                exc,
                business_id=mapping.business_id,
                booking_id=mapping.booking_id,
            )
        self._metrics.record_operation(action.value, label, "success")
        return ConnectionResult(connection.id, label, action, success=True)

    async def cleanup_orphaned_mappings(
        self,
        business_id: int | None = None,
        connection_id: uuid.UUID | None = None,
    ) -> int:
        """Delete remote events of mappings whose booking no longer exists.

        Returns the number of mappings cleaned up.
        """
        self._reset()
        with sync_span("cleanup_orphaned_mappings", business_id=business_id):
            orphans = await self._mappings.find_orphaned(
                business_id=business_id, connection_id=connection_id
            )
            by_booking: dict[int, list[EventMapping]] = defaultdict(list)
            for mapping in orphans:
                if mapping.booking_id is not None and mapping.external_event_id:
                    by_booking[mapping.booking_id].append(mapping)

            cleaned = 0
            for booking_id, mappings in by_booking.items():
                async with self._bookings.lock_booking(booking_id):
                    for mapping in mappings:
                        result = await self._delete_mapping(mapping)
                        self.results.append(result)
                        if result.success and not result.skipped:
                            cleaned += 1
        logger.info("Cleaned up %d orphaned mapping(s)", cleaned)
        return cleaned

    # ------------------------------------------------------------------
    # Availability import
    # ------------------------------------------------------------------

    async def import_availability(
        self,
        staff_member_id: int,
        business_id: int,
        start_date: date | datetime,
        end_date: date | datetime,
    ) -> bool:
        """Mirror remote busy events in ``[start_date, end_date]`` into import mappings."""
        self._reset()
        window_start, window_end = day_start(start_date), day_end(end_date)
        with sync_span(
            "import_availability", staff_member_id=staff_member_id, business_id=business_id
        ):
            connections = await self._connections.list_active_for_staff(
                staff_member_id, business_id
            )
            for connection in connections:
                self.results.append(
                    await self._import_connection(connection, window_start, window_end)
                )
        return all(result.success for result in self.results)

    async def _import_connection(
        self,
        connection: CalendarConnection,
        window_start: datetime,
        window_end: datetime,
    ) -> ConnectionResult:
        label = provider_label(connection)
        action = SyncAction.event_import
        try:
            usable = await self._usable_connection(connection)
            async with self._build_adapter(usable) as adapter:
                remote = await adapter.import_events(window_start, window_end)

            remote_by_id: dict[str, RemoteEvent] = {}
            for event in remote:
                remote_by_id.setdefault(event.external_event_id, event)
            existing = await self._mappings.list_imported(connection.id, window_start, window_end)
            existing_by_id = {m.external_event_id: m for m in existing}

            stale = [m.id for m in existing if m.external_event_id not in remote_by_id]
            moved = [
                (existing_by_id[event_id], event)
                for event_id, event in remote_by_id.items()
                if event_id in existing_by_id
                and (
                    existing_by_id[event_id].starts_at != event.starts_at
                    or existing_by_id[event_id].ends_at != event.ends_at
                )
            ]
            new: list[RemoteEvent] = []
            for event_id, event in remote_by_id.items():
                if event_id in existing_by_id:
                    continue
                # Imported earlier at a time outside this window.
                known = await self._mappings.get_by_external_id(connection.id, event_id)
                if known is None:
                    new.append(event)
                elif known.source is MappingSource.imported:
                    moved.append((known, event))

            inserted = await self._mappings.insert_imported(
                connection_id=connection.id,
                business_id=connection.business_id,
                events=new,
            )
            for mapping, event in moved:
                await self._mappings.update_imported(mapping.id, event)
            pruned = await self._mappings.prune_imported(connection.id, stale)
            await self._connections.mark_synced(connection.id)
            await self._mappings.log_attempt(
                business_id=connection.business_id,
                provider=label,
                action=action,
                outcome=SyncOutcome.success,
                connection_id=connection.id,
                message=f"inserted={inserted} updated={len(moved)} pruned={pruned}",
            )
        except Exception as exc:
            return await self._failure(
                connection, action, exc, business_id=connection.business_id
            )
        logger.info(
            "Imported %d remote event(s) from %s for staff member %s "
            "(inserted=%d updated=%d pruned=%d)",
            len(remote_by_id),
            label,
            connection.staff_member_id,
            inserted,
            len(moved),
            pruned,
        )
        self._metrics.record_operation(action.value, label, "success")
        return ConnectionResult(connection.id, label, action, success=True)

    # ------------------------------------------------------------------
    # Batch and recovery
    # ------------------------------------------------------------------

    async def batch_sync_bookings(self, bookings: Iterable[Booking | int]) -> bool:
        """Sync each booking in turn; True only if all of them synced."""
        results: list[ConnectionResult] = []
        errors: list[str] = []
        success = True
        for booking in bookings:
            success = await self.sync_booking(booking) and success
            results.extend(self.results)
            errors.extend(self.errors)
        self.results, self.errors = results, errors
        return success

    async def retry_failed_syncs(self, business_id: int, limit: int | None = None) -> RetrySummary:
        """Re-sync bookings in ``sync_failed`` whose mappings still have attempts left."""
        if limit is None:
            limit = self._settings.retry_failed_limit
        summary = RetrySummary()
        with sync_span("retry_failed_syncs", business_id=business_id, limit=limit):
            exhausted = await self._mappings.list_exhausted_booking_ids(
                business_id, self._settings.max_mapping_attempts
            )
            booking_ids = await self._bookings.list_booking_ids_by_status(
                business_id,
                [BookingCalendarStatus.sync_failed],
                limit=limit,
                exclude=exhausted,
            )
            results: list[ConnectionResult] = []
            errors: list[str] = []
            for booking_id in booking_ids:
                summary.total_attempted += 1
                if await self.sync_booking(booking_id):
                    summary.successful += 1
                else:
                    summary.failed += 1
                results.extend(self.results)
                errors.extend(self.errors)
            self.results, self.errors = results, errors
        logger.info(
            "Retried failed syncs for business %s: attempted=%d successful=%d failed=%d",
            business_id,
            summary.total_attempted,
            summary.successful,
            summary.failed,
        )
        return summary

    async def sync_statistics(
        self,
        business_id: int,
        since: datetime | None = None,
    ) -> SyncStatistics:
        """Booking sync attempt counts over the statistics window (24 h by default)."""
        since = since or datetime.now(UTC) - timedelta(hours=self._settings.statistics_window_hours)
        stats = await self._mappings.statistics(business_id, since)
        stats.recent_failures = await self._mappings.recent_failures(business_id, limit=10)
        return stats

    async def diagnostics(
        self,
        business_id: int,
        *,
        oauth: OAuthConfig | None = None,
        now: datetime | None = None,
    ) -> SyncDiagnostics:
        """Read-only health report: connection state, booking sync status, failures.

        A connection counts as stale when it has not synced within the
        deactivation grace period.  OAuth client configuration is only checked
        when *oauth* is given.
        """
        now = now or datetime.now(UTC)
        with sync_span("diagnostics", business_id=business_id):
            connections = await self._connections.list_active(business_id)
            report = SyncDiagnostics(
                business_id=business_id,
                generated_at=now,
                connections=[ConnectionHealth.from_connection(c, now) for c in connections],
                booking_status_counts=await self._bookings.count_by_calendar_status(
                    business_id,
                    sorted({c.staff_member_id for c in connections}),
                    since=now,
                ),
                failing_mappings=await self._mappings.list_failed(business_id),
                statistics=await self.sync_statistics(business_id),
                oauth_configured=oauth_configuration(oauth) if oauth is not None else {},
            )
            report.issues = find_issues(
                report, stale_after=timedelta(hours=self._settings.deactivation_grace_hours)
            )
        logger.info(
            "Diagnostics for business %s: %d connection(s), %d issue(s)",
            business_id,
            len(report.connections),
            len(report.issues),
        )
        return report

    async def test_connection(self, connection: CalendarConnection) -> ConnectionTestResult:
        label = provider_label(connection)
        try:
            usable = await self._usable_connection(connection)
            async with self._build_adapter(usable) as adapter:
                await adapter.test_connection()
        except Exception as exc:
            kind = classify_error(exc)
            return ConnectionTestResult(
                success=False,
                message=f"{label}: {sanitize_error_message(exc)}",
                error_kind=kind,
            )
        return ConnectionTestResult(success=True, message=f"{connection.display_name} connection OK")
