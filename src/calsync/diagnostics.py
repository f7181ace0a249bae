"""Per-business calendar sync health report.

:meth:`calsync.coordinator.SyncCoordinator.diagnostics` gathers the inputs;
this module holds the report types and the rules that turn them into a list
of human-readable issues.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from calsync.config import OAuthConfig
from calsync.mapping_store import SyncStatistics
from calsync.models import BookingCalendarStatus, CalendarConnection, EventMapping, ProviderType


@dataclass(frozen=True)
class ConnectionHealth:
    """Token and sync state of one active connection.  Never carries secrets."""

    connection_id: uuid.UUID
    staff_member_id: int
    provider: ProviderType
    display_name: str
    has_access_token: bool
    has_refresh_token: bool
    token_expires_at: datetime | None
    token_expired: bool
    has_calendar_permissions: bool
    last_synced_at: datetime | None
    last_sync_age: timedelta | None
    last_sync_error: str | None

    @classmethod
    def from_connection(cls, connection: CalendarConnection, now: datetime) -> ConnectionHealth:
        last = connection.last_synced_at
        return cls(
            connection_id=connection.id,
            staff_member_id=connection.staff_member_id,
            provider=connection.provider,
            display_name=connection.display_name,
            has_access_token=bool(connection.access_token) or connection.is_caldav,
            has_refresh_token=bool(connection.refresh_token),
            token_expires_at=connection.token_expires_at,
            token_expired=connection.token_expired(now),
            has_calendar_permissions=connection.has_calendar_permissions(),
            last_synced_at=last,
            last_sync_age=(now - last) if last is not None else None,
            last_sync_error=connection.last_sync_error,
        )

    def stale(self, threshold: timedelta) -> bool:
        """True when the connection never synced or last synced before *threshold* ago."""
        return self.last_sync_age is None or self.last_sync_age > threshold

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": str(self.connection_id),
            "staff_member_id": self.staff_member_id,
            "provider": self.provider.value,
            "display_name": self.display_name,
            "has_access_token": self.has_access_token,
            "has_refresh_token": self.has_refresh_token,
            "token_expires_at": _iso(self.token_expires_at),
            "token_expired": self.token_expired,
            "has_calendar_permissions": self.has_calendar_permissions,
            "last_synced_at": _iso(self.last_synced_at),
            "last_sync_age_seconds": (
                int(self.last_sync_age.total_seconds()) if self.last_sync_age is not None else None
            ),
            "last_sync_error": self.last_sync_error,
        }


@dataclass
class SyncDiagnostics:
    """Health report for one business."""

    business_id: int
    generated_at: datetime
    connections: list[ConnectionHealth] = field(default_factory=list)
    booking_status_counts: dict[BookingCalendarStatus, int] = field(default_factory=dict)
    failing_mappings: list[EventMapping] = field(default_factory=list)
    statistics: SyncStatistics = field(default_factory=SyncStatistics)
    oauth_configured: dict[ProviderType, bool] = field(default_factory=dict)
    issues: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.issues

    def to_dict(self) -> dict[str, Any]:
        return {
            "business_id": self.business_id,
            "generated_at": _iso(self.generated_at),
            "healthy": self.healthy,
            "issues": list(self.issues),
            "connections": [health.to_dict() for health in self.connections],
            "booking_status_counts": {
                status.value: count for status, count in self.booking_status_counts.items()
            },
            "failing_mappings": [
                {
                    "mapping_id": str(m.id),
                    "connection_id": str(m.calendar_connection_id),
                    "booking_id": m.booking_id,
                    "attempt_count": m.attempt_count,
                    "last_error": m.last_error,
                }
                for m in self.failing_mappings
            ],
            "statistics": self.statistics.to_dict(),
            "oauth_configured": {
                provider.value: configured for provider, configured in self.oauth_configured.items()
            },
        }


def oauth_configuration(oauth: OAuthConfig) -> dict[ProviderType, bool]:
    return {
        ProviderType.google: oauth.google.is_configured,
        ProviderType.microsoft: oauth.microsoft.is_configured,
    }


def find_issues(report: SyncDiagnostics, *, stale_after: timedelta) -> list[str]:
    """Derive the issue list from an otherwise complete report."""
    issues: list[str] = []
    connections = report.connections

    expired = [c for c in connections if c.token_expired and not c.has_refresh_token]
    if expired:
        issues.append(f"{len(expired)} connection(s) have expired tokens and cannot refresh")
    unauthorized = [c for c in connections if not c.has_calendar_permissions]
    if unauthorized:
        issues.append(f"{len(unauthorized)} connection(s) missing calendar permissions")
    stale = [c for c in connections if c.stale(stale_after)]
    if stale:
        hours = int(stale_after.total_seconds() // 3600)
        issues.append(f"{len(stale)} connection(s) have not synced in the last {hours}h")

    for provider, configured in report.oauth_configured.items():
        if not configured and any(c.provider is provider for c in connections):
            issues.append(f"{provider.value} connections exist but the OAuth client is not configured")

    unsynced = report.booking_status_counts.get(BookingCalendarStatus.not_synced, 0)
    if unsynced:
        issues.append(
            f"{unsynced} upcoming booking(s) not synced despite having calendar connections"
        )
    failed = report.booking_status_counts.get(BookingCalendarStatus.sync_failed, 0)
    if failed:
        issues.append(f"{failed} upcoming booking(s) failed to sync")
    return issues


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
