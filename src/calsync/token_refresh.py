"""Proactive OAuth token refresh and connection deactivation.

All token writes happen under ``SELECT ... FOR UPDATE`` on the connection row
(:meth:`ConnectionStore.lock_for_update`), and the expiry check is repeated
under that lock.  Two workers racing to refresh the same connection therefore
serialize: the second sees the first one's token and does nothing.

The same path serves adapters that hit a 401 mid-sync
(:meth:`TokenRefreshManager.handle_unauthorized`): if another worker already
rotated the token, the adapter picks up the stored one instead of spending
the refresh token again.

A refresh that the provider rejects deactivates the connection once it has
not synced successfully within the grace period (24 hours by default).
Transient failures (timeouts, 5xx) never deactivate.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum

import httpx

from calsync.config import SyncSettings
from calsync.core.metrics import SyncMetrics
from calsync.core.telemetry import sync_span
from calsync.credential_store import ConnectionStore
from calsync.mapping_store import EventMappingStore
from calsync.models import CalendarConnection, SyncAction, SyncOutcome
from calsync.providers.base import (
    CalendarAdapter,
    ErrorKind,
    ProviderAuthError,
    TokenRefreshError,
    classify_error,
    sanitize_error_message,
)
from calsync.providers.oauth import OAuthCalendarAdapter, OAuthClient
from calsync.providers.registry import build_adapter

logger = logging.getLogger(__name__)


class RefreshOutcome(StrEnum):
    refreshed = "refreshed"
    # Another worker rotated the token while we waited for the row lock.
    already_rotated = "already_rotated"
    not_needed = "not_needed"
    failed = "failed"
    deactivated = "deactivated"
    missing = "missing"


@dataclass(frozen=True)
class RefreshResult:
    connection_id: uuid.UUID
    outcome: RefreshOutcome
    connection: CalendarConnection | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None

    @property
    def usable(self) -> bool:
        return self.outcome in (
            RefreshOutcome.refreshed,
            RefreshOutcome.already_rotated,
            RefreshOutcome.not_needed,
        )


@dataclass
class RefreshSummary:
    checked: int = 0
    refreshed: int = 0
    failed: int = 0
    deactivated: int = 0

    def record(self, outcome: RefreshOutcome) -> None:
        if outcome in (RefreshOutcome.refreshed, RefreshOutcome.already_rotated):
            self.refreshed += 1
        elif outcome is RefreshOutcome.failed:
            self.failed += 1
        elif outcome is RefreshOutcome.deactivated:
            self.deactivated += 1


class TokenRefreshManager:
    """Refreshes OAuth tokens under the connection row lock.

    Parameters
    ----------
    connections:
        Connection store providing the row lock and token writes.
    oauth_client:
        Token endpoint client handed to the adapters it builds.
    mappings:
        Optional; when given, every refresh attempt is written to the sync log.
    adapter_factory:
        Builds the adapter whose ``refresh_token()`` is called.  Defaults to
        :func:`calsync.providers.registry.build_adapter`.
    """

    def __init__(
        self,
        connections: ConnectionStore,
        *,
        oauth_client: OAuthClient | None = None,
        mappings: EventMappingStore | None = None,
        settings: SyncSettings | None = None,
        adapter_factory: Callable[[CalendarConnection], CalendarAdapter] | None = None,
        http_client: httpx.AsyncClient | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._connections = connections
        self._oauth_client = oauth_client
        self._mappings = mappings
        self._settings = settings or SyncSettings()
        self._adapter_factory = adapter_factory
        self._http_client = http_client
        self._metrics = metrics or SyncMetrics()

    @property
    def refresh_window(self) -> timedelta:
        return timedelta(minutes=self._settings.refresh_window_minutes)

    @property
    def grace_period(self) -> timedelta:
        return timedelta(hours=self._settings.deactivation_grace_hours)

    def _build_adapter(self, connection: CalendarConnection) -> CalendarAdapter:
        if self._adapter_factory is not None:
            return self._adapter_factory(connection)
        return build_adapter(
            connection,
            oauth_client=self._oauth_client,
            http_client=self._http_client,
            metrics=self._metrics,
        )

    def past_grace_period(self, connection: CalendarConnection, now: datetime | None = None) -> bool:
        """True when the connection has not synced successfully within the grace period."""
        if connection.last_synced_at is None:
            return True
        return connection.last_synced_at < (now or datetime.now(UTC)) - self.grace_period

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def refresh_expiring(self, window: timedelta | None = None) -> RefreshSummary:
        """Refresh every active connection whose token expires within *window*."""
        window = window or self.refresh_window
        summary = RefreshSummary()
        with sync_span("token_refresh_sweep", window_minutes=int(window.total_seconds() // 60)):
            candidates = await self._connections.list_expiring(datetime.now(UTC) + window)
            for connection in candidates:
                summary.checked += 1
                try:
                    result = await self.refresh_connection(connection.id, window=window)
                except Exception:
                    logger.exception("Token refresh crashed for connection %s", connection.id)
                    summary.failed += 1
                    continue
                summary.record(result.outcome)
        logger.info(
            "Token refresh sweep: checked=%d refreshed=%d failed=%d deactivated=%d",
            summary.checked,
            summary.refreshed,
            summary.failed,
            summary.deactivated,
        )
        return summary

    # ------------------------------------------------------------------
    # Single connection
    # ------------------------------------------------------------------

    async def refresh_connection(
        self,
        connection_id: uuid.UUID,
        *,
        force: bool = False,
        window: timedelta | None = None,
        adapter: CalendarAdapter | None = None,
    ) -> RefreshResult:
        """Refresh one connection's token while holding its row lock.

        Without *force*, the refresh only happens when the token (re-read under
        the lock) still expires within *window*.  When *adapter* is given (a
        sync hit a 401), a token that differs from the adapter's is taken as
        already rotated and handed to the adapter as-is.
        """
        window = window or self.refresh_window
        with sync_span("token_refresh", connection_id=str(connection_id), force=force):
            async with self._connections.lock_for_update(connection_id) as (conn, connection):
                if connection is None or not connection.active:
                    return RefreshResult(connection_id, RefreshOutcome.missing)

                now = datetime.now(UTC)
                if (
                    isinstance(adapter, OAuthCalendarAdapter)
                    and connection.access_token
                    and connection.access_token != adapter.access_token
                    and not connection.token_expired(now)
                ):
                    adapter.use_access_token(connection.access_token)
                    adapter.connection = connection
                    logger.info("Connection %s token already rotated by another worker", connection_id)
                    return RefreshResult(connection_id, RefreshOutcome.already_rotated, connection)

                if connection.is_caldav:
                    return RefreshResult(connection_id, RefreshOutcome.not_needed, connection)
                if not force and not connection.needs_refresh(now, window):
                    return RefreshResult(connection_id, RefreshOutcome.not_needed, connection)

                owns_adapter = adapter is None
                refresher = adapter or self._build_adapter(connection)
                # Refresh with the refresh token as stored now, not as first loaded.
                refresher.connection = connection
                try:
                    if not connection.refresh_token:
                        raise TokenRefreshError(
                            f"{connection.provider.value} connection has no refresh token"
                        )
                    grant = await refresher.refresh_token()
                except Exception as exc:
                    return await self._handle_failure(conn, connection, exc, now)
                finally:
                    if owns_adapter:
                        await refresher.aclose()

                if grant is None:
                    return RefreshResult(connection_id, RefreshOutcome.not_needed, connection)

                await self._connections.update_tokens(
                    connection_id,
                    access_token=grant.access_token,
                    refresh_token=grant.refresh_token,
                    expires_at=grant.expires_at,
                    conn=conn,
                )
                refreshed = connection.model_copy(
                    update={
                        "access_token": grant.access_token,
                        "refresh_token": grant.refresh_token or connection.refresh_token,
                        "token_expires_at": grant.expires_at,
                        "last_sync_error": None,
                    }
                )
                if isinstance(refresher, OAuthCalendarAdapter):
                    refresher.use_access_token(grant.access_token)
                    refresher.connection = refreshed
                await self._log(connection, SyncOutcome.success, "token refreshed", conn=conn)
                self._metrics.record_refresh(connection.provider.value, RefreshOutcome.refreshed.value)
                logger.info(
                    "Token refreshed for connection %s (provider=%s, expires_at=%s)",
                    connection_id,
                    connection.provider.value,
                    grant.expires_at,
                )
                return RefreshResult(connection_id, RefreshOutcome.refreshed, refreshed)

    async def _handle_failure(
        self,
        conn: object,
        connection: CalendarConnection,
        exc: BaseException,
        now: datetime,
    ) -> RefreshResult:
        kind = classify_error(exc)
        message = sanitize_error_message(exc)
        await self._connections.record_error(
            connection.id, f"Token refresh failed: {message}", conn=conn
        )
        await self._log(connection, SyncOutcome.failed, message, conn=conn)

        outcome = RefreshOutcome.failed
        if kind is ErrorKind.authentication and self.past_grace_period(connection, now):
            await self._connections.deactivate(
                connection.id,
                reason=f"Deactivated after failed token refresh: {message}",
                conn=conn,
            )
            outcome = RefreshOutcome.deactivated
            logger.warning(
                "Deactivated connection %s (provider=%s): refresh failed and no successful "
                "sync since %s",
                connection.id,
                connection.provider.value,
                connection.last_synced_at,
            )
        else:
            logger.warning(
                "Token refresh failed for connection %s (provider=%s, kind=%s): %s",
                connection.id,
                connection.provider.value,
                kind.value,
                message,
            )
        self._metrics.record_refresh(connection.provider.value, outcome.value)
        return RefreshResult(connection.id, outcome, connection, error=message, error_kind=kind)

    async def _log(
        self,
        connection: CalendarConnection,
        outcome: SyncOutcome,
        message: str,
        *,
        conn: object,
    ) -> None:
        if self._mappings is None:
            return
        await self._mappings.log_attempt(
            business_id=connection.business_id,
            provider=connection.provider.value,
            action=SyncAction.token_refresh,
            outcome=outcome,
            connection_id=connection.id,
            message=message,
            conn=conn,
        )

    # ------------------------------------------------------------------
    # Coordinator hooks
    # ------------------------------------------------------------------

    async def ensure_fresh(self, connection: CalendarConnection) -> CalendarConnection | None:
        """Return *connection* with a usable token, refreshing it when due.

        Returns ``None`` when the connection cannot be used (deactivated, gone,
        or its token is expired and could not be refreshed).
        """
        if not connection.needs_refresh(window=self.refresh_window):
            return connection
        result = await self.refresh_connection(connection.id)
        if result.usable:
            return result.connection
        if result.outcome is RefreshOutcome.failed and not connection.token_expired():
            # Token still valid for a few minutes; the sweep will retry.
            return connection
        return None

    async def handle_unauthorized(self, adapter: CalendarAdapter) -> str:
        """401 callback for OAuth adapters: return a usable access token or raise."""
        result = await self.refresh_connection(adapter.connection.id, force=True, adapter=adapter)
        token = result.connection.access_token if result.connection is not None else None
        if not result.usable or not token:
            raise ProviderAuthError(
                f"{adapter.provider_name} token refresh failed for connection "
                f"{adapter.connection.id}: {result.error or result.outcome.value}"
            )
        return token
