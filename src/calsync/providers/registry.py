"""Adapter construction keyed on :class:`~calsync.models.AdapterKind`.

The connection store resolves each connection's adapter kind when the row is
loaded; :func:`build_adapter` only looks that kind up here.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import httpx

from calsync.core.metrics import SyncMetrics
from calsync.models import AdapterKind, CalendarConnection
from calsync.providers.base import CalendarAdapter, UnauthorizedHandler
from calsync.providers.caldav import (
    CalDAVAdapter,
    ICloudCalDAVAdapter,
    NextcloudCalDAVAdapter,
)
from calsync.providers.detection import resolve_adapter_kind
from calsync.providers.google import GoogleCalendarAdapter
from calsync.providers.microsoft import MicrosoftCalendarAdapter
from calsync.providers.oauth import OAuthClient

logger = logging.getLogger(__name__)

ADAPTER_CLASSES: dict[AdapterKind, type[CalendarAdapter]] = {
    AdapterKind.google: GoogleCalendarAdapter,
    AdapterKind.microsoft: MicrosoftCalendarAdapter,
    AdapterKind.caldav_generic: CalDAVAdapter,
    AdapterKind.caldav_icloud: ICloudCalDAVAdapter,
    AdapterKind.caldav_nextcloud: NextcloudCalDAVAdapter,
}

_missing = set(AdapterKind) - set(ADAPTER_CLASSES)
if _missing:  # pragma: no cover - import-time guard
    raise RuntimeError(f"No adapter registered for: {sorted(k.value for k in _missing)}")

AdapterFactory = Callable[[CalendarConnection], CalendarAdapter]


def build_adapter(
    connection: CalendarConnection,
    *,
    oauth_client: OAuthClient | None = None,
    on_unauthorized: UnauthorizedHandler | None = None,
    http_client: httpx.AsyncClient | None = None,
    timeout: httpx.Timeout | None = None,
    metrics: SyncMetrics | None = None,
) -> CalendarAdapter:
    """Instantiate the adapter for *connection*.

    Raises :class:`~calsync.providers.base.CredentialError` when the stored
    credentials are unusable for the resolved adapter (e.g. CalDAV without a
    password).
    """
    kind = connection.adapter_kind or resolve_adapter_kind(connection)
    adapter_cls = ADAPTER_CLASSES[kind]
    kwargs: dict[str, Any] = {"http_client": http_client, "timeout": timeout, "metrics": metrics}
    if kind in (AdapterKind.google, AdapterKind.microsoft):
        kwargs["oauth_client"] = oauth_client
        kwargs["on_unauthorized"] = on_unauthorized
    logger.debug("Building %s for connection %s", adapter_cls.__name__, connection.id)
    return adapter_cls(connection, **kwargs)
