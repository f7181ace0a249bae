"""Tests for adapter construction by adapter kind."""

from __future__ import annotations

import httpx
import pytest

from calsync.models import AdapterKind, ProviderType
from calsync.providers.base import CredentialError
from calsync.providers.caldav import CalDAVAdapter, ICloudCalDAVAdapter, NextcloudCalDAVAdapter
from calsync.providers.google import GoogleCalendarAdapter
from calsync.providers.microsoft import MicrosoftCalendarAdapter
from calsync.providers.registry import ADAPTER_CLASSES, build_adapter
from tests.conftest import make_caldav_connection, make_connection

pytestmark = pytest.mark.unit


@pytest.fixture
def http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))


def test_every_kind_has_an_adapter() -> None:
    assert set(ADAPTER_CLASSES) == set(AdapterKind)


@pytest.mark.parametrize(
    ("connection", "adapter_cls"),
    [
        (make_connection(), GoogleCalendarAdapter),
        (
            make_connection(provider=ProviderType.microsoft, scopes="Calendars.ReadWrite"),
            MicrosoftCalendarAdapter,
        ),
        (make_caldav_connection(), CalDAVAdapter),
        (make_caldav_connection(caldav_url="https://caldav.icloud.com/"), ICloudCalDAVAdapter),
        (
            make_caldav_connection(caldav_url="https://cloud.example.org/remote.php/dav/"),
            NextcloudCalDAVAdapter,
        ),
    ],
)
def test_build_adapter_by_kind(connection, adapter_cls, http_client) -> None:
    adapter = build_adapter(connection, http_client=http_client)
    assert type(adapter) is adapter_cls
    assert adapter.connection.id == connection.id


def test_unresolved_kind_is_resolved_on_build(http_client) -> None:
    connection = make_caldav_connection(caldav_url="https://caldav.icloud.com/")
    connection.adapter_kind = None
    assert isinstance(build_adapter(connection, http_client=http_client), ICloudCalDAVAdapter)


def test_caldav_without_password(http_client) -> None:
    with pytest.raises(CredentialError):
        build_adapter(make_caldav_connection(caldav_password=None), http_client=http_client)
