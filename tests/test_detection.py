"""Tests for CalDAV flavor detection and adapter kind resolution."""

from __future__ import annotations

import pytest

from calsync.models import AdapterKind, CaldavFlavor, ProviderType
from calsync.providers.detection import (
    detect_caldav_flavor,
    resolve_adapter_kind,
    url_host_endswith,
    url_host_matches,
    url_path_contains,
)
from tests.conftest import make_caldav_connection, make_connection

pytestmark = pytest.mark.unit


class TestUrlPredicates:
    def test_host_suffix_is_label_aligned(self) -> None:
        assert url_host_endswith("https://caldav.icloud.com/", "icloud.com")
        assert url_host_endswith("https://icloud.com/", "icloud.com")
        assert not url_host_endswith("https://notmyicloud.com/", "icloud.com")

    def test_host_in_path_does_not_match(self) -> None:
        assert not url_host_endswith("https://evil.com/caldav.icloud.com", "icloud.com")
        assert url_path_contains("https://evil.com/caldav.icloud.com", "icloud.com")

    def test_userinfo_does_not_count_as_host(self) -> None:
        assert not url_host_endswith("https://caldav.icloud.com@evil.com/", "icloud.com")
        assert url_host_matches("https://caldav.icloud.com@evil.com/", "evil.com")

    def test_port_and_case_are_ignored(self) -> None:
        assert url_host_matches("HTTPS://CalDAV.iCloud.com:443/x", "caldav.icloud.com")

    @pytest.mark.parametrize("url", [None, "", "not a url", "caldav.icloud.com/path"])
    def test_unparseable_urls_never_match(self, url) -> None:
        assert not url_host_endswith(url, "icloud.com")
        assert not url_path_contains(url, "path")


class TestDetectCaldavFlavor:
    def test_explicit_flavor_wins(self) -> None:
        flavor = detect_caldav_flavor(
            "https://caldav.icloud.com/", "someone@icloud.com", explicit="nextcloud"
        )
        assert flavor is CaldavFlavor.nextcloud

    def test_icloud_host(self) -> None:
        assert detect_caldav_flavor("https://caldav.icloud.com/calendars/home") is (
            CaldavFlavor.icloud
        )
        assert detect_caldav_flavor("https://p42-caldav.icloud.com/") is CaldavFlavor.icloud

    def test_icloud_in_path_is_generic(self) -> None:
        assert detect_caldav_flavor("https://evil.com/caldav.icloud.com") is CaldavFlavor.generic

    @pytest.mark.parametrize(
        "url",
        [
            "https://nextcloud.example.org/",
            "https://cloud-owncloud.example.org/",
            "https://files.example.org/remote.php/dav/calendars/ada/",
        ],
    )
    def test_nextcloud_markers(self, url: str) -> None:
        assert detect_caldav_flavor(url) is CaldavFlavor.nextcloud

    def test_url_evidence_beats_username(self) -> None:
        flavor = detect_caldav_flavor("https://dav.example.com/", "someone@icloud.com")
        assert flavor is CaldavFlavor.generic

    @pytest.mark.parametrize("username", ["a@icloud.com", "b@me.com", "c@MAC.com"])
    def test_icloud_username_without_url(self, username: str) -> None:
        assert detect_caldav_flavor(None, username) is CaldavFlavor.icloud

    def test_other_username_without_url_is_generic(self) -> None:
        assert detect_caldav_flavor("", "someone@example.com") is CaldavFlavor.generic
        assert detect_caldav_flavor(None, None) is CaldavFlavor.generic


class TestResolveAdapterKind:
    def test_oauth_providers(self) -> None:
        assert resolve_adapter_kind(make_connection()) is AdapterKind.google
        microsoft = make_connection(provider=ProviderType.microsoft, scopes="Calendars.ReadWrite")
        assert resolve_adapter_kind(microsoft) is AdapterKind.microsoft

    def test_caldav_variants(self) -> None:
        assert resolve_adapter_kind(make_caldav_connection()) is AdapterKind.caldav_generic
        icloud = make_caldav_connection(caldav_url="https://caldav.icloud.com/")
        assert resolve_adapter_kind(icloud) is AdapterKind.caldav_icloud
        nextcloud = make_caldav_connection(caldav_provider="nextcloud")
        assert resolve_adapter_kind(nextcloud) is AdapterKind.caldav_nextcloud

    def test_store_sets_kind_on_load(self) -> None:
        connection = make_caldav_connection(
            caldav_url="https://files.example.org/remote.php/dav/"
        )
        assert connection.adapter_kind is AdapterKind.caldav_nextcloud
        assert connection.display_name == "Nextcloud Calendar"
