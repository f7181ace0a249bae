"""CalDAV server classification and adapter kind resolution.

All URL checks operate on the *parsed* host and path.  Userinfo, port, query
string, and fragment never participate, so ``https://evil.com/caldav.icloud.com``
or ``https://caldav.icloud.com@evil.com/`` cannot pass as iCloud.

Classification precedence for a CalDAV connection:

1. An explicit ``caldav_provider`` stored on the connection wins.
2. Server URL host is ``icloud.com`` or one of its subdomains: iCloud.
3. Server URL host contains ``nextcloud``/``owncloud``, or its path contains
   ``remote.php/dav``: Nextcloud.
4. A server URL is present but matched nothing above: generic.  URL evidence
   beats username evidence, so ``someone@icloud.com`` against a self-hosted
   server stays generic.
5. No server URL: an ``icloud.com``/``me.com``/``mac.com`` username means
   iCloud, anything else is generic.
"""

from __future__ import annotations

from urllib.parse import urlsplit

from calsync.models import AdapterKind, CaldavFlavor, CalendarConnection, ProviderType

ICLOUD_HOST = "icloud.com"
ICLOUD_EMAIL_DOMAINS = frozenset({"icloud.com", "me.com", "mac.com"})
NEXTCLOUD_HOST_MARKERS = ("nextcloud", "owncloud")
NEXTCLOUD_PATH_MARKER = "remote.php/dav"


# ---------------------------------------------------------------------------
# Parsed URL predicates
# ---------------------------------------------------------------------------


def _parsed_host(url: str | None) -> str | None:
    if not url or not isinstance(url, str):
        return None
    try:
        parts = urlsplit(url.strip())
        host = parts.hostname
    except ValueError:
        return None
    if not parts.scheme or not host:
        return None
    return host.rstrip(".").lower()


def _parsed_path(url: str | None) -> str | None:
    if _parsed_host(url) is None:
        return None
    return urlsplit(url.strip()).path.lower()  # type: ignore[union-attr]


def url_host_matches(url: str | None, host: str) -> bool:
    """Return True when the URL's host equals *host* (case-insensitive)."""
    parsed = _parsed_host(url)
    return parsed is not None and parsed == host.lower()


def url_host_endswith(url: str | None, suffix: str) -> bool:
    """Return True when the URL's host is *suffix* or a subdomain of it.

    Matching is label-aligned: ``notmyicloud.com`` does not end with
    ``icloud.com``.
    """
    parsed = _parsed_host(url)
    if parsed is None:
        return False
    suffix = suffix.lower().lstrip(".")
    return parsed == suffix or parsed.endswith("." + suffix)


def url_host_contains(url: str | None, fragment: str) -> bool:
    """Return True when *fragment* occurs inside the URL's host."""
    parsed = _parsed_host(url)
    return parsed is not None and fragment.lower() in parsed


def url_path_contains(url: str | None, fragment: str) -> bool:
    """Return True when *fragment* occurs inside the URL's path."""
    path = _parsed_path(url)
    return path is not None and fragment.lower() in path


def _email_domain(username: str | None) -> str | None:
    if not username or "@" not in username:
        return None
    return username.rsplit("@", 1)[1].strip().lower() or None


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def detect_caldav_flavor(
    server_url: str | None,
    username: str | None = None,
    explicit: CaldavFlavor | str | None = None,
) -> CaldavFlavor:
    """Classify a CalDAV server as iCloud, Nextcloud/ownCloud, or generic."""
    if explicit:
        return CaldavFlavor(explicit)

    if server_url and server_url.strip():
        if url_host_endswith(server_url, ICLOUD_HOST):
            return CaldavFlavor.icloud
        if any(url_host_contains(server_url, marker) for marker in NEXTCLOUD_HOST_MARKERS):
            return CaldavFlavor.nextcloud
        if url_path_contains(server_url, NEXTCLOUD_PATH_MARKER):
            return CaldavFlavor.nextcloud
        return CaldavFlavor.generic

    if _email_domain(username) in ICLOUD_EMAIL_DOMAINS:
        return CaldavFlavor.icloud
    return CaldavFlavor.generic


_FLAVOR_KINDS: dict[CaldavFlavor, AdapterKind] = {
    CaldavFlavor.icloud: AdapterKind.caldav_icloud,
    CaldavFlavor.nextcloud: AdapterKind.caldav_nextcloud,
    CaldavFlavor.generic: AdapterKind.caldav_generic,
}


def resolve_adapter_kind(connection: CalendarConnection) -> AdapterKind:
    """Resolve the adapter variant for a loaded connection."""
    if connection.provider is ProviderType.google:
        return AdapterKind.google
    if connection.provider is ProviderType.microsoft:
        return AdapterKind.microsoft
    flavor = detect_caldav_flavor(
        connection.caldav_url,
        connection.caldav_username,
        connection.caldav_provider,
    )
    return _FLAVOR_KINDS[flavor]
