"""Provider adapter contract, error taxonomy, and shared HTTP helpers.

Every provider adapter exposes the same capability set so the coordinator can
stay provider-agnostic:

- ``create_event(booking) -> CreatedEvent``
- ``update_event(mapping, booking) -> bool``
- ``delete_event(external_event_id, external_calendar_id=None) -> DeleteOutcome``
- ``import_events(start_date, end_date) -> list[RemoteEvent]``
- ``refresh_token() -> TokenGrant | None``

Adapters own wire formats, pagination, and rate-limit backoff.  They never
write to the stores; refreshed tokens are handed back to the caller.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from enum import StrEnum
from typing import Any

import httpx

from calsync.core.metrics import SyncMetrics
from calsync.models import Booking, CalendarConnection, EventMapping

logger = logging.getLogger(__name__)

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=10.0)
USER_AGENT = "calsync Calendar Sync/1.0"
MAX_ERROR_MESSAGE_LENGTH = 200


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CalendarSyncError(RuntimeError):
    """Base error raised by provider adapters and OAuth helpers."""


class CredentialError(CalendarSyncError):
    """Raised when stored credentials or OAuth client settings are missing or invalid."""


class ProviderAuthError(CalendarSyncError):
    """Raised when the provider rejects the connection's credentials."""


class TokenRefreshError(ProviderAuthError):
    """Raised when a refresh-token or authorization-code exchange fails."""


class ProviderRequestError(CalendarSyncError):
    """Raised when a provider API request fails."""

    def __init__(
        self,
        *,
        status_code: int | None,
        message: str,
        provider: str = "calendar",
    ) -> None:
        self.status_code = status_code
        self.message = message
        self.provider = provider
        status = status_code if status_code is not None else "no response"
        super().__init__(f"{provider} request failed ({status}): {message}")


class TransientProviderError(ProviderRequestError):
    """Timeouts, connection failures, 5xx, and rate limits that outlived retries."""


class PermanentProviderError(ProviderRequestError):
    """Validation failures and unsupported operations; retrying will not help."""


class ErrorKind(StrEnum):
    transient = "transient"
    authentication = "authentication"
    not_found = "not_found"
    permanent = "permanent"


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception raised during a sync onto the error taxonomy."""
    if isinstance(exc, ProviderAuthError | CredentialError):
        return ErrorKind.authentication
    if isinstance(exc, TransientProviderError):
        return ErrorKind.transient
    if isinstance(exc, PermanentProviderError):
        return ErrorKind.permanent
    if isinstance(exc, ProviderRequestError):
        status = exc.status_code
        if status in (404, 410):
            return ErrorKind.not_found
        if status in (401, 403):
            return ErrorKind.authentication
        if status is None or status == 429 or status >= 500:
            return ErrorKind.transient
        return ErrorKind.permanent
    if isinstance(exc, httpx.TimeoutException | httpx.TransportError):
        return ErrorKind.transient
    if isinstance(exc, asyncio.TimeoutError | ConnectionError):
        return ErrorKind.transient
    return ErrorKind.permanent


def status_error(
    status_code: int,
    message: str,
    *,
    provider: str,
) -> ProviderRequestError:
    """Build the right error class for a non-success HTTP status."""
    if status_code in (401, 403):
        return ProviderAuthError(f"{provider} rejected credentials ({status_code}): {message}")
    if status_code == 429 or status_code >= 500:
        return TransientProviderError(status_code=status_code, message=message, provider=provider)
    if status_code in (404, 410):
        return ProviderRequestError(status_code=status_code, message=message, provider=provider)
    return PermanentProviderError(status_code=status_code, message=message, provider=provider)


# ---------------------------------------------------------------------------
# Result records
# ---------------------------------------------------------------------------


class DeleteOutcome(StrEnum):
    """Result of a remote delete; an already-missing event is a normal outcome."""

    deleted = "deleted"
    not_found = "not_found"


@dataclass(frozen=True)
class CreatedEvent:
    external_event_id: str
    external_calendar_id: str | None = None


@dataclass(frozen=True)
class RemoteEvent:
    """One event listed from a provider calendar during availability import."""

    external_event_id: str
    external_calendar_id: str | None
    starts_at: datetime
    ends_at: datetime
    summary: str = "Untitled Event"
    all_day: bool = False


@dataclass(frozen=True)
class TokenGrant:
    """Tokens returned by an OAuth code or refresh-token exchange."""

    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    scope: str | None = None
    uid: str | None = None

    def __repr__(self) -> str:
        return f"TokenGrant(expires_at={self.expires_at!r}, scope={self.scope!r})"


# ---------------------------------------------------------------------------
# Message sanitation
# ---------------------------------------------------------------------------


def redact_credential_values(message: str) -> str:
    """Redact token, secret, and password values from an error message."""
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|password|token)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|password|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    # key: value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|password|token)\s*:\s*([^\s,;\"']+)",
        r"\1: [REDACTED]",
        redacted,
    )
    redacted = re.sub(r"(?i)\b(Bearer|Basic)\s+[A-Za-z0-9._~+/=-]+", r"\1 [REDACTED]", redacted)
    return redacted


def sanitize_error_message(error: BaseException | str) -> str:
    """Redact credentials, normalize whitespace, and truncate for storage."""
    raw = error if isinstance(error, str) else (str(error) or type(error).__name__)
    return " ".join(redact_credential_values(raw).split())[:MAX_ERROR_MESSAGE_LENGTH]


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, credential-free error message from a provider response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return sanitize_error_message(message)
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return sanitize_error_message(f"{error_payload}: {description}")
            return sanitize_error_message(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_error_message(raw_text)
    return "Request failed without an error payload"


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_rfc3339(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    parsed = datetime.fromisoformat(normalized)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def day_start(value: date | datetime) -> datetime:
    """Midnight UTC at the start of *value*'s day (datetimes pass through)."""
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return datetime(value.year, value.month, value.day, tzinfo=UTC)


def day_end(value: date | datetime) -> datetime:
    """Midnight UTC at the start of the day after *value* (datetimes pass through)."""
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return day_start(value) + timedelta(days=1)


# ---------------------------------------------------------------------------
# Booking formatting
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Attendee:
    email: str
    display_name: str | None = None
    organizer: bool = False


def validate_booking(booking: Booking, *, provider: str) -> None:
    if booking.start_time >= booking.end_time:
        raise PermanentProviderError(
            status_code=None,
            message="booking start time must be before its end time",
            provider=provider,
        )


def booking_attendees(booking: Booking) -> list[Attendee]:
    """Customer first, then the staff member as organizer."""
    attendees: list[Attendee] = []
    if booking.customer_email:
        attendees.append(Attendee(email=booking.customer_email, display_name=booking.customer_name))
    if booking.staff_email:
        attendees.append(
            Attendee(email=booking.staff_email, display_name=booking.staff_name, organizer=True)
        )
    return attendees


# ---------------------------------------------------------------------------
# Adapter contract
# ---------------------------------------------------------------------------

UnauthorizedHandler = Callable[["CalendarAdapter"], Awaitable[str]]


class CalendarAdapter(abc.ABC):
    """Provider-specific implementation of the calendar capability set.

    Parameters
    ----------
    connection:
        The loaded connection the adapter acts for.
    http_client:
        Optional shared client; when omitted the adapter owns one with a
        bounded connect/read timeout and closes it in :meth:`aclose`.
    metrics:
        Instruments for request latency.
    """

    provider_name: str = "calendar"

    def __init__(
        self,
        connection: CalendarConnection,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self.connection = connection
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=timeout or DEFAULT_TIMEOUT,
            headers={"User-Agent": USER_AGENT},
        )
        self._metrics = metrics or SyncMetrics()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(connection_id={self.connection.id})"

    async def __aenter__(self) -> CalendarAdapter:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # -- capability set ----------------------------------------------------

    @abc.abstractmethod
    async def create_event(self, booking: Booking) -> CreatedEvent:
        """Create a remote event for *booking* and return its identifiers."""

    @abc.abstractmethod
    async def update_event(self, mapping: EventMapping, booking: Booking) -> bool:
        """Update the remote event *mapping* points at; False when it no longer exists."""

    @abc.abstractmethod
    async def delete_event(
        self,
        external_event_id: str,
        external_calendar_id: str | None = None,
    ) -> DeleteOutcome:
        """Delete a remote event; a missing event yields ``DeleteOutcome.not_found``."""

    @abc.abstractmethod
    async def import_events(
        self,
        start_date: date | datetime,
        end_date: date | datetime,
    ) -> list[RemoteEvent]:
        """List remote events overlapping ``[start_date, end_date)``."""

    @abc.abstractmethod
    async def refresh_token(self) -> TokenGrant | None:
        """Exchange the stored refresh token; None for non-expiring credentials."""

    async def test_connection(self) -> None:
        """Raise when the provider cannot be reached with the stored credentials."""
        now = datetime.now(UTC)
        await self.import_events(now, now)

    async def account_uid(self) -> str | None:
        """Provider-side account identifier, when the provider exposes one."""
        return None

    # -- HTTP plumbing -----------------------------------------------------

    async def _send_once(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        content: bytes | str | None = None,
        auth: httpx.Auth | tuple[str, str] | None = None,
    ) -> httpx.Response:
        started = time.monotonic()
        try:
            return await self._http_client.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json_body,
                content=content,
                auth=auth,
            )
        except httpx.TimeoutException as exc:
            raise TransientProviderError(
                status_code=None,
                message=f"request timed out: {type(exc).__name__}",
                provider=self.provider_name,
            ) from exc
        except httpx.HTTPError as exc:
            raise TransientProviderError(
                status_code=None,
                message=sanitize_error_message(exc),
                provider=self.provider_name,
            ) from exc
        finally:
            self._metrics.record_request_latency(
                self.provider_name, method, (time.monotonic() - started) * 1000
            )

    async def _send(
        self,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, retrying 429/503 with backoff (Retry-After honoured on 429)."""
        response = await self._send_once(method, url, **kwargs)
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "%s API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                self.provider_name,
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._send_once(method, url, **kwargs)
            retry += 1
        return response
