"""Connection onboarding: the OAuth authorization-code flow and CalDAV verification.

The OAuth ``state`` parameter is an HMAC-SHA256 signed, base64url-encoded
payload naming the business, staff member and provider, stamped with its
issue time.  Callbacks older than ``state_max_age_seconds`` (15 minutes by
default) are rejected.

A successful callback (or CalDAV verification) replaces the staff member's
previous connection for that provider: the old row is deactivated and the new
one inserted in the same transaction, preserving the one-active-connection
invariant.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any

import httpx

from calsync.config import OAuthConfig
from calsync.core.metrics import SyncMetrics
from calsync.core.telemetry import sync_span
from calsync.credential_store import ConnectionStore, connection_from_row
from calsync.db import transaction
from calsync.models import CaldavFlavor, CalendarConnection, ProviderType
from calsync.providers.base import (
    CalendarAdapter,
    CalendarSyncError,
    CredentialError,
    TokenGrant,
)
from calsync.providers.oauth import OAUTH_ENDPOINTS, OAuthClient
from calsync.providers.registry import build_adapter

logger = logging.getLogger(__name__)


class OAuthStateError(CredentialError):
    """Raised when an OAuth callback carries a missing, forged, or expired state."""


@dataclass(frozen=True)
class OAuthState:
    business_id: int
    staff_member_id: int
    provider: ProviderType
    issued_at: int


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


class OAuthHandler:
    """Builds authorization URLs and turns callbacks into stored connections."""

    def __init__(
        self,
        connections: ConnectionStore,
        config: OAuthConfig,
        *,
        oauth_client: OAuthClient | None = None,
        http_client: httpx.AsyncClient | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._connections = connections
        self._config = config
        self._oauth_client = oauth_client or OAuthClient(config, http_client=http_client)
        self._http_client = http_client
        self._metrics = metrics

    # ------------------------------------------------------------------
    # State token
    # ------------------------------------------------------------------

    def _state_key(self) -> bytes:
        if not self._config.state_secret:
            raise CredentialError("OAuth state secret not configured")
        return self._config.state_secret.encode()

    def generate_state(
        self,
        business_id: int,
        staff_member_id: int,
        provider: ProviderType | str,
        *,
        now: float | None = None,
    ) -> str:
        payload = {
            "business_id": business_id,
            "staff_member_id": staff_member_id,
            "provider": ProviderType(provider).value,
            "timestamp": int(now if now is not None else time.time()),
            "nonce": secrets.token_urlsafe(8),
        }
        body = _b64encode(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode())
        signature = hmac.new(self._state_key(), body.encode(), hashlib.sha256).digest()
        return f"{body}.{_b64encode(signature)}"

    def verify_state(self, state: str | None, *, now: float | None = None) -> OAuthState:
        if not state or "." not in state:
            raise OAuthStateError("Invalid OAuth state")
        body, _, signature = state.rpartition(".")
        expected = hmac.new(self._state_key(), body.encode(), hashlib.sha256).digest()
        try:
            supplied = _b64decode(signature)
            payload: Any = json.loads(_b64decode(body))
        except ValueError as exc:
            raise OAuthStateError("Invalid OAuth state") from exc
        if not hmac.compare_digest(expected, supplied):
            raise OAuthStateError("Invalid OAuth state")

        try:
            parsed = OAuthState(
                business_id=int(payload["business_id"]),
                staff_member_id=int(payload["staff_member_id"]),
                provider=ProviderType(payload["provider"]),
                issued_at=int(payload["timestamp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise OAuthStateError("Invalid OAuth state") from exc

        age = (now if now is not None else time.time()) - parsed.issued_at
        if age > self._config.state_max_age_seconds:
            raise OAuthStateError("OAuth state expired")
        return parsed

    # ------------------------------------------------------------------
    # OAuth flow
    # ------------------------------------------------------------------

    def authorization_url(
        self,
        provider: ProviderType | str,
        business_id: int,
        staff_member_id: int,
        redirect_uri: str,
    ) -> str:
        state = self.generate_state(business_id, staff_member_id, provider)
        return self._oauth_client.authorization_url(provider, state=state, redirect_uri=redirect_uri)

    async def handle_callback(
        self,
        provider: ProviderType | str,
        code: str,
        state: str,
        redirect_uri: str,
    ) -> CalendarConnection:
        """Verify *state*, exchange *code*, and store the new connection."""
        provider = ProviderType(provider)
        state_data = self.verify_state(state)
        if state_data.provider is not provider:
            raise OAuthStateError("OAuth state was issued for a different provider")

        with sync_span(
            "oauth_callback",
            provider=provider.value,
            business_id=state_data.business_id,
            staff_member_id=state_data.staff_member_id,
        ):
            grant = await self._oauth_client.exchange_code(
                provider, code=code, redirect_uri=redirect_uri
            )
            draft = self._draft_connection(
                business_id=state_data.business_id,
                staff_member_id=state_data.staff_member_id,
                provider=provider,
                access_token=grant.access_token,
            )
            uid = await self._account_uid(draft)
            return await self._replace_connection(
                business_id=state_data.business_id,
                staff_member_id=state_data.staff_member_id,
                provider=provider,
                uid=uid,
                access_token=grant.access_token,
                refresh_token=grant.refresh_token,
                token_expires_at=grant.expires_at,
                scopes=grant.scope or OAUTH_ENDPOINTS[provider].scope,
            )

    async def exchange_refresh_token(
        self, provider: ProviderType | str, refresh_token: str
    ) -> TokenGrant:
        return await self._oauth_client.exchange_refresh_token(provider, refresh_token)

    # ------------------------------------------------------------------
    # CalDAV
    # ------------------------------------------------------------------

    async def connect_caldav(
        self,
        *,
        business_id: int,
        staff_member_id: int,
        username: str,
        password: str,
        server_url: str | None = None,
        caldav_provider: CaldavFlavor | str | None = None,
    ) -> CalendarConnection:
        """Verify CalDAV credentials by running discovery, then store the connection.

        Discovery failures propagate; nothing is stored unless they succeed.
        """
        draft = self._draft_connection(
            business_id=business_id,
            staff_member_id=staff_member_id,
            provider=ProviderType.caldav,
            caldav_username=username,
            caldav_password=password,
            caldav_url=server_url,
            caldav_provider=CaldavFlavor(caldav_provider) if caldav_provider else None,
        )
        with sync_span("caldav_verify", adapter_kind=draft.adapter_kind, business_id=business_id):
            async with self._adapter(draft) as adapter:
                await adapter.test_connection()
        return await self._replace_connection(
            business_id=business_id,
            staff_member_id=staff_member_id,
            provider=ProviderType.caldav,
            uid=username,
            caldav_username=username,
            caldav_password=password,
            caldav_url=server_url,
            caldav_provider=caldav_provider,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _draft_connection(self, **fields: Any) -> CalendarConnection:
        """An unsaved connection used to talk to the provider before storing."""
        return connection_from_row({"id": uuid.uuid4(), **fields})

    def _adapter(self, connection: CalendarConnection) -> CalendarAdapter:
        return build_adapter(
            connection,
            oauth_client=self._oauth_client,
            http_client=self._http_client,
            metrics=self._metrics,
        )

    async def _account_uid(self, connection: CalendarConnection) -> str | None:
        async with self._adapter(connection) as adapter:
            try:
                return await adapter.account_uid()
            except CalendarSyncError as exc:
                logger.warning(
                    "Could not read %s account id for staff member %s: %s",
                    connection.provider.value,
                    connection.staff_member_id,
                    exc,
                )
                return None

    async def _replace_connection(
        self,
        *,
        business_id: int,
        staff_member_id: int,
        provider: ProviderType,
        **fields: Any,
    ) -> CalendarConnection:
        async with transaction(self._connections.pool) as conn:
            replaced = await self._connections.deactivate_for_staff_provider(
                staff_member_id, provider, conn=conn
            )
            connection = await self._connections.create(
                business_id=business_id,
                staff_member_id=staff_member_id,
                provider=provider,
                conn=conn,
                **fields,
            )
        if replaced:
            logger.info(
                "Replaced %d previous %s connection(s) for staff member %s",
                replaced,
                provider.value,
                staff_member_id,
            )
        return connection
