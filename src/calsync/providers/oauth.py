"""OAuth2 token exchange and the bearer-token adapter base.

:class:`OAuthClient` talks to the Google and Microsoft token endpoints
(authorization-code and refresh-token grants).  :class:`OAuthCalendarAdapter`
is the shared base of the REST adapters: it attaches the connection's access
token, and on a 401 refreshes once and replays the request.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx

from calsync.config import OAuthClientConfig, OAuthConfig
from calsync.core.metrics import SyncMetrics
from calsync.models import CalendarConnection, ProviderType
from calsync.providers.base import (
    DEFAULT_TIMEOUT,
    CalendarAdapter,
    CredentialError,
    ProviderAuthError,
    TokenGrant,
    TokenRefreshError,
    TransientProviderError,
    UnauthorizedHandler,
    safe_error_message,
    sanitize_error_message,
    status_error,
)

logger = logging.getLogger(__name__)

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_SCOPE = "https://www.googleapis.com/auth/calendar"
MICROSOFT_AUTHORIZE_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
MICROSOFT_SCOPE = "https://graph.microsoft.com/Calendars.ReadWrite offline_access"
DEFAULT_EXPIRES_IN_SECONDS = 3600


@dataclass(frozen=True)
class ProviderEndpoints:
    authorize_url: str
    token_url: str
    scope: str
    extra_authorize_params: tuple[tuple[str, str], ...] = ()


OAUTH_ENDPOINTS: dict[ProviderType, ProviderEndpoints] = {
    ProviderType.google: ProviderEndpoints(
        authorize_url=GOOGLE_AUTHORIZE_URL,
        token_url=GOOGLE_TOKEN_URL,
        scope=GOOGLE_SCOPE,
        extra_authorize_params=(("access_type", "offline"), ("prompt", "consent")),
    ),
    ProviderType.microsoft: ProviderEndpoints(
        authorize_url=MICROSOFT_AUTHORIZE_URL,
        token_url=MICROSOFT_TOKEN_URL,
        scope=MICROSOFT_SCOPE,
        extra_authorize_params=(("prompt", "consent"),),
    ),
}


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def _oauth_provider(provider: ProviderType | str) -> ProviderType:
    try:
        resolved = ProviderType(provider)
    except ValueError as exc:
        raise CredentialError(f"Unsupported provider: {provider}") from exc
    if resolved not in OAUTH_ENDPOINTS:
        raise CredentialError(f"Provider {resolved.value} does not use OAuth")
    return resolved


class OAuthClient:
    """Authorization-code and refresh-token exchange against provider token endpoints."""

    def __init__(
        self,
        config: OAuthConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def client_config(self, provider: ProviderType | str) -> OAuthClientConfig:
        resolved = _oauth_provider(provider)
        client = self._config.google if resolved is ProviderType.google else self._config.microsoft
        if not client.is_configured:
            raise CredentialError(f"{resolved.value} OAuth client credentials not configured")
        return client

    def authorization_url(self, provider: ProviderType | str, *, state: str, redirect_uri: str) -> str:
        resolved = _oauth_provider(provider)
        endpoints = OAUTH_ENDPOINTS[resolved]
        client = self.client_config(resolved)
        params: list[tuple[str, str]] = [
            ("client_id", client.client_id or ""),
            ("redirect_uri", redirect_uri),
            ("scope", endpoints.scope),
            ("response_type", "code"),
            *endpoints.extra_authorize_params,
            ("state", state),
        ]
        return f"{endpoints.authorize_url}?{urlencode(params)}"

    async def exchange_code(
        self,
        provider: ProviderType | str,
        *,
        code: str,
        redirect_uri: str,
    ) -> TokenGrant:
        resolved = _oauth_provider(provider)
        client = self.client_config(resolved)
        data = {
            "client_id": client.client_id,
            "client_secret": client.client_secret,
            "code": code,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }
        if resolved is ProviderType.microsoft:
            data["scope"] = OAUTH_ENDPOINTS[resolved].scope
        return await self._token_request(resolved, data, action="authorization")

    async def exchange_refresh_token(
        self,
        provider: ProviderType | str,
        refresh_token: str,
    ) -> TokenGrant:
        resolved = _oauth_provider(provider)
        if not refresh_token or not refresh_token.strip():
            raise TokenRefreshError(f"{resolved.value} connection has no refresh token")
        client = self.client_config(resolved)
        data = {
            "client_id": client.client_id,
            "client_secret": client.client_secret,
            "refresh_token": refresh_token.strip(),
            "grant_type": "refresh_token",
        }
        if resolved is ProviderType.microsoft:
            data["scope"] = OAUTH_ENDPOINTS[resolved].scope
        return await self._token_request(resolved, data, action="token refresh")

    async def _token_request(
        self,
        provider: ProviderType,
        data: dict[str, Any],
        *,
        action: str,
    ) -> TokenGrant:
        label = provider.value.capitalize()
        try:
            response = await self._http_client.post(
                OAUTH_ENDPOINTS[provider].token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TransientProviderError(
                status_code=None,
                message=f"{label} OAuth {action} request failed: {sanitize_error_message(exc)}",
                provider=provider.value,
            ) from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientProviderError(
                status_code=response.status_code,
                message=f"{label} OAuth {action} failed: {safe_error_message(response)}",
                provider=provider.value,
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise TokenRefreshError(
                f"{label} OAuth {action} failed ({response.status_code}): "
                f"{safe_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError(f"{label} OAuth token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise TokenRefreshError(f"{label} OAuth token response is missing a non-empty access_token")

        refresh_token = payload.get("refresh_token")
        scope = payload.get("scope")
        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        return TokenGrant(
            access_token=access_token.strip(),
            refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token else None,
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
            scope=scope if isinstance(scope, str) else None,
        )


# ---------------------------------------------------------------------------
# Bearer-token adapter base
# ---------------------------------------------------------------------------


class OAuthCalendarAdapter(CalendarAdapter):
    """Base for REST adapters authenticated with an OAuth bearer token.

    Parameters
    ----------
    oauth_client:
        Used by :meth:`refresh_token` for the refresh-token exchange.
    on_unauthorized:
        Called with the adapter when the provider answers 401.  Must return a
        usable access token (typically by refreshing through the token refresh
        manager, which persists it under the connection lock).  Without a
        handler the adapter refreshes in memory via :meth:`refresh_token`.
    """

    api_base_url: str = ""

    def __init__(
        self,
        connection: CalendarConnection,
        *,
        oauth_client: OAuthClient | None = None,
        on_unauthorized: UnauthorizedHandler | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        super().__init__(connection, http_client=http_client, timeout=timeout, metrics=metrics)
        self._oauth_client = oauth_client
        self._on_unauthorized = on_unauthorized
        self._access_token = connection.access_token
        self._refresh_lock = asyncio.Lock()

    @property
    def access_token(self) -> str | None:
        return self._access_token

    def use_access_token(self, access_token: str) -> None:
        """Swap in a token obtained elsewhere (e.g. rotated by another worker)."""
        self._access_token = access_token

    async def refresh_token(self) -> TokenGrant:
        if self._oauth_client is None:
            raise CredentialError(f"{self.provider_name} adapter has no OAuth client configured")
        async with self._refresh_lock:
            grant = await self._oauth_client.exchange_refresh_token(
                self.connection.provider, self.connection.refresh_token or ""
            )
            self._access_token = grant.access_token
        return grant

    async def _reauthenticate(self) -> None:
        if self._on_unauthorized is not None:
            self._access_token = await self._on_unauthorized(self)
        else:
            await self.refresh_token()

    def _bearer_headers(self, extra_headers: dict[str, str] | None) -> dict[str, str]:
        if not self._access_token:
            raise CredentialError(f"{self.provider_name} connection has no access token")
        headers = {"Authorization": f"Bearer {self._access_token}", "Accept": "application/json"}
        if extra_headers:
            headers.update(extra_headers)
        return headers

    async def _request_with_bearer(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        if not url.startswith("http"):
            url = f"{self.api_base_url}{url if url.startswith('/') else '/' + url}"

        response = await self._send(
            method,
            url,
            headers=self._bearer_headers(extra_headers),
            params=params,
            json_body=json_body,
        )
        if response.status_code == 401:
            logger.info(
                "%s returned 401 for connection %s; refreshing token and retrying once",
                self.provider_name,
                self.connection.id,
            )
            await self._reauthenticate()
            response = await self._send(
                method,
                url,
                headers=self._bearer_headers(extra_headers),
                params=params,
                json_body=json_body,
            )
            if response.status_code == 401:
                raise ProviderAuthError(
                    f"{self.provider_name} rejected refreshed credentials: "
                    f"{safe_error_message(response)}"
                )
        return response

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        extra_headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method, url, params=params, json_body=json_body, extra_headers=extra_headers
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise status_error(
                response.status_code, safe_error_message(response), provider=self.provider_name
            )
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientProviderError(
                status_code=response.status_code,
                message="provider returned invalid JSON for a successful response",
                provider=self.provider_name,
            ) from exc
        if not isinstance(payload, dict):
            raise TransientProviderError(
                status_code=response.status_code,
                message="provider returned an unexpected JSON payload shape",
                provider=self.provider_name,
            )
        return payload
