"""
OAuth 2.0 flows and token lifecycle for calendar connections.

Builds authorization URLs, exchanges codes, refreshes tokens and hands out
valid access tokens. Refreshes are single-flight per connection id so that
concurrent calls on an expired connection hit the token endpoint once.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import httpx

from calbridge.config import Settings, get_settings
from calbridge.schemas.calendar import (
    CalendarConnection,
    CalendarProvider,
    ConnectionStatus,
    OAuthConfig,
    OAuthTokens,
)
from calbridge.services.calendar.errors import (
    AppleOAuthNotSupportedError,
    OAuthError,
    TokenExchangeError,
    TokenRefreshError,
    UnsupportedProviderError,
    redact_secrets,
)
from calbridge.services.calendar.token_store import TokenStore

logger = logging.getLogger(__name__)

# Tokens are treated as expired this long before their real expiry.
TOKEN_EXPIRY_BUFFER = timedelta(minutes=5)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
OUTLOOK_AUTH_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
OUTLOOK_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
APPLE_AUTH_URL = "https://appleid.apple.com/auth/authorize"

_TOKEN_URLS = {
    CalendarProvider.GOOGLE: GOOGLE_TOKEN_URL,
    CalendarProvider.OUTLOOK: OUTLOOK_TOKEN_URL,
}


class OAuthHandler:
    """OAuth client shared by every provider of a :class:`CalendarService`."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        token_store: Optional[TokenStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.token_store = token_store
        self._client = http_client or httpx.AsyncClient(timeout=self.settings.http_timeout_seconds)
        self._refresh_locks: dict[str, asyncio.Lock] = {}

    async def aclose(self) -> None:
        await self._client.aclose()

    # ========== Authorization URL ==========

    def generate_auth_url(
        self,
        provider: CalendarProvider,
        config: OAuthConfig,
        state: Optional[str] = None,
    ) -> str:
        """Build the provider consent URL; a random state is generated when omitted."""
        state = state or secrets.token_urlsafe(32)
        params = {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(config.scopes),
            "state": state,
        }

        if provider == CalendarProvider.GOOGLE:
            params.update({"access_type": "offline", "prompt": "consent"})
            return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"
        if provider == CalendarProvider.OUTLOOK:
            params["response_mode"] = "query"
            return f"{OUTLOOK_AUTH_URL}?{urlencode(params)}"
        if provider == CalendarProvider.APPLE:
            return f"{APPLE_AUTH_URL}?{urlencode(params)}"
        raise UnsupportedProviderError(f"Unsupported provider: {provider}")

    # ========== Token endpoint ==========

    async def exchange_code_for_tokens(
        self,
        provider: CalendarProvider,
        config: OAuthConfig,
        code: str,
    ) -> OAuthTokens:
        """Exchange an authorization code for tokens."""
        if provider == CalendarProvider.APPLE:
            raise AppleOAuthNotSupportedError(
                "Apple Calendar OAuth requires server-side implementation. "
                "Use an app-specific password for CalDAV instead."
            )

        data = {
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": config.redirect_uri,
        }
        if provider == CalendarProvider.OUTLOOK:
            data["scope"] = " ".join(config.scopes)

        payload = await self._post_token_request(provider, data, TokenExchangeError, "Token exchange failed")
        return self._parse_token_response(payload, config)

    async def refresh_access_token(
        self,
        provider: CalendarProvider,
        config: OAuthConfig,
        refresh_token: str,
    ) -> OAuthTokens:
        """Use a refresh token; the old refresh token is kept if none is returned."""
        if provider == CalendarProvider.APPLE:
            raise AppleOAuthNotSupportedError(
                "Apple Calendar token refresh requires server-side implementation."
            )

        data = {
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if provider == CalendarProvider.OUTLOOK:
            data["scope"] = " ".join(config.scopes)

        payload = await self._post_token_request(provider, data, TokenRefreshError, "Token refresh failed")
        return self._parse_token_response(payload, config, fallback_refresh_token=refresh_token)

    async def _post_token_request(
        self,
        provider: CalendarProvider,
        data: dict,
        error_cls: type[OAuthError],
        error_prefix: str,
    ) -> dict:
        url = _TOKEN_URLS.get(provider)
        if url is None:
            raise UnsupportedProviderError(f"Unsupported provider: {provider}")

        response = await self._client.post(
            url,
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        if response.status_code >= 400:
            raise error_cls(f"{error_prefix}: {redact_secrets(self._error_detail(response))}")
        return response.json()

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(body, dict):
            return str(body.get("error_description") or body.get("error") or body)
        return str(body)

    @staticmethod
    def _parse_token_response(
        payload: dict,
        config: OAuthConfig,
        fallback_refresh_token: Optional[str] = None,
    ) -> OAuthTokens:
        expires_in = payload.get("expires_in")
        expires_at = None
        if expires_in:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
        scope = payload.get("scope")
        return OAuthTokens(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or fallback_refresh_token,
            expires_at=expires_at,
            token_type=payload.get("token_type"),
            scope=scope.split(" ") if scope else list(config.scopes),
        )

    # ========== Token lifecycle ==========

    @staticmethod
    def is_token_expired(tokens: OAuthTokens, now: Optional[datetime] = None) -> bool:
        """True when the token expires within the buffer. Tokens without expiry never expire."""
        if tokens.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now >= tokens.expires_at - TOKEN_EXPIRY_BUFFER

    def resolve_oauth_config(self, connection: CalendarConnection) -> OAuthConfig:
        """Per-connection ``metadata["oauth_config"]`` wins over settings."""
        override = connection.metadata.get("oauth_config")
        if override:
            return OAuthConfig.model_validate(override)

        prefix = connection.provider.value
        return OAuthConfig(
            client_id=getattr(self.settings, f"{prefix}_client_id"),
            client_secret=getattr(self.settings, f"{prefix}_client_secret"),
            redirect_uri=getattr(self.settings, f"{prefix}_redirect_uri"),
            scopes=list(getattr(self.settings, f"{prefix}_scopes")),
        )

    def _lock_for(self, connection_id: str) -> asyncio.Lock:
        lock = self._refresh_locks.get(connection_id)
        if lock is None:
            lock = self._refresh_locks[connection_id] = asyncio.Lock()
        return lock

    async def get_access_token(self, connection: CalendarConnection) -> Optional[str]:
        """Return a usable access token, refreshing it first when expired.

        Returns ``None`` when the token is missing or cannot be refreshed; the
        connection is then marked expired.
        """
        if not self.is_token_expired(connection.tokens):
            return connection.tokens.access_token or None

        async with self._lock_for(connection.id):
            # Another task may have refreshed while we waited.
            if not self.is_token_expired(connection.tokens):
                return connection.tokens.access_token or None
            try:
                tokens = await self._refresh_locked(connection)
            except OAuthError as e:
                logger.warning("Token refresh failed for connection %s: %s", connection.id, e)
                return None
        return tokens.access_token

    async def refresh_connection(self, connection: CalendarConnection) -> OAuthTokens:
        """Force a refresh, serialized with lazy refreshes of the same connection."""
        async with self._lock_for(connection.id):
            return await self._refresh_locked(connection)

    async def _refresh_locked(self, connection: CalendarConnection) -> OAuthTokens:
        if not connection.tokens.refresh_token:
            await self._mark_expired(connection)
            raise TokenRefreshError(f"No refresh token available for connection {connection.id}")

        logger.info("Refreshing %s tokens for connection %s", connection.provider.value, connection.id)
        connection.status = ConnectionStatus.REFRESHING
        try:
            tokens = await self.refresh_access_token(
                connection.provider,
                self.resolve_oauth_config(connection),
                connection.tokens.refresh_token,
            )
        except (OAuthError, httpx.HTTPError) as e:
            await self._mark_expired(connection)
            if isinstance(e, OAuthError):
                raise
            raise TokenRefreshError(f"Token refresh failed: {redact_secrets(str(e))}") from e

        connection.tokens = tokens
        connection.status = ConnectionStatus.CONNECTED
        connection.updated_at = datetime.now(timezone.utc)
        if self.token_store is not None:
            await self.token_store.store_connection(connection)
        return tokens

    async def _mark_expired(self, connection: CalendarConnection) -> None:
        connection.status = ConnectionStatus.EXPIRED
        connection.updated_at = datetime.now(timezone.utc)
        if self.token_store is not None:
            await self.token_store.store_connection(connection)

    # ========== Persistence passthroughs ==========

    async def store_connection(self, connection: CalendarConnection) -> None:
        if self.token_store is not None:
            await self.token_store.store_connection(connection)

    async def get_connection(self, connection_id: str) -> Optional[CalendarConnection]:
        if self.token_store is None:
            return None
        return await self.token_store.get_connection(connection_id)

    async def get_all_connections(self) -> list[CalendarConnection]:
        if self.token_store is None:
            return []
        return await self.token_store.get_all_connections()

    async def delete_connection(self, connection_id: str) -> bool:
        self._refresh_locks.pop(connection_id, None)
        if self.token_store is None:
            return False
        return await self.token_store.delete_connection(connection_id)
