"""Google OAuth token endpoint client (refresh grant only).

The authorization-code exchange that produces the FIRST refresh token happens in the
front end; it hands the result to TokenManager.register_account().
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from syncabull.config import Settings
from syncabull.domain.entities import TokenGrant
from syncabull.domain.exceptions import (
    ConfigurationError,
    NetworkError,
    RateLimited,
    ReauthorizationRequired,
)
from syncabull.domain.ports import ITokenEndpoint
from syncabull.infrastructure.integrations.google_photos_client import parse_retry_after
from syncabull.infrastructure.integrations.http_pool import HttpClientPool

logger = logging.getLogger(__name__)

# Google answers with expires_in=3599 nearly always; use this if it's missing
DEFAULT_EXPIRES_IN = 3600


class GoogleOAuthClient(ITokenEndpoint):
    """Refreshes access tokens at https://oauth2.googleapis.com/token."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = await HttpClientPool.get_client()
        return self._client

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token.

        Args:
            refresh_token: The account's stored refresh token

        Returns:
            New access token, its expiry and the rotated refresh token if Google sent one

        Raises:
            ConfigurationError: If GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET are missing
            ReauthorizationRequired: invalid_grant, 401 or unauthorized_client
            RateLimited: 429
            NetworkError: timeouts, connection errors, 5xx and other unexpected answers
        """
        if not self.settings.google.is_configured:
            raise ConfigurationError(
                "GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be set to refresh tokens"
            )

        client = await self._get_client()
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.settings.google.client_id,
            "client_secret": self.settings.google.client_secret,
        }

        try:
            response = await client.post(
                self.settings.google.token_url,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.settings.sync.token_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise NetworkError("Token refresh timed out", is_timeout=True) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Token refresh failed: {e}") from e

        # Hey future me - check for invalid_grant BEFORE anything else! Google returns 400
        # {"error": "invalid_grant"} when the user revoked access, changed the password, or the
        # token sat unused for 6 months. That is NOT transient - retrying just hammers Google.
        if response.status_code in (400, 401):
            error_code, description = self._error_details(response)
            if response.status_code == 401 or error_code in (
                "invalid_grant",
                "unauthorized_client",
                "invalid_client",
            ):
                raise ReauthorizationRequired(
                    message=f"Refresh token rejected: {description or error_code}",
                    http_status=response.status_code,
                    error_code=error_code,
                )

        if response.status_code == 429:
            raise RateLimited(
                "Token endpoint rate limited",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )

        if response.status_code >= 400:
            raise NetworkError(
                f"Token refresh failed with HTTP {response.status_code}",
                http_status=response.status_code,
            )

        try:
            payload: dict[str, Any] = response.json()
            access_token = payload["access_token"]
        except (ValueError, KeyError) as e:
            raise NetworkError("Token endpoint returned an invalid response") from e

        expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        scope = payload.get("scope")
        return TokenGrant(
            access_token=access_token,
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
            refresh_token=payload.get("refresh_token"),
            scopes=scope.split() if scope else None,
        )

    @staticmethod
    def _error_details(response: httpx.Response) -> tuple[str, str]:
        try:
            body = response.json()
        except ValueError:
            return "", ""
        if not isinstance(body, dict):
            return "", ""
        return str(body.get("error", "")), str(body.get("error_description", ""))

    async def close(self) -> None:
        self._client = None
