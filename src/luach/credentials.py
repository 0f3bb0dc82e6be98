"""OAuth access tokens for background calendar access."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx

from luach.google_calendar import (
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    CalendarTokenRefreshError,
    safe_google_error_message,
    sanitize_error_message,
)

if TYPE_CHECKING:
    from luach.store import EventStore

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
DEFAULT_EXPIRES_IN_SECONDS = 3600


@dataclass(frozen=True)
class RefreshedToken:
    access_token: str
    refresh_token: str
    expires_at: datetime

    def __repr__(self) -> str:
        return f"RefreshedToken(access_token=<REDACTED>, expires_at={self.expires_at!r})"


class TokenProvider(abc.ABC):
    @abc.abstractmethod
    async def get_valid_access_token(self, user_id: str) -> str | None:
        """Return a usable access token, or ``None`` to skip the user."""
        ...

    async def aclose(self) -> None:
        return None


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


class GoogleTokenProvider(TokenProvider):
    """Validates stored user tokens and refreshes them through Google OAuth."""

    def __init__(
        self,
        store: EventStore,
        *,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self._store = store
        self._client_id = client_id
        self._client_secret = client_secret
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def refresh_access_token(self, refresh_token: str) -> RefreshedToken:
        """Exchange *refresh_token* for a new access token.

        Google may omit ``refresh_token`` from the response, in which case the
        existing one stays valid and is returned unchanged.
        """
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTokenRefreshError(
                f"Google OAuth token refresh request failed: {sanitize_error_message(str(exc))}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarTokenRefreshError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {_oauth_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTokenRefreshError(
                "Google OAuth token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarTokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        new_refresh = payload.get("refresh_token")
        if not isinstance(new_refresh, str) or not new_refresh.strip():
            new_refresh = refresh_token

        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        return RefreshedToken(
            access_token=access_token.strip(),
            refresh_token=new_refresh.strip(),
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
        )

    async def refresh_user_token(self, user_id: str) -> RefreshedToken:
        """Refresh a user's stored token pair and persist the result."""
        tokens = await self._store.get_user_tokens(user_id)
        if tokens is None or not tokens.refresh_token:
            raise CalendarTokenRefreshError(f"No refresh token found for user {user_id}")

        refreshed = await self.refresh_access_token(tokens.refresh_token)
        await self._store.update_user_tokens(
            user_id,
            access_token=refreshed.access_token,
            refresh_token=refreshed.refresh_token,
            expires_at=refreshed.expires_at,
        )
        logger.info("Refreshed access token for user %s", user_id)
        return refreshed

    async def is_token_valid(self, access_token: str) -> bool:
        try:
            response = await self._http_client.get(
                GOOGLE_TOKENINFO_URL, params={"access_token": access_token}
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "Token validity check failed: %s", sanitize_error_message(str(exc))
            )
            return False
        return response.status_code == 200

    async def get_valid_access_token(self, user_id: str) -> str | None:
        tokens = await self._store.get_user_tokens(user_id)
        if tokens is None:
            logger.error("User %s not found", user_id)
            return None
        if not tokens.access_token or not tokens.refresh_token:
            logger.error("User %s has no stored tokens", user_id)
            return None

        if await self.is_token_valid(tokens.access_token):
            return tokens.access_token

        logger.info("Access token for user %s is invalid; refreshing", user_id)
        try:
            refreshed = await self.refresh_user_token(user_id)
        except CalendarTokenRefreshError as exc:
            logger.error("Failed to refresh token for user %s: %s", user_id, exc)
            return None
        return refreshed.access_token

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


def _oauth_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("error_description", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return sanitize_error_message(value)
    return safe_google_error_message(response)
