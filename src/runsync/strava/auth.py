"""
Strava OAuth token storage and refresh.

The sync engine only needs a valid bearer token per user. Tokens are stored
in the StravaToken table and refreshed against the OAuth endpoint when they
are within five minutes of expiry. The authorization-code exchange itself is
done once, outside the engine, and handed to save_tokens().
"""
import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx
from sqlmodel import Session

from runsync.config import Settings, get_settings
from runsync.models.sync import utcnow
from runsync.models.token import StravaToken
from runsync.sync.errors import AuthenticationError, NetworkError

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

REFRESH_MARGIN_SECONDS = 300
REQUEST_TIMEOUT_SECONDS = 30.0


class StravaAuth:
    """Hands out valid access tokens, refreshing them as needed."""

    def __init__(
        self,
        engine,
        settings: Optional[Settings] = None,
        http: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.engine = engine
        self.settings = settings or get_settings()
        self._http = http
        self._clock = clock

    async def get_valid_access_token(self, user_id: str) -> str:
        """Return a bearer token for `user_id`, refreshing it if close to expiry.

        Raises:
            AuthenticationError: no stored token, or Strava refused the refresh.
            NetworkError: the token endpoint could not be reached.
        """
        with Session(self.engine) as s:
            token = s.get(StravaToken, user_id)
            if token is None:
                raise AuthenticationError(
                    f"No Strava credentials stored for user {user_id}",
                    code="NO_CREDENTIALS",
                    context={"user_id": user_id},
                )
            if token.expires_at > self._clock() + REFRESH_MARGIN_SECONDS:
                return token.access_token
            refresh_token = token.refresh_token

        logger.info("Refreshing Strava token for user %s", user_id)
        data = await self._refresh(refresh_token, user_id)
        token = self.save_tokens(user_id, data)
        return token.access_token

    def save_tokens(
        self,
        user_id: str,
        token_data: Dict[str, Any],
        scope: Optional[str] = None,
    ) -> StravaToken:
        """Insert or update the stored tokens from an OAuth token response."""
        athlete = token_data.get("athlete") or {}
        with Session(self.engine) as s:
            token = s.get(StravaToken, user_id)
            if token is None:
                token = StravaToken(
                    user_id=user_id,
                    access_token=token_data["access_token"],
                    refresh_token=token_data["refresh_token"],
                    expires_at=int(token_data["expires_at"]),
                )
            else:
                token.access_token = token_data["access_token"]
                token.refresh_token = token_data["refresh_token"]
                token.expires_at = int(token_data["expires_at"])
            if athlete.get("id"):
                token.athlete_id = athlete["id"]
            if scope is not None:
                token.scope = scope
            token.updated_at = utcnow()
            s.add(token)
            s.commit()
            s.refresh(token)
            return token

    def delete_tokens(self, user_id: str) -> bool:
        with Session(self.engine) as s:
            token = s.get(StravaToken, user_id)
            if token is None:
                return False
            s.delete(token)
            s.commit()
            return True

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _refresh(self, refresh_token: str, user_id: str) -> Dict[str, Any]:
        payload = {
            "client_id": self.settings.strava_client_id,
            "client_secret": self.settings.strava_client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            if self._http is not None:
                response = await self._http.post(self.settings.strava_token_url, data=payload)
            else:
                async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS) as client:
                    response = await client.post(self.settings.strava_token_url, data=payload)
        except httpx.HTTPError as exc:
            raise NetworkError(
                f"Strava token refresh failed: {exc}",
                code="TOKEN_REFRESH_UNREACHABLE",
                context={"user_id": user_id},
            ) from exc

        if response.status_code in (400, 401, 403):
            logger.error("Strava token refresh rejected: %s", response.text)
            raise AuthenticationError(
                "Strava refused to refresh the access token",
                code="TOKEN_REFRESH_FAILED",
                context={"user_id": user_id, "status_code": response.status_code},
            )
        if response.status_code != 200:
            raise NetworkError(
                f"Strava token refresh failed (HTTP {response.status_code})",
                code="TOKEN_REFRESH_FAILED",
                context={"user_id": user_id, "status_code": response.status_code},
            )
        return response.json()
