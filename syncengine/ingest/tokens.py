"""Access token refresh for providers with expiring credentials."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from syncengine.errors import ProviderError, TokenRefreshError
from syncengine.ingest.http import ProviderHTTP
from syncengine.utils.dates import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"


@dataclass(slots=True)
class RefreshedToken:
    access_token: str
    expires_at: datetime | None


class TokenRefresher(Protocol):
    async def refresh(self, refresh_token: str) -> RefreshedToken:
        ...


def needs_refresh(expires_at: str | datetime | None, buffer_seconds: int, now: datetime | None = None) -> bool:
    """True when the token expires within the buffer. Unknown expiry never triggers a refresh."""
    expiry = parse_timestamp(expires_at)
    if expiry is None:
        return False
    return (now or utcnow()) >= expiry - timedelta(seconds=buffer_seconds)


class GoogleOAuthRefresher:
    def __init__(self, client_id: str, client_secret: str, *, http: ProviderHTTP) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.http = http

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        try:
            response = await self.http.request(
                "POST",
                GOOGLE_TOKEN_ENDPOINT,
                context="google oauth token refresh",
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                },
            )
            body = response.json()
        except (ProviderError, ValueError) as exc:
            raise TokenRefreshError(f"Google Ads token refresh failed: {exc}") from exc
        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            raise TokenRefreshError("Google Ads token refresh returned no access_token")
        expires_in = body.get("expires_in")
        expires_at = utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None
        logger.info("Refreshed Google Ads access token (expires %s)", expires_at)
        return RefreshedToken(access_token=access_token, expires_at=expires_at)
