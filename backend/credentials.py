"""
OAuth2 token cache for the OpenSky Network API.

OpenSky issues short-lived bearer tokens (30 min) through a Keycloak
client-credentials exchange. One account backs every region poller, so a
single cached token is shared and refreshed under one lock: concurrent
callers that find it expiring wait for the first caller's exchange instead
of each running their own.
"""

import time
import logging
import threading
from typing import Callable, Optional

import requests

from contracts.constants import TOKEN_REFRESH_BUFFER_SECONDS
from backend.metrics import TOKEN_REFRESHES

logger = logging.getLogger(__name__)


class CredentialCache:
    """Lazily acquired, lock-guarded OpenSky bearer token."""

    def __init__(
        self,
        token_url: str,
        client_id: Optional[str],
        client_secret: Optional[str],
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
        refresh_buffer: float = TOKEN_REFRESH_BUFFER_SECONDS,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.session = session or requests.Session()
        self.refresh_buffer = refresh_buffer
        self._clock = clock

        self._lock = threading.Lock()
        self._access_token: Optional[str] = None
        self._expires_at: float = 0

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def get_token(self) -> Optional[str]:
        """
        Return a token with more than the refresh buffer left, exchanging
        credentials for a new one if needed.

        Returns:
            The bearer token, or None if no credentials are configured or
            the exchange failed (callers fall back to anonymous access).
        """
        if not self.configured:
            return None

        with self._lock:
            remaining = self._expires_at - self._clock()
            if self._access_token and remaining > self.refresh_buffer:
                return self._access_token

            if self._access_token:
                logger.info(f"Token expiring in {remaining:.0f}s, refreshing...")
            return self._exchange()

    def invalidate(self) -> None:
        """Drop the cached token so the next call forces a new exchange."""
        with self._lock:
            if self._access_token:
                logger.warning("Discarding rejected OpenSky token")
            self._access_token = None
            self._expires_at = 0

    def _exchange(self) -> Optional[str]:
        """Run the client-credentials exchange. Caller holds the lock."""
        try:
            response = self.session.post(
                self.token_url,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
                timeout=30,
            )
        except requests.exceptions.RequestException as e:
            TOKEN_REFRESHES.labels(status="error").inc()
            logger.error(f"Token request failed: {e}")
            return None

        if response.status_code != 200:
            TOKEN_REFRESHES.labels(status="failed").inc()
            logger.error(
                f"Failed to obtain OAuth2 token: HTTP {response.status_code} - {response.text[:200]}"
            )
            return None

        try:
            token_data = response.json()
            token = token_data["access_token"]
            expires_in = int(token_data.get("expires_in", 1800))
        except (ValueError, KeyError, TypeError) as e:
            TOKEN_REFRESHES.labels(status="failed").inc()
            logger.error(f"Malformed token response: {e}")
            return None

        self._access_token = token
        self._expires_at = self._clock() + expires_in
        TOKEN_REFRESHES.labels(status="success").inc()
        logger.info(f"OpenSky OAuth2 token acquired (expires in {expires_in}s)")
        return token
