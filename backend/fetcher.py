"""
Rate-limited OpenSky Network fetcher.

OpenSky state vector format (array indices):
0: icao24          - ICAO24 hex address
1: callsign        - Callsign (8 chars, space padded)
2: origin_country  - Country of registration
3: time_position   - Unix timestamp of last position update
4: last_contact    - Unix timestamp of last message
5: longitude       - WGS84 longitude
6: latitude        - WGS84 latitude
7: baro_altitude   - Barometric altitude (meters)
8: on_ground       - Boolean
9: velocity        - Ground speed (m/s)
10: true_track     - Track angle (degrees, 0=north)
11: vertical_rate  - Vertical rate (m/s)
12: sensors        - Sensor IDs (array)
13: geo_altitude   - Geometric altitude (meters)
14: squawk         - Transponder code
15: spi            - Special position indicator
16: position_source - 0=ADS-B, 1=ASTERIX, 2=MLAT, 3=FLARM

The provider quota is per account, not per query, so every region shares
one RateLimiter.
"""

import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

import requests
from pydantic import ValidationError
from requests.auth import HTTPBasicAuth

from contracts.constants import OPENSKY_STATE_FIELDS
from contracts.validation import AircraftRecord, Region, Snapshot
from backend.cache import SnapshotCache
from backend.config import Settings
from backend.credentials import CredentialCache
from backend.metrics import UPSTREAM_POLLS, UPSTREAM_LATENCY, RATE_LIMIT_WAIT

logger = logging.getLogger(__name__)


# ============================================
# Errors
# ============================================

class UpstreamError(Exception):
    """OpenSky request failed; the caller keeps its previous state."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamAuthError(UpstreamError):
    """OpenSky rejected our credentials (401)."""


class RateLimitedError(UpstreamError):
    """OpenSky returned 429 and there is no earlier snapshot to reuse."""


# ============================================
# Rate Limiter
# ============================================

class RateLimiter:
    """
    Global minimum gap between upstream requests.

    acquire() checks the gap, sleeps out the remainder and stamps the call
    time as one critical section, so two fetchers can never both pass the
    check and fire together.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_call: Optional[float] = None

    def acquire(self) -> float:
        """Block until a request may be issued. Returns seconds waited."""
        with self._lock:
            waited = 0.0
            if self._last_call is not None:
                elapsed = self._clock() - self._last_call
                if elapsed < self.min_interval:
                    waited = self.min_interval - elapsed
                    logger.info(f"Rate limiter: waiting {waited:.3f}s before next OpenSky call")
                    self._sleep(waited)
            self._last_call = self._clock()

        RATE_LIMIT_WAIT.observe(waited)
        return waited


# ============================================
# State parsing
# ============================================

def _as_str(value) -> Optional[str]:
    return value if isinstance(value, str) else None


def _as_float(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _as_int(value) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _as_bool(value) -> bool:
    return value if isinstance(value, bool) else False


def parse_state(state: list) -> Optional[AircraftRecord]:
    """Transform one OpenSky state array. Returns None if it must be dropped."""
    if not isinstance(state, (list, tuple)) or len(state) < OPENSKY_STATE_FIELDS:
        return None

    icao24 = _as_str(state[0])
    longitude = _as_float(state[5])
    latitude = _as_float(state[6])

    # Only keep aircraft with a known position
    if not icao24 or longitude is None or latitude is None:
        return None

    try:
        return AircraftRecord(
            icao24=icao24.strip().lower(),
            callsign=(_as_str(state[1]) or "").strip() or None,
            origin_country=_as_str(state[2]) or "",
            time_position=_as_int(state[3]),
            last_contact=_as_int(state[4]) or 0,
            longitude=longitude,
            latitude=latitude,
            baro_altitude=_as_float(state[7]),
            on_ground=_as_bool(state[8]),
            velocity=_as_float(state[9]),
            true_track=_as_float(state[10]),
            vertical_rate=_as_float(state[11]),
            geo_altitude=_as_float(state[13]),
            squawk=_as_str(state[14]),
            spi=_as_bool(state[15]),
            position_source=_as_int(state[16]) or 0,
        )
    except ValidationError as e:
        logger.debug(f"Dropping invalid state for {icao24}: {e}")
        return None


def parse_states(states: Optional[list]) -> List[AircraftRecord]:
    """Transform the OpenSky 'states' array, dropping unusable rows."""
    aircraft = []
    for state in states or []:
        record = parse_state(state)
        if record is not None:
            aircraft.append(record)
    return aircraft


# ============================================
# Fetcher
# ============================================

@dataclass(frozen=True)
class FetchResult:
    """Outcome of one fetch. stale=True means a 429 reused the cached snapshot."""
    snapshot: Snapshot
    stale: bool = False


class OpenSkyFetcher:
    """Issues bounding-box queries to OpenSky, one at a time across all regions."""

    def __init__(
        self,
        api_url: str,
        limiter: RateLimiter,
        snapshot_cache: SnapshotCache,
        credentials: Optional[CredentialCache] = None,
        basic_auth: Optional[tuple[str, str]] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 15,
    ):
        self.api_url = api_url.rstrip("/")
        self.limiter = limiter
        self.snapshot_cache = snapshot_cache
        self.credentials = credentials
        self.basic_auth = basic_auth
        self.session = session or requests.Session()
        self.timeout = timeout

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        snapshot_cache: SnapshotCache,
        session: Optional[requests.Session] = None,
    ) -> "OpenSkyFetcher":
        session = session or requests.Session()
        credentials = None
        if settings.has_oauth:
            credentials = CredentialCache(
                settings.opensky_token_url,
                settings.opensky_client_id,
                settings.opensky_client_secret,
                session=session,
            )
        basic_auth = None
        if settings.has_basic_auth:
            basic_auth = (settings.opensky_username, settings.opensky_password)
        return cls(
            settings.opensky_api_url,
            RateLimiter(settings.min_request_gap),
            snapshot_cache,
            credentials=credentials,
            basic_auth=basic_auth,
            session=session,
        )

    def _auth(self) -> tuple[dict, Optional[HTTPBasicAuth]]:
        """Auth priority: OAuth2 bearer > basic auth > anonymous."""
        if self.credentials is not None and self.credentials.configured:
            token = self.credentials.get_token()
            if token:
                return {"Authorization": f"Bearer {token}"}, None
            logger.warning("OAuth2 token unavailable, falling back to anonymous access")
            return {}, None
        if self.basic_auth:
            return {}, HTTPBasicAuth(*self.basic_auth)
        return {}, None

    def fetch(self, region: Region) -> FetchResult:
        """
        Fetch the current aircraft for a region.

        Raises:
            RateLimitedError: 429 with no cached snapshot to fall back on
            UpstreamAuthError: 401; the cached token has been discarded
            UpstreamError: network failure, bad JSON or other non-2xx status
        """
        self.limiter.acquire()
        headers, auth = self._auth()

        try:
            with UPSTREAM_LATENCY.time():
                response = self.session.get(
                    f"{self.api_url}/states/all",
                    params=region.to_params(),
                    headers=headers,
                    auth=auth,
                    timeout=self.timeout,
                )
        except requests.exceptions.RequestException as e:
            UPSTREAM_POLLS.labels(region=region.id, status="connection_error").inc()
            raise UpstreamError(f"request failed: {e}") from e

        if response.status_code == 429:
            UPSTREAM_POLLS.labels(region=region.id, status="rate_limited").inc()
            previous = self.snapshot_cache.get(region.id)
            if previous is None:
                raise RateLimitedError("OpenSky rate limited (429) - will retry next cycle", 429)
            return FetchResult(snapshot=previous, stale=True)

        if response.status_code == 401:
            UPSTREAM_POLLS.labels(region=region.id, status="auth_failed").inc()
            if self.credentials is not None:
                self.credentials.invalidate()
            raise UpstreamAuthError("OpenSky auth failed (401) - check credentials", 401)

        if not 200 <= response.status_code < 300:
            UPSTREAM_POLLS.labels(region=region.id, status="error").inc()
            raise UpstreamError(
                f"API returned {response.status_code}: {response.text[:500]}",
                response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            UPSTREAM_POLLS.labels(region=region.id, status="error").inc()
            raise UpstreamError(f"JSON parse failed: {e}", response.status_code) from e

        states = data.get("states") if isinstance(data, dict) else None
        aircraft = parse_states(states)
        UPSTREAM_POLLS.labels(region=region.id, status="success").inc()
        return FetchResult(snapshot=Snapshot.build(region.id, aircraft))
