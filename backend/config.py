"""
Configuration for the Swarm C2 backend.

Loads settings from environment variables with sensible defaults.
Credential presence drives the poll cadence and which auth header is sent
to OpenSky, so those rules live here next to the variables themselves.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from dotenv import load_dotenv

from contracts.constants import (
    REGION_TABLE,
    POLL_INTERVAL_AUTHENTICATED,
    POLL_INTERVAL_ANONYMOUS,
    MIN_REQUEST_GAP_AUTHENTICATED,
    MIN_REQUEST_GAP_ANONYMOUS,
)
from contracts.validation import Region, builtin_regions

logger = logging.getLogger(__name__)

OPENSKY_API_URL = "https://opensky-network.org/api"
OPENSKY_TOKEN_URL = "https://auth.opensky-network.org/auth/realms/opensky-network/protocol/openid-connect/token"
OPENAI_API_URL = "https://api.openai.com/v1"
OPENAI_MODEL = "gpt-4.1-mini"


def _parse_regions(value: str) -> tuple[str, ...]:
    """Parse 'taiwan,socal' into known region ids, keeping order."""
    if not value:
        return tuple(REGION_TABLE)
    selected = []
    for part in value.split(","):
        region_id = part.strip().lower()
        if not region_id:
            continue
        if region_id not in REGION_TABLE:
            logger.warning(f"Ignoring unknown region in SWARM_REGIONS: {region_id}")
            continue
        if region_id not in selected:
            selected.append(region_id)
    return tuple(selected) or tuple(REGION_TABLE)


@dataclass(frozen=True)
class Settings:
    """Process-wide settings, built once at startup."""
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    # OpenSky Network
    opensky_api_url: str = OPENSKY_API_URL
    opensky_token_url: str = OPENSKY_TOKEN_URL
    opensky_client_id: Optional[str] = None
    opensky_client_secret: Optional[str] = None
    opensky_username: Optional[str] = None
    opensky_password: Optional[str] = None

    # Reasoning service (OpenAI-compatible)
    openai_api_key: Optional[str] = None
    openai_api_url: str = OPENAI_API_URL
    openai_model: str = OPENAI_MODEL
    analysis_interval: int = 60

    region_ids: tuple[str, ...] = field(default_factory=lambda: tuple(REGION_TABLE))

    @property
    def has_oauth(self) -> bool:
        return bool(self.opensky_client_id and self.opensky_client_secret)

    @property
    def has_basic_auth(self) -> bool:
        return bool(self.opensky_username and self.opensky_password)

    @property
    def has_opensky_auth(self) -> bool:
        return bool(self.opensky_client_id or self.opensky_username)

    @property
    def poll_interval(self) -> int:
        # Authenticated accounts get a larger credit budget
        return POLL_INTERVAL_AUTHENTICATED if self.has_opensky_auth else POLL_INTERVAL_ANONYMOUS

    @property
    def min_request_gap(self) -> int:
        return MIN_REQUEST_GAP_AUTHENTICATED if self.has_opensky_auth else MIN_REQUEST_GAP_ANONYMOUS

    @property
    def ai_enabled(self) -> bool:
        return bool(self.openai_api_key)

    @property
    def regions(self) -> dict[str, Region]:
        """Configured regions in configuration order."""
        table = builtin_regions()
        return {region_id: table[region_id] for region_id in self.region_ids}

    @property
    def default_region(self) -> str:
        return self.region_ids[0]


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Load settings from the environment (and a .env file when present)."""
    if env is None:
        load_dotenv()
        env = os.environ

    def get(name: str) -> Optional[str]:
        return env.get(name) or None

    return Settings(
        host=env.get("BACKEND_HOST", "0.0.0.0"),
        port=int(env.get("PORT", "8080")),
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
        opensky_api_url=env.get("OPENSKY_API_URL", OPENSKY_API_URL),
        opensky_token_url=env.get("OPENSKY_TOKEN_URL", OPENSKY_TOKEN_URL),
        opensky_client_id=get("OPENSKY_CLIENT_ID"),
        opensky_client_secret=get("OPENSKY_CLIENT_SECRET"),
        opensky_username=get("OPENSKY_USERNAME"),
        opensky_password=get("OPENSKY_PASSWORD"),
        openai_api_key=get("OPENAI_API_KEY"),
        openai_api_url=env.get("OPENAI_API_URL", OPENAI_API_URL),
        openai_model=env.get("OPENAI_MODEL", OPENAI_MODEL),
        analysis_interval=int(env.get("ANALYSIS_INTERVAL_SECONDS", "60")),
        region_ids=_parse_regions(env.get("SWARM_REGIONS", "")),
    )
