"""
Validation library for Swarm C2 message contracts.

Provides Pydantic models for the data that crosses process boundaries:
OpenSky rows turned into aircraft records, the per-region snapshot pushed
to browsers, and the tactical analysis returned by the reasoning service.
All services should use these models to validate messages before sending.
"""

import time
from datetime import datetime, timezone
from typing import Annotated, Optional, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator
from contracts.constants import (
    REGION_TABLE,
    THREAT_NOMINAL,
    THREAT_UNKNOWN,
    PRIORITY_NORMAL,
    WS_MESSAGE_TYPE_ANALYSIS,
    WS_ACTION_SUBSCRIBE,
)


ThreatLevel = Literal["CRITICAL", "HIGH", "MEDIUM", "LOW", "NOMINAL", "UNKNOWN"]


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string with second precision."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


# ============================================================================
# Regions
# ============================================================================

class Region(BaseModel):
    """Named geographic bounding box tracked independently."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(exclude=True)
    name: str
    min_lat: float = Field(ge=-90, le=90, alias="minLat")
    max_lat: float = Field(ge=-90, le=90, alias="maxLat")
    min_lon: float = Field(ge=-180, le=180, alias="minLon")
    max_lon: float = Field(ge=-180, le=180, alias="maxLon")

    def to_params(self) -> dict:
        """Convert to OpenSky API query parameters."""
        return {
            "lamin": self.min_lat,
            "lomin": self.min_lon,
            "lamax": self.max_lat,
            "lomax": self.max_lon,
        }

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True)


def builtin_regions() -> dict[str, Region]:
    """Build Region objects for every entry of the static region table."""
    return {
        region_id: Region(id=region_id, **bbox)
        for region_id, bbox in REGION_TABLE.items()
    }


# ============================================================================
# Aircraft and Snapshots
# ============================================================================

class AircraftRecord(BaseModel):
    """
    One OpenSky state vector.

    Optional numerics stay None when unreported; zero is a real altitude
    or speed and must not stand in for "unknown".
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    icao24: str
    callsign: Optional[str] = None
    origin_country: str = Field("", alias="originCountry")
    time_position: Optional[int] = Field(None, alias="timePosition")
    last_contact: int = Field(0, alias="lastContact")
    longitude: float = Field(ge=-180, le=180)
    latitude: float = Field(ge=-90, le=90)
    baro_altitude: Optional[float] = Field(None, alias="baroAltitude")
    on_ground: bool = Field(False, alias="onGround")
    velocity: Optional[float] = None
    true_track: Optional[float] = Field(None, alias="trueTrack")
    vertical_rate: Optional[float] = Field(None, alias="verticalRate")
    geo_altitude: Optional[float] = Field(None, alias="geoAltitude")
    squawk: Optional[str] = None
    spi: bool = False
    position_source: int = Field(0, alias="positionSource")


class Snapshot(BaseModel):
    """Most recent fetched batch of aircraft for one region."""
    model_config = ConfigDict(frozen=True)

    timestamp: int
    region: str
    aircraft: tuple[AircraftRecord, ...] = ()
    count: int = Field(ge=0)

    @classmethod
    def build(cls, region: str, aircraft: list[AircraftRecord], timestamp: Optional[int] = None) -> "Snapshot":
        return cls(
            timestamp=int(time.time()) if timestamp is None else timestamp,
            region=region,
            aircraft=tuple(aircraft),
            count=len(aircraft),
        )

    def to_dict(self) -> dict:
        """JSON-ready dict in the shape the browser client reads."""
        return self.model_dump(mode="json", by_alias=True)


# ============================================================================
# Tactical Analysis
# ============================================================================

def _upper(v):
    if isinstance(v, str):
        return v.strip().upper()
    return v


# Enum-like strings the service may send in any case
UpperStr = Annotated[Optional[str], BeforeValidator(_upper)]


class _ServiceModel(BaseModel):
    """Base for reasoning-service payloads; explicit nulls fall back to defaults."""
    model_config = ConfigDict(frozen=True)

    @model_validator(mode="before")
    @classmethod
    def drop_nulls(cls, data):
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


def _without_nulls(v):
    if isinstance(v, list):
        return [item for item in v if item is not None]
    return v


class KeyObservation(_ServiceModel):
    """Single observation reported by the reasoning service."""

    type: UpperStr = None
    description: Optional[str] = None
    aircraft_involved: list[str] = Field(default_factory=list)
    threat_contribution: UpperStr = None

    @field_validator("aircraft_involved", mode="before")
    @classmethod
    def drop_null_ids(cls, v):
        return _without_nulls(v)


class AircraftOfInterest(_ServiceModel):
    """Aircraft singled out by the reasoning service."""

    callsign: Optional[str] = None
    icao24: Optional[str] = None
    threat_level: UpperStr = None
    reason: Optional[str] = None
    recommended_action: UpperStr = None


class TacticalRecommendation(_ServiceModel):
    """Prioritized recommended action."""

    priority: Optional[int] = None
    action: Optional[str] = None
    rationale: Optional[str] = None


class PatternAnalysis(_ServiceModel):
    """Counters summarizing traffic patterns."""

    formations_detected: int = 0
    unusual_behaviors: int = 0
    potential_threats: int = 0
    commercial_density: UpperStr = None


class TacticalAnalysis(_ServiceModel):
    """Structured threat assessment for one region."""

    timestamp: str = Field(default_factory=utc_now_iso)
    region: str = ""
    overall_threat_level: ThreatLevel
    threat_score: int = Field(0, ge=0, le=100)
    summary: str = ""
    key_observations: list[KeyObservation] = Field(default_factory=list)
    aircraft_of_interest: list[AircraftOfInterest] = Field(default_factory=list)
    tactical_recommendations: list[TacticalRecommendation] = Field(default_factory=list)
    pattern_analysis: PatternAnalysis = Field(default_factory=PatternAnalysis)
    next_update_priority: str = PRIORITY_NORMAL
    raw: Optional[str] = None

    @field_validator("key_observations", "aircraft_of_interest", "tactical_recommendations", mode="before")
    @classmethod
    def drop_null_items(cls, v):
        return _without_nulls(v)

    @field_validator("overall_threat_level", "next_update_priority", mode="before")
    @classmethod
    def normalize_level(cls, v):
        """Accept lower/mixed case enum values."""
        return _upper(v)

    @field_validator("threat_score", mode="before")
    @classmethod
    def round_score(cls, v):
        """Services sometimes return fractional scores."""
        if isinstance(v, float):
            return int(round(v))
        return v

    @property
    def is_degraded(self) -> bool:
        return self.overall_threat_level == THREAT_UNKNOWN

    def to_dict(self) -> dict:
        """JSON-ready dict; the raw reply is only present on degraded records."""
        exclude = {"raw"} if self.raw is None else None
        return self.model_dump(mode="json", exclude=exclude)

    @classmethod
    def degraded(cls, region: str, raw: str) -> "TacticalAnalysis":
        """Record stored when the service reply cannot be decoded."""
        return cls(
            region=region,
            overall_threat_level=THREAT_UNKNOWN,
            threat_score=0,
            summary="Analysis parsing failed - raw response available",
            raw=raw,
        )

    @classmethod
    def placeholder(cls, region: str, ai_enabled: bool = True) -> "TacticalAnalysis":
        """Record served before the first analysis for a region completes."""
        if ai_enabled:
            summary = "Awaiting initial analysis..."
        else:
            summary = "AI analysis disabled - set OPENAI_API_KEY environment variable to enable."
        return cls(
            region=region,
            overall_threat_level=THREAT_NOMINAL,
            threat_score=0,
            summary=summary,
            pattern_analysis=PatternAnalysis(commercial_density="NORMAL"),
            next_update_priority=PRIORITY_NORMAL,
        )


# ============================================================================
# WebSocket Messages
# ============================================================================

class AnalysisMessage(BaseModel):
    """WebSocket analysis message (server -> client)."""
    type: Literal["analysis"] = WS_MESSAGE_TYPE_ANALYSIS
    region: str
    analysis: TacticalAnalysis

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "region": self.region,
            "analysis": self.analysis.to_dict(),
        }


class SubscribeRequest(BaseModel):
    """WebSocket region switch request (client -> server)."""
    action: Literal["subscribe"] = WS_ACTION_SUBSCRIBE
    region: str = Field(min_length=1)


# ============================================================================
# Validation Functions
# ============================================================================

def validate_tactical_analysis(data: dict) -> tuple[bool, Optional[TacticalAnalysis], Optional[str]]:
    """
    Validate TacticalAnalysis.

    Returns:
        (is_valid, analysis_or_none, error_message_or_none)
    """
    try:
        analysis = TacticalAnalysis(**data)
        return True, analysis, None
    except Exception as e:
        return False, None, str(e)


def validate_subscribe_request(data) -> tuple[bool, Optional[SubscribeRequest], Optional[str]]:
    """
    Validate SubscribeRequest.

    Returns:
        (is_valid, request_or_none, error_message_or_none)
    """
    if not isinstance(data, dict):
        return False, None, "subscribe request must be a JSON object"
    try:
        request = SubscribeRequest(**data)
        return True, request, None
    except Exception as e:
        return False, None, str(e)
