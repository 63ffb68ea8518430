"""
Swarm C2 Contracts Package

Provides shared constants and validation for message contracts.
"""

from contracts.constants import *
from contracts.validation import (
    Region,
    AircraftRecord,
    Snapshot,
    KeyObservation,
    AircraftOfInterest,
    TacticalRecommendation,
    PatternAnalysis,
    TacticalAnalysis,
    AnalysisMessage,
    SubscribeRequest,
    builtin_regions,
    utc_now_iso,
    validate_tactical_analysis,
    validate_subscribe_request,
)

__all__ = [
    # Constants
    "REGION_TABLE",
    "REGION_TAIWAN",
    "REGION_SOCAL",
    "REGION_EUROPE",
    "WS_MESSAGE_TYPE_ANALYSIS",
    "WS_ACTION_SUBSCRIBE",
    "THREAT_UNKNOWN",
    "THREAT_NOMINAL",
    "OPENSKY_STATE_FIELDS",
    # Models
    "Region",
    "AircraftRecord",
    "Snapshot",
    "KeyObservation",
    "AircraftOfInterest",
    "TacticalRecommendation",
    "PatternAnalysis",
    "TacticalAnalysis",
    "AnalysisMessage",
    "SubscribeRequest",
    # Helpers
    "builtin_regions",
    "utc_now_iso",
    # Validators
    "validate_tactical_analysis",
    "validate_subscribe_request",
]
