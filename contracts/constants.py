"""
Shared constants for Swarm C2 services.

This module provides a single source of truth for:
- Region bounding boxes
- WebSocket message types
- Threat levels and analysis enums
- Upstream timing rules

All modules should import from this module to ensure consistency.
"""

# Regions (id -> display name, bbox)
REGION_TAIWAN = "taiwan"
REGION_SOCAL = "socal"
REGION_EUROPE = "europe"

REGION_TABLE = {
    REGION_TAIWAN: {
        "name": "Taiwan Strait",
        "min_lat": 21.5,
        "max_lat": 26.0,
        "min_lon": 117.0,
        "max_lon": 123.0,
    },
    REGION_SOCAL: {
        "name": "Southern California",
        "min_lat": 32.5,
        "max_lat": 34.5,
        "min_lon": -120.0,
        "max_lon": -117.0,
    },
    REGION_EUROPE: {
        "name": "United Kingdom",
        "min_lat": 49.9,
        "max_lat": 60.9,
        "min_lon": -8.2,
        "max_lon": 1.8,
    },
}

# WebSocket Message Types
WS_MESSAGE_TYPE_ANALYSIS = "analysis"
WS_ACTION_SUBSCRIBE = "subscribe"

# Analysis levels the server itself assigns
THREAT_NOMINAL = "NOMINAL"
THREAT_UNKNOWN = "UNKNOWN"
PRIORITY_NORMAL = "NORMAL"

# OpenSky state vector layout
OPENSKY_STATE_FIELDS = 17

# Upstream timing (seconds)
POLL_INTERVAL_AUTHENTICATED = 10
POLL_INTERVAL_ANONYMOUS = 15
MIN_REQUEST_GAP_AUTHENTICATED = 3
MIN_REQUEST_GAP_ANONYMOUS = 6
TOKEN_REFRESH_BUFFER_SECONDS = 60

# Reasoning service
ANALYSIS_TIMEOUT_SECONDS = 60
ANALYSIS_INITIAL_DELAY_SECONDS = 15
