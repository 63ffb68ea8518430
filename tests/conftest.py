"""
Shared fixtures for contract and integration tests.

Nothing here touches the network: upstream sessions are MagicMocks and
responses are built by make_response.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add repository root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from contracts.validation import AircraftRecord, Snapshot, builtin_regions


class FakeClock:
    """Manually advanced clock; sleep() advances it instead of blocking."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def regions():
    return builtin_regions()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_state():
    """Factory for a raw 17-field OpenSky state array."""
    def _make(icao24="abc123", callsign="EVA123  ", longitude=121.5, latitude=25.0, **overrides):
        state = [
            icao24,          # 0 icao24
            callsign,        # 1 callsign
            "Taiwan",        # 2 origin_country
            1700000000,      # 3 time_position
            1700000005,      # 4 last_contact
            longitude,       # 5 longitude
            latitude,        # 6 latitude
            10668.0,         # 7 baro_altitude
            False,           # 8 on_ground
            230.5,           # 9 velocity
            45.0,            # 10 true_track
            0.0,             # 11 vertical_rate
            None,            # 12 sensors
            10900.0,         # 13 geo_altitude
            "1234",          # 14 squawk
            False,           # 15 spi
            0,               # 16 position_source
        ]
        index = {
            "baro_altitude": 7,
            "on_ground": 8,
            "velocity": 9,
            "true_track": 10,
            "vertical_rate": 11,
            "geo_altitude": 13,
            "squawk": 14,
        }
        for key, value in overrides.items():
            state[index[key]] = value
        return state
    return _make


@pytest.fixture
def make_aircraft():
    """Factory for an AircraftRecord."""
    def _make(icao24="abc123", **fields):
        defaults = {
            "callsign": "EVA123",
            "origin_country": "Taiwan",
            "last_contact": 1700000005,
            "longitude": 121.5,
            "latitude": 25.0,
            "baro_altitude": 10668.0,
            "velocity": 230.0,
        }
        defaults.update(fields)
        return AircraftRecord(icao24=icao24, **defaults)
    return _make


@pytest.fixture
def make_snapshot(make_aircraft):
    """Factory for a Snapshot with n distinct aircraft."""
    def _make(region="taiwan", n=2, timestamp=1700000000):
        aircraft = [make_aircraft(icao24=f"a{i:05x}") for i in range(n)]
        return Snapshot.build(region, aircraft, timestamp=timestamp)
    return _make


@pytest.fixture
def make_response():
    """Factory for a requests.Response stand-in."""
    def _make(status_code=200, json_data=None, text=""):
        response = MagicMock()
        response.status_code = status_code
        response.text = text
        if json_data is None:
            response.json.side_effect = ValueError("No JSON object could be decoded")
        else:
            response.json.return_value = json_data
        return response
    return _make
