"""
In-memory per-region caches for snapshots and tactical analyses.

Values are immutable Pydantic models replaced wholesale, so readers get
the shared object back without copying; the lock only guards the dict.
"""

import logging
import threading
from typing import Dict, Generic, Optional, TypeVar

from contracts.validation import Snapshot, TacticalAnalysis
from backend.metrics import AIRCRAFT_TRACKED

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RegionCache(Generic[T]):
    """Thread-safe region id -> latest value map."""

    def __init__(self):
        self._entries: Dict[str, T] = {}
        self._lock = threading.RLock()

    def get(self, region: str) -> Optional[T]:
        with self._lock:
            return self._entries.get(region)

    def put(self, region: str, value: T) -> None:
        with self._lock:
            self._entries[region] = value


class SnapshotCache(RegionCache[Snapshot]):
    """Latest snapshot per region. Written only by that region's poller."""

    def update(self, snapshot: Snapshot) -> None:
        """Swap in a freshly fetched snapshot."""
        self.put(snapshot.region, snapshot)
        AIRCRAFT_TRACKED.labels(region=snapshot.region).set(snapshot.count)

    def has_aircraft(self, region: str) -> bool:
        snapshot = self.get(region)
        return snapshot is not None and snapshot.count > 0


class AnalysisCache(RegionCache[TacticalAnalysis]):
    """Latest tactical analysis per region. Last write wins."""

    def update(self, analysis: TacticalAnalysis) -> None:
        self.put(analysis.region, analysis)
