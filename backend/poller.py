"""
Per-region OpenSky pollers.

Each configured region gets its own daemon thread on a fixed ticker. The
threads only coordinate through the fetcher's global rate limiter; the
second and later regions start half an interval late so their requests
interleave instead of bunching up behind the limiter.
"""

import time
import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from contracts.validation import Region, Snapshot
from backend.cache import SnapshotCache
from backend.fetcher import OpenSkyFetcher, UpstreamError

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[str, Snapshot], None]


class BackgroundLoop(ABC):
    """Long-lived ticker thread stopped through a shared Event."""

    name = "loop"

    def __init__(self, interval: float, initial_delay: float = 0.0, stop_event: Optional[threading.Event] = None):
        self.interval = interval
        self.initial_delay = initial_delay
        self._stop = stop_event or threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @abstractmethod
    def tick(self) -> None:
        """One unit of work; exceptions are logged and the loop carries on."""

    def _run(self):
        if self._stop.wait(self.initial_delay):
            return

        while not self._stop.is_set():
            started = time.monotonic()
            try:
                self.tick()
            except Exception as e:
                # Keep the loop alive; the next tick retries
                logger.error(f"Unexpected error in {self.name}: {e}", exc_info=True)

            remaining = max(0.0, self.interval - (time.monotonic() - started))
            if self._stop.wait(remaining):
                break

    def start(self):
        """Start the loop in a background thread."""
        if self.running:
            logger.warning(f"{self.name} already running")
            return

        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"{self.name} started (interval {self.interval}s, delay {self.initial_delay}s)")

    def stop(self, timeout: float = 5.0):
        """Signal the loop to exit and wait for the thread."""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        logger.info(f"{self.name} stopped")


class RegionPoller(BackgroundLoop):
    """Fetches one region on every tick and hands fresh snapshots on."""

    def __init__(
        self,
        region: Region,
        fetcher: OpenSkyFetcher,
        snapshot_cache: SnapshotCache,
        on_snapshot: Optional[SnapshotCallback] = None,
        interval: float = 15,
        initial_delay: float = 0.0,
        stop_event: Optional[threading.Event] = None,
    ):
        super().__init__(interval, initial_delay, stop_event)
        self.region = region
        self.fetcher = fetcher
        self.snapshot_cache = snapshot_cache
        self.on_snapshot = on_snapshot
        self.name = f"poller-{region.id}"

    def poll_once(self) -> Optional[Snapshot]:
        """
        Fetch, store and publish one snapshot.

        Returns:
            The fresh snapshot, or None if nothing new was stored.
        """
        try:
            result = self.fetcher.fetch(self.region)
        except UpstreamError as e:
            logger.error(f"[{self.region.id}] Error fetching OpenSky data: {e}")
            return None

        if result.stale:
            logger.warning(f"[{self.region.id}] OpenSky rate limited (429), keeping previous snapshot")
            return None

        snapshot = result.snapshot
        self.snapshot_cache.update(snapshot)
        logger.info(f"[{self.region.id}] Fetched {snapshot.count} aircraft")

        if self.on_snapshot is not None:
            try:
                self.on_snapshot(self.region.id, snapshot)
            except Exception as e:
                logger.error(f"[{self.region.id}] Snapshot broadcast failed: {e}", exc_info=True)

        return snapshot

    def tick(self) -> None:
        self.poll_once()


class PollerGroup:
    """One RegionPoller per configured region sharing a stop event."""

    def __init__(
        self,
        regions: Dict[str, Region],
        fetcher: OpenSkyFetcher,
        snapshot_cache: SnapshotCache,
        on_snapshot: Optional[SnapshotCallback] = None,
        interval: float = 15,
    ):
        self._stop = threading.Event()
        self.pollers: List[RegionPoller] = []
        for index, region in enumerate(regions.values()):
            self.pollers.append(RegionPoller(
                region,
                fetcher,
                snapshot_cache,
                on_snapshot=on_snapshot,
                interval=interval,
                initial_delay=0.0 if index == 0 else interval / 2,
                stop_event=self._stop,
            ))

    def start(self):
        for poller in self.pollers:
            poller.start()

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        for poller in self.pollers:
            poller.stop(timeout=timeout)
