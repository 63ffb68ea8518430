"""
Integration test: region pollers and the background loop they run on.
"""

import time
import threading
from unittest.mock import MagicMock

import pytest

from backend.cache import SnapshotCache
from backend.fetcher import FetchResult, RateLimitedError, UpstreamError
from backend.poller import BackgroundLoop, PollerGroup, RegionPoller


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class CountingLoop(BackgroundLoop):
    name = "counting"

    def __init__(self, fail_first=False, **kwargs):
        super().__init__(**kwargs)
        self.ticks = 0
        self.fail_first = fail_first

    def tick(self):
        self.ticks += 1
        if self.fail_first and self.ticks == 1:
            raise RuntimeError("boom")


class TestBackgroundLoop:
    """Test start/stop behavior of ticker threads."""

    def test_ticks_until_stopped(self):
        loop = CountingLoop(interval=0.01)
        loop.start()
        assert wait_for(lambda: loop.ticks >= 3)

        loop.stop(timeout=1)
        assert not loop.running

    def test_exception_does_not_kill_loop(self):
        loop = CountingLoop(fail_first=True, interval=0.01)
        loop.start()
        assert wait_for(lambda: loop.ticks >= 2)
        loop.stop(timeout=1)

    def test_stop_during_initial_delay(self):
        loop = CountingLoop(interval=0.01, initial_delay=10)
        loop.start()
        loop.stop(timeout=1)

        assert not loop.running
        assert loop.ticks == 0

    def test_shared_stop_event(self):
        stop = threading.Event()
        loops = [CountingLoop(interval=0.01, stop_event=stop) for _ in range(2)]
        for loop in loops:
            loop.start()
        assert wait_for(lambda: all(loop.ticks >= 1 for loop in loops))

        stop.set()
        assert wait_for(lambda: not any(loop.running for loop in loops))

    def test_requires_tick(self):
        with pytest.raises(TypeError):
            BackgroundLoop(interval=1)


class TestRegionPoller:
    """Test one poll cycle: fetch, store, publish."""

    def test_fresh_snapshot_stored_and_published(self, regions, make_snapshot):
        cache = SnapshotCache()
        snapshot = make_snapshot("taiwan", n=4)
        fetcher = MagicMock()
        fetcher.fetch.return_value = FetchResult(snapshot=snapshot)
        on_snapshot = MagicMock()

        poller = RegionPoller(regions["taiwan"], fetcher, cache, on_snapshot=on_snapshot)
        result = poller.poll_once()

        assert result is snapshot
        assert cache.get("taiwan") is snapshot
        on_snapshot.assert_called_once_with("taiwan", snapshot)

    def test_stale_snapshot_not_published(self, regions, make_snapshot):
        """Test that a 429 reuse neither rewrites the cache nor broadcasts."""
        cache = SnapshotCache()
        previous = make_snapshot("taiwan")
        cache.update(previous)
        fetcher = MagicMock()
        fetcher.fetch.return_value = FetchResult(snapshot=previous, stale=True)
        on_snapshot = MagicMock()

        poller = RegionPoller(regions["taiwan"], fetcher, cache, on_snapshot=on_snapshot)

        assert poller.poll_once() is None
        assert cache.get("taiwan") is previous
        on_snapshot.assert_not_called()

    def test_upstream_error_keeps_previous(self, regions, make_snapshot):
        cache = SnapshotCache()
        previous = make_snapshot("socal")
        cache.update(previous)
        fetcher = MagicMock()
        fetcher.fetch.side_effect = UpstreamError("API returned 500", 500)
        on_snapshot = MagicMock()

        poller = RegionPoller(regions["socal"], fetcher, cache, on_snapshot=on_snapshot)

        assert poller.poll_once() is None
        assert cache.get("socal") is previous
        on_snapshot.assert_not_called()

    def test_rate_limited_first_poll(self, regions):
        cache = SnapshotCache()
        fetcher = MagicMock()
        fetcher.fetch.side_effect = RateLimitedError("rate limited", 429)

        poller = RegionPoller(regions["europe"], fetcher, cache)

        assert poller.poll_once() is None
        assert cache.get("europe") is None

    def test_publish_failure_is_contained(self, regions, make_snapshot):
        cache = SnapshotCache()
        snapshot = make_snapshot("taiwan")
        fetcher = MagicMock()
        fetcher.fetch.return_value = FetchResult(snapshot=snapshot)
        on_snapshot = MagicMock(side_effect=RuntimeError("loop closed"))

        poller = RegionPoller(regions["taiwan"], fetcher, cache, on_snapshot=on_snapshot)

        assert poller.poll_once() is snapshot
        assert cache.get("taiwan") is snapshot

    def test_regions_are_independent(self, regions, make_snapshot):
        cache = SnapshotCache()
        fetcher = MagicMock()
        fetcher.fetch.side_effect = lambda region: FetchResult(snapshot=make_snapshot(region.id, n=1))

        for region_id in ("taiwan", "socal"):
            RegionPoller(regions[region_id], fetcher, cache).poll_once()

        assert cache.get("taiwan").region == "taiwan"
        assert cache.get("socal").region == "socal"
        assert cache.get("europe") is None


class TestPollerGroup:
    """Test per-region poller construction."""

    def test_one_poller_per_region_staggered(self, regions):
        group = PollerGroup(regions, MagicMock(), SnapshotCache(), interval=10)

        assert [p.name for p in group.pollers] == ["poller-taiwan", "poller-socal", "poller-europe"]
        assert [p.initial_delay for p in group.pollers] == [0.0, 5.0, 5.0]
        assert all(p.interval == 10 for p in group.pollers)

    def test_start_and_stop(self, regions, make_snapshot):
        fetcher = MagicMock()
        fetcher.fetch.side_effect = lambda region: FetchResult(snapshot=make_snapshot(region.id, n=1))
        cache = SnapshotCache()
        group = PollerGroup({"taiwan": regions["taiwan"]}, fetcher, cache, interval=0.05)

        group.start()
        assert wait_for(lambda: cache.get("taiwan") is not None)
        group.stop(timeout=1)

        assert not any(p.running for p in group.pollers)
