"""
WebSocket subscriber registry and broadcaster.

Every connection is subscribed to exactly one region at a time. Snapshots
and analyses are only delivered to connections watching the matching
region, and a client may switch regions without reconnecting.
"""

import json
import asyncio
import logging
import threading
import concurrent.futures
from typing import Dict, List, Optional

from fastapi import WebSocket, WebSocketDisconnect

from contracts.validation import (
    AnalysisMessage,
    Region,
    Snapshot,
    TacticalAnalysis,
    validate_subscribe_request,
)
from backend.cache import AnalysisCache, SnapshotCache
from backend.metrics import WEBSOCKET_CONNECTIONS, WEBSOCKET_MESSAGES_SENT, WEBSOCKET_SEND_FAILURES

logger = logging.getLogger(__name__)

SEND_TIMEOUT_SECONDS = 5.0


class ConnectionManager:
    """Manages WebSocket subscriptions and per-region broadcasts."""

    def __init__(
        self,
        regions: Dict[str, Region],
        default_region: str,
        snapshot_cache: SnapshotCache,
        analysis_cache: AnalysisCache,
        send_timeout: float = SEND_TIMEOUT_SECONDS,
    ):
        self.regions = regions
        self.default_region = default_region
        self.snapshot_cache = snapshot_cache
        self.analysis_cache = analysis_cache
        self.send_timeout = send_timeout

        # Written on connect/disconnect/switch, read on every broadcast
        self._subscriptions: Dict[WebSocket, str] = {}
        self._lock = threading.RLock()

    @property
    def active_connections(self) -> List[WebSocket]:
        with self._lock:
            return list(self._subscriptions)

    def region_of(self, websocket: WebSocket) -> Optional[str]:
        with self._lock:
            return self._subscriptions.get(websocket)

    def subscriber_count(self, region: Optional[str] = None) -> int:
        """Connections watching a region (all connections if region is None)."""
        with self._lock:
            if region is None:
                return len(self._subscriptions)
            return sum(1 for r in self._subscriptions.values() if r == region)

    def _recipients(self, region: str) -> List[WebSocket]:
        with self._lock:
            return [ws for ws, r in self._subscriptions.items() if r == region]

    async def connect(self, websocket: WebSocket, region: Optional[str] = None):
        """Accept a connection, subscribe it and send the region's current state."""
        if region not in self.regions:
            if region:
                logger.info(f"Unknown initial region '{region}', using {self.default_region}")
            region = self.default_region

        await websocket.accept()
        with self._lock:
            self._subscriptions[websocket] = region
            total = len(self._subscriptions)
        WEBSOCKET_CONNECTIONS.set(total)
        logger.info(f"Client connected, subscribed to: {region}. Total connections: {total}")

        await self._send_current_state(websocket, region)

    def disconnect(self, websocket: WebSocket):
        """Remove a connection's subscription once its read loop has ended."""
        with self._lock:
            removed = self._subscriptions.pop(websocket, None)
            total = len(self._subscriptions)
        if removed is not None:
            WEBSOCKET_CONNECTIONS.set(total)
            logger.info(f"Client disconnected. Total connections: {total}")

    async def _send(self, websocket: WebSocket, message: dict, kind: str) -> bool:
        """Send one message, bounded by the send timeout. Returns success."""
        try:
            await asyncio.wait_for(websocket.send_json(message), timeout=self.send_timeout)
        except Exception as e:
            WEBSOCKET_SEND_FAILURES.inc()
            logger.warning(f"Failed to send {kind} to connection: {e!r}")
            return False
        WEBSOCKET_MESSAGES_SENT.labels(type=kind).inc()
        return True

    async def _send_current_state(self, websocket: WebSocket, region: str):
        """Send the cached snapshot and analysis for a region, if any."""
        snapshot = self.snapshot_cache.get(region)
        if snapshot is not None:
            await self._send(websocket, snapshot.to_dict(), "snapshot")

        analysis = self.analysis_cache.get(region)
        if analysis is not None:
            message = AnalysisMessage(region=region, analysis=analysis)
            await self._send(websocket, message.to_dict(), "analysis")

    async def handle_message(self, websocket: WebSocket, text: str) -> bool:
        """
        Handle one inbound client message.

        Only {"action": "subscribe", "region": <known id>} does anything;
        everything else is ignored without closing the connection.

        Returns:
            True if the connection switched region.
        """
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            logger.debug("Ignoring non-JSON client message")
            return False

        is_valid, request, error = validate_subscribe_request(data)
        if not is_valid:
            logger.debug(f"Ignoring client message: {error}")
            return False

        if request.region not in self.regions:
            logger.debug(f"Ignoring subscribe to unknown region: {request.region}")
            return False

        with self._lock:
            if websocket not in self._subscriptions:
                return False
            self._subscriptions[websocket] = request.region

        logger.info(f"Client switched to region: {request.region}")
        await self._send_current_state(websocket, request.region)
        return True

    async def _broadcast(self, region: str, message: dict, kind: str) -> int:
        recipients = self._recipients(region)
        if not recipients:
            return 0

        # Send concurrently so one slow client cannot hold up the rest.
        # A failed send only loses this message; the subscription stays
        # until the client's read loop sees the disconnect.
        results = await asyncio.gather(*(self._send(ws, message, kind) for ws in recipients))
        delivered = sum(1 for ok in results if ok)

        logger.debug(f"Broadcast {kind} for {region} to {delivered}/{len(recipients)} client(s)")
        return delivered

    async def broadcast_snapshot(self, region: str, snapshot: Snapshot) -> int:
        """Send a snapshot to every connection watching region."""
        return await self._broadcast(region, snapshot.to_dict(), "snapshot")

    async def broadcast_analysis(self, region: str, analysis: TacticalAnalysis) -> int:
        """Send an analysis message to every connection watching region."""
        message = AnalysisMessage(region=region, analysis=analysis)
        return await self._broadcast(region, message.to_dict(), "analysis")

    async def handle_client(self, websocket: WebSocket, region: Optional[str] = None):
        """Handle a WebSocket client connection until it goes away."""
        await self.connect(websocket, region)

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                text = message.get("text")
                if text is None:
                    # Binary frames are not part of the protocol
                    logger.debug("Ignoring non-text client frame")
                    continue
                await self.handle_message(websocket, text)

        except WebSocketDisconnect:
            logger.debug("Client disconnected")
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
        finally:
            self.disconnect(websocket)


class Broadcaster:
    """
    Hands broadcasts from poller and analysis threads to the event loop.

    Worker threads wait (bounded) for each broadcast to finish, which keeps
    a region's snapshots going out in the order they were fetched.
    """

    def __init__(self, manager: ConnectionManager, timeout: float = 10.0):
        self.manager = manager
        self.timeout = timeout
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind(self, loop: asyncio.AbstractEventLoop):
        """Attach the running event loop (called from the app lifespan)."""
        self._loop = loop

    def unbind(self):
        self._loop = None

    def publish_snapshot(self, region: str, snapshot: Snapshot):
        self._submit(self.manager.broadcast_snapshot(region, snapshot))

    def publish_analysis(self, region: str, analysis: TacticalAnalysis):
        self._submit(self.manager.broadcast_analysis(region, analysis))

    def _submit(self, coro):
        loop = self._loop
        if loop is None or not loop.is_running():
            coro.close()
            logger.debug("Event loop not running, dropping broadcast")
            return

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            # Already on the loop thread; waiting here would deadlock
            loop.create_task(coro)
            return

        future = asyncio.run_coroutine_threadsafe(coro, loop)
        try:
            future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError:
            logger.warning(f"Broadcast did not finish within {self.timeout}s")
        except Exception as e:
            logger.error(f"Broadcast failed: {e}")
