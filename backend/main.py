"""
FastAPI backend - Swarm C2 realtime hub.

Serves:
- WebSocket endpoint for per-region aircraft snapshots and analyses
- REST API for regions, current aircraft, and tactical analysis
- Prometheus metrics endpoint
"""

import os
import time
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import requests
import uvicorn
from fastapi import FastAPI, WebSocket, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from contracts.validation import Region, TacticalAnalysis
from backend.analysis import (
    AnalysisEngine,
    AnalysisSchedulerGroup,
    AnalysisUnavailableError,
    NoDataError,
    ReasoningClient,
    ReasoningServiceError,
)
from backend.cache import AnalysisCache, SnapshotCache
from backend.config import Settings, load_settings
from backend.fetcher import OpenSkyFetcher, RateLimitedError, UpstreamError
from backend.metrics import get_metrics, HTTP_REQUESTS
from backend.poller import PollerGroup
from backend.websocket import Broadcaster, ConnectionManager

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(
    settings: Optional[Settings] = None,
    fetcher_session: Optional[requests.Session] = None,
    reasoning_client: Optional[ReasoningClient] = None,
    start_background: bool = True,
) -> FastAPI:
    """
    Build the application and its shared state.

    Args:
        settings: Settings to use; loaded from the environment if omitted
        fetcher_session: requests session for OpenSky (token exchange included)
        reasoning_client: client for the reasoning service; built from
            settings when omitted
        start_background: start pollers and analysis schedulers in the lifespan
    """
    settings = settings or load_settings()
    regions = settings.regions

    snapshot_cache = SnapshotCache()
    analysis_cache = AnalysisCache()
    manager = ConnectionManager(regions, settings.default_region, snapshot_cache, analysis_cache)
    broadcaster = Broadcaster(manager)

    fetcher = OpenSkyFetcher.from_settings(settings, snapshot_cache, session=fetcher_session)
    if reasoning_client is None:
        reasoning_client = ReasoningClient.from_settings(settings)
    engine = AnalysisEngine(
        regions,
        snapshot_cache,
        analysis_cache,
        client=reasoning_client,
        on_analysis=broadcaster.publish_analysis,
    )

    pollers = PollerGroup(
        regions,
        fetcher,
        snapshot_cache,
        on_snapshot=broadcaster.publish_snapshot,
        interval=settings.poll_interval,
    )
    schedulers = AnalysisSchedulerGroup(
        list(regions),
        engine,
        manager.subscriber_count,
        interval=settings.analysis_interval,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("=" * 50)
        logger.info("Swarm C2 Backend - Starting")
        logger.info("=" * 50)

        if settings.has_oauth:
            logger.info(f"OpenSky OAuth2 enabled (client {settings.opensky_client_id[:8]}...)")
        elif settings.has_basic_auth:
            logger.info("OpenSky basic auth enabled")
        else:
            logger.warning("No OpenSky credentials, using anonymous access (stricter rate limits)")
        logger.info(
            f"Regions: {', '.join(regions)} | poll every {settings.poll_interval}s, "
            f"min request gap {settings.min_request_gap}s"
        )
        if not settings.ai_enabled:
            logger.warning("OPENAI_API_KEY not set, AI analysis disabled")

        # Pollers and schedulers publish from their own threads
        broadcaster.bind(asyncio.get_running_loop())

        if start_background:
            pollers.start()
            schedulers.start()

        yield

        # Cleanup
        logger.info("Shutting down...")
        schedulers.stop()
        pollers.stop()
        broadcaster.unbind()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="Swarm C2 Backend API",
        description="Realtime aircraft picture with AI tactical analysis",
        version=VERSION,
        lifespan=lifespan
    )

    app.state.settings = settings
    app.state.snapshot_cache = snapshot_cache
    app.state.analysis_cache = analysis_cache
    app.state.fetcher = fetcher
    app.state.engine = engine
    app.state.manager = manager
    app.state.broadcaster = broadcaster
    app.state.pollers = pollers
    app.state.schedulers = schedulers

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Middleware to track HTTP requests."""
        response = await call_next(request)
        HTTP_REQUESTS.labels(
            method=request.method,
            path=request.url.path,
            status=response.status_code
        ).inc()
        return response

    def resolve_region(region: Optional[str]) -> tuple[Optional[Region], Optional[JSONResponse]]:
        """Map the ?region= parameter to a Region, or a 400 response."""
        region_id = region or settings.default_region
        if region_id not in regions:
            return None, _error(400, f"Invalid region: {region_id}")
        return regions[region_id], None

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": "Swarm C2 Backend",
            "version": VERSION,
            "endpoints": {
                "websocket": "/ws?region=<id>",
                "regions": "/api/regions",
                "aircraft": "/api/aircraft?region=<id>",
                "analysis": "/api/analysis?region=<id>",
                "analyze": "/api/analyze?region=<id>",
                "health": "/api/health",
                "metrics": "/metrics"
            }
        }

    @app.get("/api/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "timestamp": int(time.time()),
            "regions": len(regions),
            "aiEnabled": engine.enabled,
            "connections": manager.subscriber_count(),
        }

    @app.get("/api/regions")
    async def get_regions():
        """Configured regions keyed by id."""
        return {region_id: region.to_dict() for region_id, region in regions.items()}

    @app.get("/api/aircraft")
    def get_aircraft(region: Optional[str] = None):
        """
        Current snapshot for a region.

        Served from the cache; before the first poll lands, falls back to a
        one-off fetch that is returned but not cached.
        """
        selected, error = resolve_region(region)
        if error:
            return error

        snapshot = snapshot_cache.get(selected.id)
        if snapshot is not None:
            return snapshot.to_dict()

        try:
            result = fetcher.fetch(selected)
        except RateLimitedError as e:
            logger.warning(f"[{selected.id}] {e}")
            return _error(503, "OpenSky rate limited, try again shortly")
        except UpstreamError as e:
            logger.error(f"[{selected.id}] Error fetching OpenSky data: {e}")
            return _error(502, str(e))

        return result.snapshot.to_dict()

    @app.get("/api/analysis")
    async def get_analysis(region: Optional[str] = None):
        """Latest analysis for a region, or a placeholder until one exists."""
        selected, error = resolve_region(region)
        if error:
            return error

        analysis = analysis_cache.get(selected.id)
        if analysis is None:
            analysis = TacticalAnalysis.placeholder(selected.id, ai_enabled=engine.enabled)
        return analysis.to_dict()

    @app.post("/api/analyze")
    def analyze(region: Optional[str] = None):
        """Run an analysis now; the result is cached and broadcast."""
        selected, error = resolve_region(region)
        if error:
            return error

        try:
            analysis = engine.analyze(selected.id)
        except (AnalysisUnavailableError, NoDataError) as e:
            return _error(503, str(e))
        except ReasoningServiceError as e:
            logger.error(f"[{selected.id}] AI analysis error: {e}")
            return _error(502, str(e))

        return analysis.to_dict()

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, region: Optional[str] = None):
        """
        WebSocket endpoint for real-time region updates.

        Protocol:
        - On connect: sends the region's cached snapshot and analysis, if any
        - On every poll: sends the fresh snapshot for the subscribed region
        - On every analysis: {"type": "analysis", "region": ..., "analysis": {...}}
        - Client may send {"action": "subscribe", "region": "<id>"} to switch
        """
        await manager.handle_client(websocket, region)

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return await get_metrics()

    return app


app = create_app()


def run():
    """Console entry point."""
    settings = app.state.settings
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    run()
