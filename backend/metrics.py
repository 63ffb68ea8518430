"""
Prometheus metrics for the backend service.
"""

from fastapi.responses import Response
from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


UPSTREAM_POLLS = Counter(
    'backend_upstream_polls_total',
    'OpenSky fetch attempts',
    ['region', 'status']  # success, rate_limited, auth_failed, error
)

UPSTREAM_LATENCY = Histogram(
    'backend_upstream_latency_seconds',
    'OpenSky request duration'
)

RATE_LIMIT_WAIT = Histogram(
    'backend_rate_limit_wait_seconds',
    'Time spent waiting for the global OpenSky request gap',
    buckets=[0, 0.1, 0.5, 1.0, 2.0, 3.0, 4.0, 6.0, 10.0]
)

TOKEN_REFRESHES = Counter(
    'backend_token_refreshes_total',
    'OAuth2 token refresh attempts',
    ['status']
)

AIRCRAFT_TRACKED = Gauge(
    'backend_aircraft_tracked',
    'Aircraft in the latest snapshot',
    ['region']
)

ANALYSIS_RUNS = Counter(
    'backend_analysis_runs_total',
    'Tactical analysis attempts',
    ['region', 'outcome']  # success, degraded, error, skipped
)

WEBSOCKET_CONNECTIONS = Gauge(
    'backend_websocket_connections',
    'Active WebSocket connections'
)

WEBSOCKET_MESSAGES_SENT = Counter(
    'backend_websocket_messages_sent_total',
    'Messages sent by type',
    ['type']  # snapshot, analysis
)

WEBSOCKET_SEND_FAILURES = Counter(
    'backend_websocket_send_failures_total',
    'Failed sends to individual clients'
)

HTTP_REQUESTS = Counter(
    'backend_http_requests_total',
    'HTTP requests',
    ['method', 'path', 'status']
)


async def get_metrics():
    """FastAPI handler for /metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
