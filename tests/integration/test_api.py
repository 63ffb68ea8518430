"""
Integration test: REST and WebSocket endpoints through the ASGI app.

Background pollers and schedulers are not started; caches are filled
directly and the OpenSky session / reasoning client are mocks.
"""

import json
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from backend.analysis import ReasoningServiceError
from backend.config import Settings
from backend.main import create_app


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def make_app(session):
    def _make(reasoning_client=None, **settings):
        settings.setdefault("region_ids", ("taiwan", "socal"))
        return create_app(
            settings=Settings(**settings),
            fetcher_session=session,
            reasoning_client=reasoning_client,
            start_background=False,
        )
    return _make


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def client(app):
    return TestClient(app)


class TestServiceEndpoints:
    """Test descriptor, health, regions and metrics."""

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert "websocket" in response.json()["endpoints"]

    def test_health(self, client):
        data = client.get("/api/health").json()

        assert data["status"] == "ok"
        assert data["regions"] == 2
        assert data["aiEnabled"] is False
        assert data["connections"] == 0
        assert isinstance(data["timestamp"], int)

    def test_health_ai_enabled(self, make_app):
        data = TestClient(make_app(reasoning_client=MagicMock())).get("/api/health").json()
        assert data["aiEnabled"] is True

    def test_regions(self, client):
        data = client.get("/api/regions").json()

        assert list(data) == ["taiwan", "socal"]
        assert data["taiwan"] == {
            "name": "Taiwan Strait",
            "minLat": 21.5,
            "maxLat": 26.0,
            "minLon": 117.0,
            "maxLon": 123.0,
        }

    def test_metrics_repeated_scrapes(self, client):
        client.get("/api/health")

        for _ in range(2):
            response = client.get("/metrics")
            assert response.status_code == 200
            assert "backend_http_requests_total" in response.text


class TestAircraftEndpoint:
    """Test GET /api/aircraft."""

    def test_unknown_region(self, client):
        response = client.get("/api/aircraft", params={"region": "mars"})

        assert response.status_code == 400
        assert "error" in response.json()

    def test_cached_snapshot(self, app, client, session, make_snapshot):
        snapshot = make_snapshot("socal", n=3)
        app.state.snapshot_cache.update(snapshot)

        response = client.get("/api/aircraft", params={"region": "socal"})

        assert response.status_code == 200
        assert response.json() == snapshot.to_dict()
        session.get.assert_not_called()

    def test_default_region(self, app, client, make_snapshot):
        app.state.snapshot_cache.update(make_snapshot("taiwan"))
        assert client.get("/api/aircraft").json()["region"] == "taiwan"

    def test_uncached_fetches_without_caching(self, app, client, session, make_state, make_response):
        session.get.return_value = make_response(200, {"states": [make_state(), make_state(icao24="def456")]})

        response = client.get("/api/aircraft", params={"region": "taiwan"})

        assert response.status_code == 200
        assert response.json()["count"] == 2
        assert app.state.snapshot_cache.get("taiwan") is None

    def test_rate_limited_without_cache(self, client, session, make_response):
        session.get.return_value = make_response(429, text="Too many requests")

        response = client.get("/api/aircraft", params={"region": "taiwan"})

        assert response.status_code == 503
        assert "error" in response.json()

    def test_upstream_failure(self, client, session, make_response):
        session.get.return_value = make_response(500, text="boom")

        response = client.get("/api/aircraft", params={"region": "taiwan"})

        assert response.status_code == 502
        assert "error" in response.json()


class TestAnalysisEndpoints:
    """Test GET /api/analysis and POST /api/analyze."""

    def test_placeholder_when_disabled(self, client):
        data = client.get("/api/analysis", params={"region": "taiwan"}).json()

        assert data["overall_threat_level"] == "NOMINAL"
        assert data["summary"].startswith("AI analysis disabled")

    def test_placeholder_awaiting(self, make_app):
        client = TestClient(make_app(reasoning_client=MagicMock()))
        data = client.get("/api/analysis", params={"region": "socal"}).json()

        assert data["summary"] == "Awaiting initial analysis..."
        assert data["region"] == "socal"
        assert data["next_update_priority"] == "NORMAL"

    def test_unknown_region(self, client):
        assert client.get("/api/analysis", params={"region": "mars"}).status_code == 400
        assert client.post("/api/analyze", params={"region": "mars"}).status_code == 400

    def test_analyze_without_key(self, app, client, make_snapshot):
        app.state.snapshot_cache.update(make_snapshot("taiwan"))

        response = client.post("/api/analyze", params={"region": "taiwan"})

        assert response.status_code == 503
        assert response.json() == {"error": "OPENAI_API_KEY not configured"}

    def test_analyze_without_data(self, make_app):
        client = TestClient(make_app(reasoning_client=MagicMock()))

        response = client.post("/api/analyze", params={"region": "taiwan"})

        assert response.status_code == 503
        assert response.json() == {"error": "No aircraft data available"}

    def test_analyze_success(self, make_app, make_snapshot):
        reasoning = MagicMock()
        reasoning.complete.return_value = json.dumps({"overall_threat_level": "HIGH", "threat_score": 71})
        app = make_app(reasoning_client=reasoning)
        app.state.snapshot_cache.update(make_snapshot("socal"))
        client = TestClient(app)

        response = client.post("/api/analyze", params={"region": "socal"})

        assert response.status_code == 200
        assert response.json()["overall_threat_level"] == "HIGH"
        cached = client.get("/api/analysis", params={"region": "socal"}).json()
        assert cached["threat_score"] == 71

    def test_analyze_service_failure(self, make_app, make_snapshot):
        reasoning = MagicMock()
        reasoning.complete.side_effect = ReasoningServiceError("API returned 500: overloaded")
        app = make_app(reasoning_client=reasoning)
        app.state.snapshot_cache.update(make_snapshot("taiwan"))

        response = TestClient(app).post("/api/analyze", params={"region": "taiwan"})

        assert response.status_code == 502
        assert "overloaded" in response.json()["error"]


class TestWebSocketEndpoint:
    """Test the /ws protocol end to end."""

    def test_initial_state_and_region_switch(self, app, make_snapshot):
        taiwan = make_snapshot("taiwan", n=1)
        socal = make_snapshot("socal", n=2)
        app.state.snapshot_cache.update(taiwan)
        app.state.snapshot_cache.update(socal)

        with TestClient(app) as client:
            with client.websocket_connect("/ws?region=socal") as ws:
                assert ws.receive_json() == socal.to_dict()

                ws.send_text(json.dumps({"action": "subscribe", "region": "taiwan"}))
                assert ws.receive_json() == taiwan.to_dict()

                # Unknown region is ignored; the connection stays usable
                ws.send_text(json.dumps({"action": "subscribe", "region": "mars"}))
                ws.send_text(json.dumps({"action": "subscribe", "region": "socal"}))
                assert ws.receive_json() == socal.to_dict()

    def test_broadcast_reaches_subscriber(self, app, make_snapshot):
        app.state.snapshot_cache.update(make_snapshot("taiwan", n=1))
        fresh = make_snapshot("taiwan", n=4, timestamp=1700000100)

        with TestClient(app) as client:
            with client.websocket_connect("/ws?region=taiwan") as ws:
                ws.receive_json()
                assert app.state.manager.subscriber_count("taiwan") == 1

                app.state.broadcaster.publish_snapshot("taiwan", fresh)
                assert ws.receive_json() == fresh.to_dict()

    def test_disconnect_unregisters(self, app, make_snapshot):
        app.state.snapshot_cache.update(make_snapshot("taiwan"))

        with TestClient(app) as client:
            with client.websocket_connect("/ws?region=taiwan") as ws:
                ws.receive_json()
                assert client.get("/api/health").json()["connections"] == 1
            assert app.state.manager.subscriber_count() == 0

    def test_binary_frame_ignored(self, app, make_snapshot):
        """Test that a binary frame neither closes the socket nor drops the subscription."""
        taiwan = make_snapshot("taiwan", n=1)
        socal = make_snapshot("socal", n=2)
        app.state.snapshot_cache.update(taiwan)
        app.state.snapshot_cache.update(socal)

        with TestClient(app) as client:
            with client.websocket_connect("/ws?region=taiwan") as ws:
                assert ws.receive_json() == taiwan.to_dict()

                ws.send_bytes(b"\x00\x01")
                ws.send_text(json.dumps({"action": "subscribe", "region": "socal"}))

                assert ws.receive_json() == socal.to_dict()
                assert app.state.manager.subscriber_count("socal") == 1
