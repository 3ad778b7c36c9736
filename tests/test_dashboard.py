"""
Test the dashboard API with a mocked proxy and in-memory runtime.
"""

import json
from typing import List
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi.testclient import TestClient as DashboardClient
from starlette.websockets import WebSocketDisconnect

from mcp_compose.core.activity import ActivityBus, ActivityStore
from mcp_compose.core.exceptions import UpstreamError
from mcp_compose.core.inspector import InspectorService
from mcp_compose.core.models import ActivityEvent, WorkloadStatus
from mcp_compose.dashboard.server import DashboardServer, parse_limit, parse_since, rewrite_docs_links

API_KEY = "dash-key"
AUTH = {"Authorization": f"Bearer {API_KEY}"}

INITIALIZE_RESULT = {
    "jsonrpc": "2.0",
    "id": 1,
    "result": {"capabilities": {"tools": {}}, "serverInfo": {"name": "weather"}},
}


class FakeProxy:
    """MockTransport handler recording requests and serving canned routes."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.fail = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail:
            raise httpx.ConnectError("refused", request=request)
        path = request.url.path
        if path == "/api/servers":
            return httpx.Response(200, json={"weather": {"protocol": "http", "status": "running"}})
        if path == "/weather/docs":
            return httpx.Response(200, html='<a href="/weather/openapi.json">spec</a>')
        if path.startswith("/api/containers/"):
            return httpx.Response(503, json={"error": "unavailable"})
        if path == "/api/custom/thing":
            return httpx.Response(201, json={"ok": True}, headers={"Mcp-Session-Id": "s-1"})
        if path == "/oauth/callback":
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(404, json={"error": "not found"})


class TestDashboardHelpers:
    """Test pure helpers."""

    def test_rewrite_docs_links(self):
        html = '<a href="/weather/openapi.json">spec</a> <a href="/other/openapi.json">x</a>'
        rewritten = rewrite_docs_links(html, "weather")
        assert '/api/server-openapi/weather' in rewritten
        assert '/other/openapi.json' in rewritten

    @pytest.mark.parametrize("value,expected", [(None, 100), ("5", 5), ("-1", 100), ("x", 100)])
    def test_parse_limit(self, value, expected):
        assert parse_limit(value) == expected

    def test_parse_since(self):
        assert parse_since("2024-05-01T00:00:00Z").tzinfo is not None
        assert parse_since("yesterday") is None
        assert parse_since(None) is None


class TestDashboardServer:
    """Test HTTP routes through the FastAPI test client."""

    @pytest.fixture(autouse=True)
    def _setup(self, manifest, runtime):
        self.runtime = runtime
        self.proxy = FakeProxy()
        self.store = ActivityStore("sqlite://")
        self.inspector = InspectorService("http://proxy:9876", API_KEY)
        self.inspector.call = AsyncMock(return_value=INITIALIZE_RESULT)
        self.dashboard = DashboardServer(
            manifest,
            runtime,
            proxy_url="http://proxy:9876",
            api_key=API_KEY,
            http=httpx.AsyncClient(transport=httpx.MockTransport(self.proxy)),
            inspector=self.inspector,
            bus=ActivityBus(store=self.store),
        )
        yield
        self.store.close()

    def client(self) -> DashboardClient:
        return DashboardClient(self.dashboard.app)

    def test_public_paths(self):
        with self.client() as client:
            health = client.get("/health")
            assert health.status_code == 200
            assert health.json()["status"] == "healthy"
            assert health.json()["activity_store"] is True

            index = client.get("/")
            assert index.status_code == 200
            assert "MCP-Compose Dashboard" in index.text

    def test_api_requires_bearer(self):
        with self.client() as client:
            response = client.get("/api/servers")
            assert response.status_code == 401
            assert response.json() == {"error": "Unauthorized"}

            response = client.get("/api/servers", headers={"Authorization": "Bearer wrong"})
            assert response.status_code == 401

    def test_discovery_relayed_with_proxy_key(self):
        with self.client() as client:
            response = client.get("/api/servers", headers=AUTH)

        assert response.status_code == 200
        assert response.json()["weather"]["status"] == "running"
        assert self.proxy.requests[0].headers["Authorization"] == f"Bearer {API_KEY}"

    def test_discovery_head_skips_proxy(self):
        with self.client() as client:
            response = client.head("/api/status", headers=AUTH)
        assert response.status_code == 200
        assert self.proxy.requests == []

    def test_activity_intake_validation(self):
        with self.client() as client:
            bad_json = client.post("/api/activity", content=b"{nope", headers=AUTH)
            assert bad_json.status_code == 400
            assert bad_json.json() == {"error": "Invalid JSON"}

            bad_level = client.post("/api/activity", json={"level": "LOUD", "message": "x"}, headers=AUTH)
            assert bad_level.status_code == 400

            accepted = client.post(
                "/api/activity",
                json={"level": "INFO", "type": "tool", "message": "tools/call read_file", "server": "filesystem"},
                headers=AUTH,
            )
            assert accepted.status_code == 202
            assert accepted.json() == {"status": "accepted"}

    def test_activity_history_and_stats(self):
        self.store.record(ActivityEvent(level="ERROR", type="error", message="upstream failed"))
        self.store.record(ActivityEvent(type="request", message="GET /api/servers"))

        with self.client() as client:
            history = client.get("/api/activity/history?limit=1", headers=AUTH).json()
            stats = client.get("/api/activity/stats", headers=AUTH).json()

        assert history["count"] == 1
        assert history["activities"][0]["message"] == "GET /api/servers"
        assert stats["errorsToday"] == 1

    def test_activity_history_without_store(self, manifest, runtime):
        dashboard = DashboardServer(
            manifest,
            runtime,
            http=httpx.AsyncClient(transport=httpx.MockTransport(self.proxy)),
            bus=ActivityBus(),
        )
        with DashboardClient(dashboard.app) as client:
            response = client.get("/api/activity/history")
        assert response.status_code == 503

    def test_server_start_not_available(self):
        with self.client() as client:
            response = client.post("/api/servers/start", json={"server": "weather"}, headers=AUTH)
        assert response.status_code == 501
        assert "mcp-compose start weather" in response.json()["error"]

    def test_server_stop_and_restart(self):
        self.runtime.containers["mcp-compose-weather"] = WorkloadStatus.RUNNING
        with self.client() as client:
            restart = client.post("/api/servers/restart", json={"server": "weather"}, headers=AUTH)
            stop = client.post("/api/servers/stop", json={"server": "weather"}, headers=AUTH)

        assert restart.json()["success"] == "Container mcp-compose-weather restarted successfully"
        assert stop.json() == {"success": "Container mcp-compose-weather stopped successfully", "runtime": "fake"}
        assert self.runtime.restarted == ["mcp-compose-weather"]
        assert self.runtime.stopped == ["mcp-compose-weather"]

    def test_server_action_errors(self):
        with self.client() as client:
            missing = client.post("/api/servers/stop", json={}, headers=AUTH)
            assert missing.status_code == 400
            assert missing.json() == {"error": "Server name required"}

            not_found = client.post("/api/servers/restart", json={"server": "ghost"}, headers=AUTH)
            assert not_found.status_code == 404

    def test_server_docs_rewritten(self):
        with self.client() as client:
            response = client.get("/api/server-docs/weather", headers=AUTH)
        assert '/api/server-openapi/weather' in response.text

    def test_server_direct(self):
        with self.client() as client:
            found = client.get("/api/server-direct/weather", headers=AUTH)
            missing = client.get("/api/server-direct/ghost", headers=AUTH)
        assert found.json() == {"protocol": "http", "status": "running"}
        assert missing.status_code == 404

    def test_container_logs_fall_back_to_engine(self):
        self.runtime.containers["mcp-compose-weather"] = WorkloadStatus.RUNNING
        self.runtime.log_text["mcp-compose-weather"] = "ready\nERROR lost connection\n"

        with self.client() as client:
            response = client.get("/api/containers/weather/logs?tail=10", headers=AUTH)

        body = response.json()
        assert body["container"] == "mcp-compose-weather"
        assert [entry["level"] for entry in body["logs"]] == ["info", "error"]

    def test_container_stats_missing(self):
        with self.client() as client:
            response = client.get("/api/containers/ghost/stats", headers=AUTH)
        assert response.status_code == 404
        assert response.json()["runtime"] == "fake"

    def test_audit_falls_back_when_proxy_down(self):
        self.proxy.fail = True
        with self.client() as client:
            entries = client.get("/api/audit/entries", headers=AUTH).json()
            stats = client.get("/api/audit/stats", headers=AUTH).json()
        assert entries == {"entries": [], "total": 0}
        assert stats["success_rate"] == 100.0

    def test_catch_all_relays(self):
        with self.client() as client:
            response = client.post("/api/custom/thing?x=1", json={"a": 1}, headers=AUTH)

        assert response.status_code == 201
        assert response.headers["mcp-session-id"] == "s-1"
        forwarded = self.proxy.requests[0]
        assert forwarded.method == "POST"
        assert forwarded.url.params["x"] == "1"
        assert json.loads(forwarded.content) == {"a": 1}

    def test_oauth_callback_renders_when_proxy_unreachable(self):
        self.proxy.fail = True
        with self.client() as client:
            response = client.get("/oauth/callback?code=CODE123&state=S")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert "CODE123" in response.text
        assert 'action="/oauth/token"' in response.text

    def test_oauth_callback_renders_on_upstream_failure(self):
        with self.client() as client:
            response = client.get("/oauth/callback?code=CODE123&state=S")

        assert response.status_code == 200
        assert "Authorization Successful" in response.text
        assert "http://testserver/oauth/callback" in response.text
        assert self.proxy.requests[0].url.path == "/oauth/callback"
        assert "authorization" not in self.proxy.requests[0].headers

    def test_inspector_flow(self):
        with self.client() as client:
            health = client.post("/api/inspector/connect", json={"server": "__healthcheck__"}, headers=AUTH)
            assert health.json() == {"status": "available"}

            connected = client.post("/api/inspector/connect", json={"server": "weather"}, headers=AUTH).json()
            session_id = connected["sessionId"]
            assert connected["result"]["capabilities"] == {"tools": {}}

            self.inspector.call.return_value = {"jsonrpc": "2.0", "id": 2, "result": {"tools": []}}
            result = client.post(
                "/api/inspector/request",
                json={"sessionId": session_id, "method": "tools/list"},
                headers=AUTH,
            )
            assert result.json()["result"] == {"tools": []}

            sessions = client.get("/api/inspector/sessions", headers=AUTH).json()
            assert sessions["count"] == 1

            done = client.post("/api/inspector/disconnect", json={"sessionId": session_id}, headers=AUTH)
            assert done.json() == {"status": "disconnected"}

            missing = client.post("/api/inspector/request", json={"sessionId": session_id}, headers=AUTH)
            assert missing.status_code == 400

    def test_task_scheduler_health_unavailable(self):
        self.inspector.create = AsyncMock(side_effect=UpstreamError("unreachable", "proxy down"))
        with self.client() as client:
            response = client.get("/api/task-scheduler/health", headers=AUTH)
        assert response.status_code == 503
        assert response.json()["available"] is False

    def test_websocket_requires_token(self):
        with self.client() as client:
            with pytest.raises(WebSocketDisconnect):
                with client.websocket_connect("/ws/metrics") as websocket:
                    websocket.receive_text()

    def test_activity_websocket_welcome(self):
        with self.client() as client:
            with client.websocket_connect(f"/ws/activity?token={API_KEY}") as websocket:
                welcome = websocket.receive_json()
        assert welcome["type"] == "connection"
        assert "successfully registered" in welcome["message"]
