"""
Test the MCP reverse proxy and its upstream transports.
"""

import asyncio
import json
from typing import List
from unittest.mock import AsyncMock

import httpx
import pytest
from aiohttp import test_utils, web

from mcp_compose.core.activity.bus import ActivityPublisher
from mcp_compose.core.manifest import ServerConfig, load_manifest
from mcp_compose.core.models import ActivityEvent, WorkloadStatus
from mcp_compose.core.proxy import OAuthMediator, ProxyServer, UpstreamForwarder, UpstreamResponse, build_openapi
from mcp_compose.core.proxy.server import format_uptime, render_docs

TOOLS_LIST = {
    "jsonrpc": "2.0",
    "id": "tools-1",
    "result": {
        "tools": [
            {
                "name": "get_forecast",
                "description": "Forecast for a city",
                "inputSchema": {"type": "object", "properties": {"city": {"type": "string"}}},
            },
            {"description": "nameless tools are ignored"},
        ]
    },
}


class RecordingPublisher(ActivityPublisher):
    def __init__(self):
        self.events: List[ActivityEvent] = []

    def publish(self, event: ActivityEvent) -> None:
        self.events.append(event)


def json_response(body, status=200, headers=None) -> UpstreamResponse:
    return UpstreamResponse(status, json.dumps(body).encode(), {"Content-Type": "application/json", **(headers or {})})


class TestProxyHelpers:
    """Test pure helpers."""

    def test_build_openapi(self):
        document = build_openapi("weather", TOOLS_LIST["result"]["tools"][:1])

        operation = document["paths"]["/get_forecast"]["post"]
        assert document["openapi"] == "3.1.0"
        assert document["info"]["title"] == "Weather MCP Server"
        assert operation["operationId"] == "get_forecast"
        assert operation["summary"] == "Get Forecast"
        assert operation["requestBody"]["content"]["application/json"]["schema"]["properties"]["city"]
        assert document["components"]["securitySchemes"]["HTTPBearer"]["scheme"] == "bearer"

    def test_render_docs_escapes(self):
        page = render_docs("weather", [{"name": "<b>x</b>", "description": "a & b"}])
        assert "&lt;b&gt;x&lt;/b&gt;" in page
        assert "a &amp; b" in page
        assert "/weather/openapi.json" in page

    def test_render_docs_error(self):
        assert "Tool discovery failed: boom" in render_docs("weather", [], "boom")

    @pytest.mark.parametrize("seconds,expected", [(5, "5s"), (65, "1m5s"), (3725, "1h2m5s")])
    def test_format_uptime(self, seconds, expected):
        assert format_uptime(seconds) == expected


class TestProxyServer:
    """Test the proxy's HTTP surface."""

    @pytest.fixture(autouse=True)
    def _setup(self, manifest, runtime):
        self.manifest = manifest
        self.runtime = runtime
        self.runtime.containers["mcp-compose-filesystem"] = WorkloadStatus.RUNNING
        self.publisher = RecordingPublisher()

    def make_proxy(self, api_key=None) -> ProxyServer:
        return ProxyServer(self.manifest, self.runtime, api_key=api_key, publisher=self.publisher)

    def client(self, proxy: ProxyServer) -> test_utils.TestClient:
        return test_utils.TestClient(test_utils.TestServer(proxy.create_app()))

    @pytest.mark.asyncio
    async def test_health_and_index(self):
        async with self.client(self.make_proxy(api_key="secret")) as client:
            response = await client.get("/health")
            assert response.status == 200
            assert (await response.json())["status"] == "healthy"

            response = await client.get("/")
            text = await response.text()
            assert response.status == 200
            assert "/weather/docs" in text

    @pytest.mark.asyncio
    async def test_bearer_required(self):
        proxy = self.make_proxy(api_key="secret")
        async with self.client(proxy) as client:
            response = await client.get("/api/servers")
            assert response.status == 401
            assert await response.json() == {"error": "Unauthorized"}

            response = await client.get("/api/servers", headers={"Authorization": "Bearer wrong"})
            assert response.status == 401

            response = await client.get("/api/servers", headers={"Authorization": "Bearer secret"})
            assert response.status == 200

            response = await client.get("/api/audit/entries", headers={"Authorization": "Bearer secret"})
            entries = (await response.json())["entries"]

        assert [e["event"] for e in entries] == ["api_key_auth", "api_key_auth"]
        assert entries[0]["error"] == "invalid bearer token"
        assert entries[1]["error"] == "missing bearer token"
        assert proxy.audit.stats()["success_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_manifest_key_used_when_enabled(self):
        self.manifest.proxy_auth.enabled = True
        self.manifest.proxy_auth.api_key = "from-manifest"
        assert self.make_proxy().api_key == "from-manifest"

    @pytest.mark.asyncio
    async def test_preflight(self):
        async with self.client(self.make_proxy(api_key="secret")) as client:
            response = await client.options("/weather")
            assert response.status == 200
            assert response.headers["Access-Control-Allow-Origin"] == "*"

    @pytest.mark.asyncio
    async def test_servers_and_status(self):
        async with self.client(self.make_proxy()) as client:
            servers = await (await client.get("/api/servers")).json()
            status = await (await client.get("/api/status")).json()
            connections = await (await client.get("/api/connections")).json()

        assert servers["filesystem"]["containerStatus"] == "running"
        assert servers["weather"]["containerStatus"] == "stopped"
        assert servers["weather"]["transport"] == "http"
        assert servers["notes"]["transport"] == "tcp"
        assert servers["filesystem"]["transport"] == "stdio"
        assert servers["weather"]["configHttpPort"] == 8000
        assert status["totalConfiguredServers"] == 3
        assert status["runningContainers"] == 1
        assert connections["totalActiveManagedConnections"] == 0

    @pytest.mark.asyncio
    async def test_forward_emits_activity(self):
        proxy = self.make_proxy()
        proxy.forwarder.forward = AsyncMock(return_value=json_response(
            {"jsonrpc": "2.0", "id": 1, "result": {}}, headers={"Mcp-Session-Id": "s-1"}
        ))
        payload = {"jsonrpc": "2.0", "id": 1, "method": "tools/call", "params": {"name": "get_forecast"}}

        async with self.client(proxy) as client:
            response = await client.post("/weather", json=payload)
            assert response.status == 200
            assert response.headers["Mcp-Session-Id"] == "s-1"
            assert (await response.json())["result"] == {}

        name, server, body = proxy.forwarder.forward.call_args.args[:3]
        assert name == "weather"
        assert server is self.manifest.servers["weather"]
        assert json.loads(body) == payload
        assert self.publisher.events[-1].type == "tool"
        assert self.publisher.events[-1].server == "weather"

    @pytest.mark.asyncio
    async def test_forward_failure_emits_error(self):
        proxy = self.make_proxy()
        proxy.forwarder.forward = AsyncMock(return_value=json_response(
            {"jsonrpc": "2.0", "id": 1, "error": {"code": -32003, "message": "down"}}, status=502
        ))

        async with self.client(proxy) as client:
            response = await client.post("/weather", data=b'{"jsonrpc":"2.0","id":1,"method":"ping"}')
            assert response.status == 502

        event = self.publisher.events[-1]
        assert event.level == "ERROR"
        assert event.message == "ping to weather failed"

    @pytest.mark.asyncio
    async def test_unknown_server(self):
        async with self.client(self.make_proxy()) as client:
            response = await client.post("/ghost", json={"jsonrpc": "2.0", "id": 1, "method": "ping"})
            assert response.status == 404
            assert await response.json() == {"error": "Server 'ghost' not found"}

    @pytest.mark.asyncio
    async def test_openapi_and_docs(self):
        proxy = self.make_proxy()
        proxy.forwarder.forward = AsyncMock(return_value=json_response(TOOLS_LIST))

        async with self.client(proxy) as client:
            document = await (await client.get("/weather/openapi.json")).json()
            docs = await (await client.get("/weather/docs")).text()

        assert list(document["paths"]) == ["/get_forecast"]
        assert "Forecast for a city" in docs

    @pytest.mark.asyncio
    async def test_docs_render_discovery_error(self):
        proxy = self.make_proxy()
        proxy.forwarder.forward = AsyncMock(return_value=json_response(
            {"jsonrpc": "2.0", "id": 1, "error": {"code": -32601, "message": "Method not found"}}
        ))

        async with self.client(proxy) as client:
            response = await client.get("/weather/docs")
            document = await (await client.get("/weather/openapi.json")).json()
            assert response.status == 200
            assert "Tool discovery failed: Method not found" in await response.text()

        assert document["paths"] == {}

    @pytest.mark.asyncio
    async def test_static_logs(self):
        self.runtime.log_text["mcp-compose-filesystem"] = "ready\nERROR lost\n"
        async with self.client(self.make_proxy()) as client:
            response = await client.get("/api/containers/filesystem/logs", params={"tail": "5"})
            body = await response.json()
            missing = await client.get("/api/containers/ghost/logs")

        assert body["container"] == "mcp-compose-filesystem"
        assert [entry["content"] for entry in body["logs"]] == ["ready", "ERROR lost"]
        assert body["tail"] == 5
        assert missing.status == 404

    @pytest.mark.asyncio
    async def test_follow_logs_sse(self):
        self.runtime.log_text["mcp-compose-filesystem"] = "one\ntwo\n"
        async with self.client(self.make_proxy()) as client:
            response = await client.get("/api/containers/mcp-compose-filesystem/logs", params={"follow": "true"})
            text = await response.text()

        assert response.headers["Content-Type"] == "text/event-stream"
        assert text.startswith("event: connected")
        assert text.count("event: log") == 2
        assert "event: completed" in text

    @pytest.mark.asyncio
    async def test_container_stats(self):
        async with self.client(self.make_proxy()) as client:
            found = await client.get("/api/containers/filesystem/stats")
            missing = await client.get("/api/containers/weather/stats")
            assert (await found.json())["cpu_perc"] == "1.00%"
            assert missing.status == 404

    @pytest.mark.asyncio
    async def test_reload_from_disk(self, manifest_file):
        manifest = load_manifest(manifest_file)
        proxy = ProxyServer(manifest, self.runtime, publisher=self.publisher)
        manifest_file.write_text(manifest_file.read_text().replace(
            "environments:",
            "  extra:\n    image: mcp/extra:latest\nenvironments:",
        ))

        async with self.client(proxy) as client:
            response = await client.post("/api/reload")
            body = await response.json()

        assert response.status == 200
        assert body["status"] == "success"
        assert body["changes"]["started"] == ["extra"]
        assert "extra" in proxy.manifest.servers
        assert self.runtime.started[-1].name == "mcp-compose-extra"

    @pytest.mark.asyncio
    async def test_oauth_disabled(self):
        async with self.client(self.make_proxy()) as client:
            status = await client.get("/api/oauth/status")
            authorize = await client.get("/oauth/authorize")
            assert await status.json() == {"oauth_enabled": False}
            assert authorize.status == 404

    @pytest.mark.asyncio
    async def test_oauth_callback_renders_without_oauth(self):
        proxy = self.make_proxy(api_key="secret")
        async with self.client(proxy) as client:
            response = await client.get("/oauth/callback", params={"code": "CODE123", "state": "S"})
            page = await response.text()

        assert response.status == 200
        assert response.content_type == "text/html"
        assert "CODE123" in page
        assert 'action="/oauth/token"' in page
        assert proxy.audit.entries()["entries"][0]["event"] == "authorization_callback"

    @pytest.mark.asyncio
    async def test_oauth_callback_renders_when_issuer_unreachable(self):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        mediator = OAuthMediator(
            "http://auth.example:8080", client=httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        )
        proxy = ProxyServer(self.manifest, self.runtime, api_key="secret", oauth=mediator)
        async with self.client(proxy) as client:
            response = await client.get("/oauth/callback", params={"code": "CODE123", "state": "S"})
            page = await response.text()
        await mediator.client.aclose()

        assert response.status == 200
        assert "CODE123" in page
        assert "Authorization Successful" in page

    @pytest.mark.asyncio
    async def test_audit_pagination_validation(self):
        async with self.client(self.make_proxy()) as client:
            response = await client.get("/api/audit/entries", params={"limit": "many"})
            assert response.status == 400


class TestUpstreamForwarder:
    """Test the three upstream transports against local endpoints."""

    def setup_method(self):
        self.forwarder = UpstreamForwarder(runtime=None, read_timeout=2, stdio_timeout=2)

    @pytest.mark.asyncio
    async def test_parse_error(self):
        response = await self.forwarder.forward("x", ServerConfig(command="cat"), b"{nope")
        assert response.status == 400
        assert json.loads(response.body)["error"]["code"] == -32700

    @pytest.mark.asyncio
    async def test_http_transport(self):
        received = {}

        async def handler(request):
            received["session"] = request.headers.get("Mcp-Session-Id")
            received["body"] = await request.json()
            return web.json_response({"jsonrpc": "2.0", "id": 1, "result": {"ok": True}},
                                     headers={"Mcp-Session-Id": "upstream-session"})

        app = web.Application()
        app.router.add_post("/mcp", handler)
        upstream = test_utils.TestServer(app, host="127.0.0.1")
        await upstream.start_server()
        server = ServerConfig(command="unused", protocol="http", http_port=upstream.port, http_path="/mcp")
        try:
            response = await self.forwarder.forward(
                "local", server, b'{"jsonrpc":"2.0","id":1,"method":"ping"}', {"Mcp-Session-Id": "client-session"}
            )
        finally:
            await self.forwarder.close()
            await upstream.close()

        assert response.status == 200
        assert json.loads(response.body)["result"] == {"ok": True}
        assert response.headers["Mcp-Session-Id"] == "upstream-session"
        assert received["session"] == "client-session"
        assert self.forwarder.stats()["mcp_sessions"] == 1
        assert self.forwarder.active == {}

    @pytest.mark.asyncio
    async def test_tcp_transport_skips_noise(self):
        async def handle(reader, writer):
            request = json.loads(await reader.readline())
            writer.write(b"starting up\n")
            writer.write(json.dumps({"jsonrpc": "2.0", "id": "other", "result": {}}).encode() + b"\n")
            writer.write(json.dumps({"jsonrpc": "2.0", "id": request["id"], "result": {"pong": True}}).encode() + b"\n")
            await writer.drain()
            writer.close()

        tcp = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = tcp.sockets[0].getsockname()[1]
        server = ServerConfig(command="unused", stdio_hoster_port=port)
        try:
            response = await self.forwarder.forward("local", server, b'{"jsonrpc":"2.0","id":7,"method":"ping"}')
        finally:
            tcp.close()
            await tcp.wait_closed()

        assert response.status == 200
        assert json.loads(response.body) == {"jsonrpc": "2.0", "id": 7, "result": {"pong": True}}

    @pytest.mark.asyncio
    async def test_tcp_timeout(self):
        async def handle(reader, writer):
            await reader.readline()
            await reader.read()
            writer.close()

        forwarder = UpstreamForwarder(runtime=None, read_timeout=2, stdio_timeout=0.05)
        tcp = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = tcp.sockets[0].getsockname()[1]
        try:
            response = await forwarder.forward(
                "slow", ServerConfig(command="unused", stdio_hoster_port=port),
                b'{"jsonrpc":"2.0","id":1,"method":"ping"}',
            )
        finally:
            tcp.close()
            await tcp.wait_closed()

        assert response.status == 504
        assert json.loads(response.body)["error"]["code"] == -32000
        assert forwarder.failed_requests == 1

    @pytest.mark.asyncio
    async def test_stdio_process(self):
        # cat echoes the request, whose id matches
        response = await self.forwarder.forward(
            "echo", ServerConfig(command="cat"), b'{"jsonrpc":"2.0","id":3,"method":"ping"}'
        )
        assert response.status == 200
        assert json.loads(response.body)["id"] == 3

    @pytest.mark.asyncio
    async def test_stdio_notification_returns_accepted(self):
        response = await self.forwarder.forward(
            "echo", ServerConfig(command="cat"), b'{"jsonrpc":"2.0","method":"notifications/initialized"}'
        )
        assert response.status == 202

    @pytest.mark.asyncio
    async def test_missing_command(self):
        response = await self.forwarder.forward(
            "ghost", ServerConfig(command="definitely-not-a-real-binary-xyz"), b'{"jsonrpc":"2.0","id":1}'
        )
        assert response.status == 502
        assert json.loads(response.body)["error"]["code"] == -32003
