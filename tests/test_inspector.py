"""
Test inspector sessions and the task scheduler mapping.
"""

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from aiohttp import test_utils, web

from mcp_compose.core.exceptions import ConfigError, NotFoundError, UpstreamError
from mcp_compose.core.inspector import (
    InspectorService,
    TaskSchedulerDispatcher,
    UnsupportedOperation,
    map_scheduler_call,
    unwrap_tool_result,
)

INITIALIZE_RESULT = {
    "jsonrpc": "2.0",
    "id": 1,
    "result": {
        "protocolVersion": "2024-11-05",
        "capabilities": {"tools": {"listChanged": True}},
        "serverInfo": {"name": "echo", "version": "1.0"},
    },
}


class TestSchedulerMapping:
    """Test REST to tool translation."""

    @pytest.mark.parametrize("method,path,expected", [
        ("GET", "/tasks", ("list_tasks", {})),
        ("GET", "tasks/", ("list_tasks", {})),
        ("POST", "/tasks/7/run", ("run_task", {"id": "7"})),
        ("POST", "/tasks/7/enable", ("enable_task", {"id": "7"})),
        ("POST", "/tasks/7/disable", ("disable_task", {"id": "7"})),
        ("GET", "/tasks/7/output", ("get_run_output", {"task_id": "7"})),
        ("GET", "/runs/status", ("list_run_status", {})),
        ("get", "/metrics", ("get_metrics", {})),
    ])
    def test_mapped(self, method, path, expected):
        assert map_scheduler_call(method, path) == expected

    def test_add_task_passes_body(self):
        tool, arguments = map_scheduler_call("POST", "/tasks", {"name": "backup", "schedule": "@daily"})
        assert tool == "add_task"
        assert arguments == {"name": "backup", "schedule": "@daily"}

    @pytest.mark.parametrize("method,path", [
        ("DELETE", "/tasks/7"),
        ("GET", "/tasks/7/run"),
        ("GET", "/unknown"),
    ])
    def test_unsupported(self, method, path):
        with pytest.raises(UnsupportedOperation, match="Unsupported operation"):
            map_scheduler_call(method, path)

    def test_unsupported_is_config_error(self):
        assert issubclass(UnsupportedOperation, ConfigError)

    def test_unwrap_text_content(self):
        result = {"content": [{"type": "text", "text": '{"tasks": []}'}]}
        assert unwrap_tool_result(result) == {"tasks": []}

    def test_unwrap_leaves_non_json(self):
        result = {"content": [{"type": "text", "text": "plain"}]}
        assert unwrap_tool_result(result) is result
        assert unwrap_tool_result("x") == "x"


class TestInspectorSessions:
    """Test the session pool with the RPC call stubbed."""

    def setup_method(self):
        self.inspector = InspectorService("http://proxy:9876/", api_key="k")
        self.inspector.call = AsyncMock(return_value=INITIALIZE_RESULT)

    @pytest.mark.asyncio
    async def test_create_negotiates_capabilities(self):
        session = await self.inspector.create("echo")

        assert session.server_name == "echo"
        assert session.id.startswith("inspector-echo-")
        assert session.capabilities == {"tools": {"listChanged": True}}
        method, params = self.inspector.call.call_args.args[1:]
        assert method == "initialize"
        assert params["protocolVersion"] == "2024-11-05"
        assert params["clientInfo"]["name"] == "MCP Dashboard Inspector"

    @pytest.mark.asyncio
    async def test_create_survives_failed_negotiation(self):
        self.inspector.call.side_effect = UpstreamError("unreachable", "down")
        session = await self.inspector.create("echo")
        assert session.capabilities == {}
        assert self.inspector.get(session.id) is session

    @pytest.mark.asyncio
    async def test_create_requires_server(self):
        with pytest.raises(ConfigError):
            await self.inspector.create("")

    @pytest.mark.asyncio
    async def test_owner_reuses_session(self):
        first = await self.inspector.create("echo", owner="alice")
        second = await self.inspector.create("echo", owner="alice")
        other = await self.inspector.create("echo", owner="bob")

        assert first is second
        assert other.id != first.id

    @pytest.mark.asyncio
    async def test_concurrent_creates_share_owner_session(self):
        async def slow_initialize(server, method, params):
            await asyncio.sleep(0.05)
            return INITIALIZE_RESULT

        self.inspector.call = AsyncMock(side_effect=slow_initialize)

        first, second = await asyncio.gather(
            self.inspector.create("echo", owner="alice"),
            self.inspector.create("echo", owner="alice"),
        )

        assert first is second
        assert self.inspector.list() == [first]
        assert self.inspector._owners == {("alice", "echo"): first.id}

    @pytest.mark.asyncio
    async def test_session_ids_unique_with_repeated_clock(self):
        with patch("mcp_compose.core.inspector.time.time_ns", return_value=1700000000000000000):
            first = await self.inspector.create("echo")
            second = await self.inspector.create("echo")

        assert first.id != second.id
        assert len(self.inspector.list()) == 2

    @pytest.mark.asyncio
    async def test_execute_forwards_envelope(self):
        session = await self.inspector.create("echo")
        self.inspector.call.return_value = {"jsonrpc": "2.0", "id": 2, "error": {"code": -32601, "message": "nope"}}

        envelope = await self.inspector.execute(session.id, "tools/list")

        assert envelope["error"]["code"] == -32601
        self.inspector.call.assert_called_with("echo", "tools/list", None)

    @pytest.mark.asyncio
    async def test_execute_unknown_session(self):
        with pytest.raises(NotFoundError):
            await self.inspector.execute("inspector-x-1", "tools/list")

    @pytest.mark.asyncio
    async def test_destroy(self):
        session = await self.inspector.create("echo", owner="alice")
        await self.inspector.destroy(session.id)

        assert self.inspector.list() == []
        assert self.inspector._owners == {}
        with pytest.raises(NotFoundError):
            await self.inspector.destroy(session.id)

    @pytest.mark.asyncio
    async def test_expired_session_rejected_and_swept(self):
        session = await self.inspector.create("echo")
        session.last_used -= timedelta(hours=2)

        with pytest.raises(NotFoundError, match="expired"):
            self.inspector.get(session.id)

        fresh = await self.inspector.create("echo")
        assert await self.inspector.cleanup(max_idle=1800) == 1
        assert self.inspector.list() == [fresh]


class TestInspectorTransport:
    """Test JSON-RPC over HTTP against a local server."""

    async def _serve(self, handler):
        app = web.Application()
        app.router.add_post("/{server}", handler)
        server = test_utils.TestServer(app)
        await server.start_server()
        return server

    @pytest.mark.asyncio
    async def test_call_posts_json_rpc(self):
        received = {}

        async def handler(request):
            received["server"] = request.match_info["server"]
            received["auth"] = request.headers.get("Authorization")
            received["body"] = await request.json()
            return web.json_response(INITIALIZE_RESULT)

        server = await self._serve(handler)
        inspector = InspectorService(str(server.make_url("")), api_key="k")
        try:
            envelope = await inspector.call("echo", "tools/list")
        finally:
            await inspector.close()
            await server.close()

        assert envelope == INITIALIZE_RESULT
        assert received["server"] == "echo"
        assert received["auth"] == "Bearer k"
        assert received["body"]["jsonrpc"] == "2.0"
        assert received["body"]["method"] == "tools/list"
        assert received["body"]["params"] == {}

    @pytest.mark.asyncio
    async def test_call_bad_status(self):
        async def handler(request):
            return web.Response(status=503, text="unavailable")

        server = await self._serve(handler)
        inspector = InspectorService(str(server.make_url("")))
        try:
            with pytest.raises(UpstreamError) as exc_info:
                await inspector.call("echo", "tools/list")
        finally:
            await inspector.close()
            await server.close()

        assert exc_info.value.status == 503
        assert "unavailable" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_call_malformed_body(self):
        async def handler(request):
            return web.Response(text="[1, 2]")

        server = await self._serve(handler)
        inspector = InspectorService(str(server.make_url("")))
        try:
            with pytest.raises(UpstreamError) as exc_info:
                await inspector.call("echo", "ping")
        finally:
            await inspector.close()
            await server.close()

        assert exc_info.value.kind == "malformed-response"


class TestTaskSchedulerDispatcher:
    """Test one-shot tool calls for scheduler routes."""

    def setup_method(self):
        self.inspector = InspectorService("http://proxy:9876")
        self.dispatcher = TaskSchedulerDispatcher(self.inspector)

    @pytest.mark.asyncio
    async def test_dispatch_unwraps_result(self):
        tool_result = {"jsonrpc": "2.0", "id": 2, "result": {"content": [{"type": "text", "text": json.dumps([{"id": 1}])}]}}
        self.inspector.call = AsyncMock(side_effect=[INITIALIZE_RESULT, tool_result])

        result = await self.dispatcher.dispatch("GET", "/tasks")

        assert result == [{"id": 1}]
        server, method, params = self.inspector.call.call_args.args
        assert server == "task-scheduler"
        assert method == "tools/call"
        assert params == {"name": "list_tasks", "arguments": {}}
        assert self.inspector.list() == []

    @pytest.mark.asyncio
    async def test_dispatch_tool_error(self):
        failure = {"jsonrpc": "2.0", "id": 2, "error": {"code": -32000, "message": "no such task"}}
        self.inspector.call = AsyncMock(side_effect=[INITIALIZE_RESULT, failure])

        with pytest.raises(UpstreamError, match="Tool call failed"):
            await self.dispatcher.dispatch("POST", "/tasks/9/run")
        assert self.inspector.list() == []

    @pytest.mark.asyncio
    async def test_dispatch_empty_result(self):
        self.inspector.call = AsyncMock(side_effect=[INITIALIZE_RESULT, {"jsonrpc": "2.0", "id": 2, "result": None}])
        assert await self.dispatcher.dispatch("POST", "/tasks/9/enable") == {"result": "success"}

    @pytest.mark.asyncio
    async def test_dispatch_survives_reaped_session(self):
        tool_result = {"jsonrpc": "2.0", "id": 2, "result": {"content": [{"type": "text", "text": "{\"ok\": true}"}]}}

        async def reap_then_answer(server, method, params):
            if method == "initialize":
                return INITIALIZE_RESULT
            await self.inspector.cleanup(max_idle=-1)
            return tool_result

        self.inspector.call = AsyncMock(side_effect=reap_then_answer)

        assert await self.dispatcher.dispatch("GET", "/metrics") == {"ok": True}
        assert self.inspector.list() == []

    @pytest.mark.asyncio
    async def test_health(self):
        self.inspector.call = AsyncMock(return_value=INITIALIZE_RESULT)
        health = await self.dispatcher.health()
        assert health["available"] is True
        assert health["serverName"] == "task-scheduler"
        assert health["capabilities"] == {"tools": {"listChanged": True}}
