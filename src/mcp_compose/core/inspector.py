"""
Inspector session manager.

Keeps a pool of capability-negotiated JSON-RPC sessions against MCP
servers reached through the proxy, and translates the task scheduler's
REST-shaped calls into ``tools/call`` invocations.
"""

import asyncio
import json
import re
import secrets
import time
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from mcp_compose.core.constants import (
    INSPECTOR_RPC_TIMEOUT,
    MCP_PROTOCOL_VERSION,
    SESSION_IDLE_TIMEOUT,
    SESSION_SWEEP_INTERVAL,
)
from mcp_compose.core.exceptions import (
    ConfigError,
    NotFoundError,
    TimeoutError,
    UpstreamError,
)
from mcp_compose.core.models import InspectorSession, utcnow
from mcp_compose.utils.logging import get_logger

logger = get_logger(__name__)

CLIENT_INFO = {"name": "MCP Dashboard Inspector", "version": "1.0.0"}

TASK_SCHEDULER_SERVER = "task-scheduler"


class InspectorService:
    """
    Pool of inspector sessions.

    Sessions are keyed by id; a session created with an ``owner`` is
    also indexed by (owner, server) so a reconnecting operator gets the
    same record back until it expires.
    """

    def __init__(
        self,
        proxy_url: str,
        api_key: Optional[str] = None,
        timeout: float = INSPECTOR_RPC_TIMEOUT,
        idle_timeout: float = SESSION_IDLE_TIMEOUT,
        sweep_interval: float = SESSION_SWEEP_INTERVAL,
        http: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize the inspector service.

        Args:
            proxy_url: Base URL of the MCP proxy
            api_key: Bearer token for the proxy
            timeout: Per-RPC timeout in seconds
            idle_timeout: Sessions idle longer than this are expired
            sweep_interval: Seconds between cleanup sweeps
            http: Shared client session; one is created on demand when omitted
        """
        self.proxy_url = proxy_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval

        self._http = http
        self._owns_http = http is None
        self._sessions: Dict[str, InspectorSession] = {}
        self._owners: Dict[Tuple[str, str], str] = {}
        self._lock = asyncio.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        return self._http

    async def start(self) -> None:
        """Start the periodic session sweeper."""
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())
            logger.info("Inspector session sweeper started", extra={"interval": self.sweep_interval})

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        if self._owns_http and self._http is not None:
            await self._http.close()
        self._http = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            removed = await self.cleanup(self.idle_timeout)
            if removed:
                logger.info(f"Cleaned up {removed} expired inspector sessions")

    def _new_session_id(self, server: str) -> str:
        return f"inspector-{server}-{time.time_ns()}-{secrets.token_hex(3)}"

    async def create(self, server: str, owner: Optional[str] = None) -> InspectorSession:
        """
        Open a session against ``server``.

        Capability discovery is best-effort: when ``initialize`` fails the
        session is still created, with empty capabilities.
        """
        if not server:
            raise ConfigError("Server name required")

        if owner:
            existing = await self._owned_session(owner, server)
            if existing is not None:
                existing.touch()
                return existing

        session = InspectorSession(id=self._new_session_id(server), server_name=server)

        try:
            session.capabilities = await self._negotiate(server)
        except (UpstreamError, TimeoutError) as e:
            logger.info(
                f"Could not get capabilities for server {server}: {e}. Session will be created anyway.",
                extra={"server": server},
            )

        async with self._lock:
            if owner:
                live = self._sessions.get(self._owners.get((owner, server), ""))
                if live is not None and live.idle_seconds() <= self.idle_timeout:
                    # Another create for this owner won the race
                    live.touch()
                    return live
                self._owners[(owner, server)] = session.id
            self._sessions[session.id] = session

        logger.info(
            f"Created inspector session {session.id} for server {server}",
            extra={"server": server, "session_id": session.id},
        )
        return session

    async def _owned_session(self, owner: str, server: str) -> Optional[InspectorSession]:
        session_id = self._owners.get((owner, server))
        if session_id is None:
            return None
        session = self._sessions.get(session_id)
        if session is None or session.idle_seconds() > self.idle_timeout:
            await self._remove(session_id)
            return None
        return session

    async def _negotiate(self, server: str) -> Dict[str, Any]:
        response = await self.call(server, "initialize", {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": {"roots": {"listChanged": True}},
            "clientInfo": CLIENT_INFO,
        })
        result = response.get("result")
        if isinstance(result, dict) and isinstance(result.get("capabilities"), dict):
            return result["capabilities"]
        raise UpstreamError("malformed-response", "no capabilities in response")

    def get(self, session_id: str) -> InspectorSession:
        """Return a live session or raise ``NotFoundError``."""
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"session {session_id} not found")
        if session.idle_seconds() > self.idle_timeout:
            raise NotFoundError(f"session {session_id} not found (expired)")
        return session

    async def execute(
        self,
        session_id: str,
        method: str,
        params: Optional[Any] = None,
    ) -> Dict[str, Any]:
        """
        Run one JSON-RPC call inside a session.

        Returns the upstream envelope unchanged so ``result`` and ``error``
        both reach the caller.
        """
        try:
            session = self.get(session_id)
        except NotFoundError:
            await self._remove(session_id)
            raise
        session.touch()

        return await self.call(session.server_name, method, params)

    async def destroy(self, session_id: str) -> None:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            self._drop_owner(session_id)
        if session is None:
            raise NotFoundError(f"session {session_id} not found")
        logger.info(
            f"Destroyed inspector session {session_id} for server {session.server_name}",
            extra={"session_id": session_id},
        )

    async def _remove(self, session_id: str) -> None:
        async with self._lock:
            self._sessions.pop(session_id, None)
            self._drop_owner(session_id)

    def _drop_owner(self, session_id: str) -> None:
        for key in [k for k, v in self._owners.items() if v == session_id]:
            del self._owners[key]

    def list(self) -> List[InspectorSession]:
        return list(self._sessions.values())

    async def cleanup(self, max_idle: Optional[float] = None) -> int:
        """Remove sessions idle longer than ``max_idle`` seconds."""
        limit = self.idle_timeout if max_idle is None else max_idle
        now = utcnow()
        async with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.idle_seconds(now) > limit]
            for session_id in expired:
                del self._sessions[session_id]
                self._drop_owner(session_id)
                logger.debug(f"Cleaned up expired inspector session {session_id}")
        return len(expired)

    def build_request(self, method: str, params: Optional[Any] = None) -> Dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": time.time_ns(),
            "method": method,
            "params": {} if params is None else params,
        }

    async def call(self, server: str, method: str, params: Optional[Any] = None) -> Dict[str, Any]:
        """POST one JSON-RPC request to ``<proxy>/<server>``."""
        body = json.dumps(self.build_request(method, params)).encode("utf-8")
        url = f"{self.proxy_url}/{server}"
        headers = {
            "Content-Type": "application/json",
            "Content-Length": str(len(body)),
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        logger.debug(f"Sending MCP request {method} to {url}", extra={"server": server})

        try:
            async with self.http.post(
                url,
                data=body,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                text = await response.text()
                if response.status != 200:
                    raise UpstreamError(
                        "bad-status",
                        f"proxy returned status {response.status}: {text.strip()}",
                        status=response.status,
                    )
        except asyncio.TimeoutError:
            raise TimeoutError(f"Inspector request {method} to {server} timed out after {self.timeout}s")
        except aiohttp.ClientError as e:
            raise UpstreamError("unreachable", f"request failed: {e}")

        try:
            envelope = json.loads(text)
        except json.JSONDecodeError as e:
            raise UpstreamError("malformed-response", f"failed to parse response: {e}")
        if not isinstance(envelope, dict):
            raise UpstreamError("malformed-response", "response is not a JSON-RPC envelope")
        return envelope


class UnsupportedOperation(ConfigError):
    """A task scheduler path with no tool mapping."""


_TASK_ID_ROUTES = {
    "run": "run_task",
    "enable": "enable_task",
    "disable": "disable_task",
}

_TASK_PATH_RE = re.compile(r"^/tasks/([^/]+)/(run|enable|disable|output)/?$")


def map_scheduler_call(method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Tuple[str, Dict[str, Any]]:
    """
    Translate a REST call under ``/api/task-scheduler`` into a tool call.

    Args:
        method: HTTP method
        path: Path relative to the scheduler prefix, e.g. ``/tasks/7/run``
        body: Decoded JSON body for ``POST /tasks``

    Returns:
        (tool name, arguments)

    Raises:
        UnsupportedOperation: The shape has no mapping
    """
    method = method.upper()
    normalized = path if path.startswith("/") else f"/{path}"

    if normalized.rstrip("/") == "/tasks":
        if method == "GET":
            return "list_tasks", {}
        if method == "POST":
            return "add_task", dict(body or {})

    match = _TASK_PATH_RE.match(normalized)
    if match:
        task_id, action = match.groups()
        if action == "output" and method == "GET":
            return "get_run_output", {"task_id": task_id}
        if action in _TASK_ID_ROUTES and method == "POST":
            return _TASK_ID_ROUTES[action], {"id": task_id}

    if normalized.rstrip("/") == "/runs/status" and method == "GET":
        return "list_run_status", {}
    if normalized.rstrip("/") == "/metrics" and method == "GET":
        return "get_metrics", {}

    raise UnsupportedOperation(f"Unsupported operation: {method} {path}")


def unwrap_tool_result(result: Any) -> Any:
    """Return ``content[0].text`` parsed as JSON, else the raw result."""
    if not isinstance(result, dict):
        return result
    content = result.get("content")
    if isinstance(content, list) and content:
        first = content[0]
        if isinstance(first, dict) and isinstance(first.get("text"), str):
            try:
                return json.loads(first["text"])
            except json.JSONDecodeError:
                pass
    return result


class TaskSchedulerDispatcher:
    """Runs scheduler REST calls as one-shot inspector sessions."""

    def __init__(self, inspector: InspectorService, server: str = TASK_SCHEDULER_SERVER):
        self.inspector = inspector
        self.server = server

    async def dispatch(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        tool, arguments = map_scheduler_call(method, path, body)
        logger.info(f"Calling MCP tool: {tool}", extra={"server": self.server, "tool": tool})

        session = await self.inspector.create(self.server)
        try:
            envelope = await self.inspector.execute(
                session.id, "tools/call", {"name": tool, "arguments": arguments}
            )
        finally:
            try:
                await self.inspector.destroy(session.id)
            except NotFoundError:
                logger.debug(f"Scheduler session {session.id} already removed")

        if "error" in envelope and envelope["error"] is not None:
            raise UpstreamError(
                "bad-status",
                f"Tool call failed: {json.dumps(envelope['error'])}",
                details={"error": envelope["error"]},
            )
        if envelope.get("result") is None:
            return {"result": "success"}
        return unwrap_tool_result(envelope["result"])

    async def health(self) -> Dict[str, Any]:
        session = await self.inspector.create(self.server)
        try:
            return {
                "available": True,
                "sessionId": session.id,
                "serverName": self.server,
                "capabilities": session.capabilities,
            }
        finally:
            await self.inspector.destroy(session.id)
