"""
Upstream transports for the MCP proxy.

A JSON-RPC payload reaches a server one of three ways:

- ``http``/``sse`` servers: HTTP POST to ``http://mcp-compose-<s>:<port><path>``
  (``localhost`` for process servers), ``Mcp-Session-Id`` passed through.
- servers with ``stdio_hoster_port``: one JSON line over TCP.
- other stdio servers: ``exec -i <container> <command> <args>`` (or the
  command itself for process servers), one JSON line in, the response
  with the matching id out.
"""

import asyncio
import json
import os
import shlex
import time
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Set

import aiohttp

from mcp_compose.core.constants import HTTP_READ_TIMEOUT, STDIO_EXEC_TIMEOUT
from mcp_compose.core.exceptions import EngineError
from mcp_compose.core.manifest import ServerConfig
from mcp_compose.core.models import canonical_name
from mcp_compose.core.runtime.base import ContainerRuntime, ProcessHandle
from mcp_compose.utils.logging import get_logger

logger = get_logger(__name__)

# JSON-RPC error codes
PARSE_ERROR = -32700
INTERNAL_ERROR = -32603
TIMEOUT_ERROR = -32000
UPSTREAM_ERROR = -32003

SESSION_HEADER = "Mcp-Session-Id"


class UpstreamResponse(NamedTuple):
    status: int
    body: bytes
    headers: Dict[str, str]


def jsonrpc_error(request_id: Any, code: int, message: str, data: Any = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": error}


def error_response(request_id: Any, code: int, message: str, status: int) -> UpstreamResponse:
    body = json.dumps(jsonrpc_error(request_id, code, message)).encode("utf-8")
    return UpstreamResponse(status, body, {"Content-Type": "application/json"})


def upstream_host(name: str, server: ServerConfig) -> str:
    return canonical_name(name) if server.is_container else "localhost"


def stdio_command(server: ServerConfig) -> List[str]:
    if not server.command:
        return []
    return shlex.split(server.command) + list(server.args)


class UpstreamForwarder:
    """Forwards JSON-RPC payloads and tracks in-flight connections."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        session: Optional[aiohttp.ClientSession] = None,
        read_timeout: float = HTTP_READ_TIMEOUT,
        stdio_timeout: float = STDIO_EXEC_TIMEOUT,
    ):
        self.runtime = runtime
        self.read_timeout = read_timeout
        self.stdio_timeout = stdio_timeout
        self._session = session
        self._owns_session = session is None

        self.active: Dict[str, int] = {}
        self.mcp_sessions: Set[str] = set()
        self.total_requests = 0
        self.failed_requests = 0

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    @property
    def active_connections(self) -> int:
        return sum(self.active.values())

    def transport_for(self, server: ServerConfig) -> str:
        if server.protocol in ("http", "sse"):
            return "http"
        if server.stdio_hoster_port:
            return "tcp"
        return "stdio"

    async def forward(
        self,
        name: str,
        server: ServerConfig,
        payload: bytes,
        headers: Optional[Mapping[str, str]] = None,
    ) -> UpstreamResponse:
        """
        Send one JSON-RPC payload to ``name`` and return its response.

        Transport failures are returned as JSON-RPC error envelopes, never
        raised.
        """
        try:
            message = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return error_response(None, PARSE_ERROR, f"Parse error: {e}", 400)

        request_id = message.get("id") if isinstance(message, dict) else None
        transport = self.transport_for(server)

        self.total_requests += 1
        self.active[name] = self.active.get(name, 0) + 1
        start = time.time()
        try:
            if transport == "http":
                response = await self._forward_http(name, server, payload, headers or {})
            elif transport == "tcp":
                response = await self._forward_tcp(name, server, payload, request_id)
            else:
                response = await self._forward_stdio(name, server, payload, request_id)
        except asyncio.TimeoutError:
            self.failed_requests += 1
            logger.warning(f"Upstream '{name}' timed out over {transport}", extra={"server": name})
            return error_response(request_id, TIMEOUT_ERROR, f"Request to '{name}' timed out", 504)
        except (aiohttp.ClientError, OSError, EngineError) as e:
            self.failed_requests += 1
            logger.warning(f"Upstream '{name}' failed over {transport}: {e}", extra={"server": name})
            return error_response(request_id, UPSTREAM_ERROR, f"Upstream '{name}' unavailable: {e}", 502)
        finally:
            self.active[name] -= 1
            if not self.active[name]:
                del self.active[name]

        logger.debug(
            f"Forwarded request to '{name}' over {transport}",
            extra={"server": name, "status": response.status, "duration_ms": round((time.time() - start) * 1000, 2)},
        )
        return response

    async def _forward_http(
        self,
        name: str,
        server: ServerConfig,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> UpstreamResponse:
        port = server.inferred_http_port()
        url = f"http://{upstream_host(name, server)}:{port}{server.http_path or '/'}"

        out_headers = {
            "Content-Type": "application/json",
            "Accept": headers.get("Accept", "application/json, text/event-stream"),
        }
        session_id = headers.get(SESSION_HEADER)
        if session_id:
            out_headers[SESSION_HEADER] = session_id

        async with self.session.post(
            url,
            data=payload,
            headers=out_headers,
            timeout=aiohttp.ClientTimeout(total=self.read_timeout),
        ) as response:
            body = await response.read()
            result_headers = {"Content-Type": response.headers.get("Content-Type", "application/json")}
            upstream_session = response.headers.get(SESSION_HEADER)
            if upstream_session:
                result_headers[SESSION_HEADER] = upstream_session
                self.mcp_sessions.add(upstream_session)
            return UpstreamResponse(response.status, body, result_headers)

    async def _forward_tcp(
        self,
        name: str,
        server: ServerConfig,
        payload: bytes,
        request_id: Any,
    ) -> UpstreamResponse:
        host = upstream_host(name, server)
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, server.stdio_hoster_port),
            timeout=self.read_timeout,
        )
        try:
            writer.write(payload.strip() + b"\n")
            await writer.drain()
            if request_id is None:
                return UpstreamResponse(202, b"", {})
            line = await asyncio.wait_for(self._read_response(reader, request_id), timeout=self.stdio_timeout)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
        return UpstreamResponse(200, line, {"Content-Type": "application/json"})

    async def _forward_stdio(
        self,
        name: str,
        server: ServerConfig,
        payload: bytes,
        request_id: Any,
    ) -> UpstreamResponse:
        command = stdio_command(server)
        if server.is_container:
            if not command:
                return error_response(request_id, INTERNAL_ERROR, f"Server '{name}' has no command to exec", 500)
            handle = await self.runtime.exec(canonical_name(name), command, interactive=True)
        elif command:
            handle = await spawn_process(command, server.env, server.workdir)
        else:
            return error_response(request_id, INTERNAL_ERROR, f"Server '{name}' has no command", 500)

        async with handle:
            if handle.stdin is None or handle.stdout is None:
                return error_response(request_id, INTERNAL_ERROR, "stdio pipes unavailable", 500)
            handle.stdin.write(payload.strip() + b"\n")
            await handle.stdin.drain()
            if request_id is None:
                return UpstreamResponse(202, b"", {})
            line = await asyncio.wait_for(
                self._read_response(handle.stdout, request_id),
                timeout=self.stdio_timeout,
            )
        return UpstreamResponse(200, line, {"Content-Type": "application/json"})

    async def _read_response(self, reader: asyncio.StreamReader, request_id: Any) -> bytes:
        """Read lines until the response carrying ``request_id`` arrives."""
        while True:
            raw = await reader.readline()
            if not raw:
                raise ConnectionResetError("upstream closed before responding")
            line = raw.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                # Servers sometimes log to stdout
                logger.debug(f"Skipping non-JSON upstream line: {line[:200]!r}")
                continue
            if isinstance(message, dict) and message.get("id") == request_id:
                return line

    def stats(self) -> Dict[str, Any]:
        return {
            "active": dict(self.active),
            "total_requests": self.total_requests,
            "failed_requests": self.failed_requests,
            "mcp_sessions": len(self.mcp_sessions),
        }


async def spawn_process(command: List[str], env: Dict[str, str], workdir: Optional[str]) -> ProcessHandle:
    """Start a local stdio server for a single exchange."""
    environment = dict(os.environ)
    environment.update(env)
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            env=environment,
            cwd=workdir,
        )
    except FileNotFoundError as e:
        raise EngineError("start-failed", f"Command not found: {command[0]}") from e
    return ProcessHandle(process, " ".join(command))
