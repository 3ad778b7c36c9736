"""
MCP reverse proxy server.

Routes JSON-RPC posted to ``/<server>`` to the matching upstream, exposes
the first-party ``/api/*`` endpoints used by the dashboard, enforces the
bearer-token policy and mediates the OAuth authorization-code flow.
"""

import asyncio
import html
import json
import time
from datetime import datetime, timezone
from string import Template
from typing import Any, Dict, List, Optional

from aiohttp import web
from aiohttp.web import Application, Request, Response, StreamResponse

from mcp_compose import __version__
from mcp_compose.core.activity.bus import ActivityPublisher, NullPublisher
from mcp_compose.core.compose import ComposeOrchestrator
from mcp_compose.core.constants import (
    DEFAULT_PROXY_PORT,
    HTTP_READ_TIMEOUT,
    STDIO_EXEC_TIMEOUT,
)
from mcp_compose.core.exceptions import AuthError, MCPComposeError, NotFoundError
from mcp_compose.core.manifest import ComposeManifest, load_manifest
from mcp_compose.core.models import WorkloadStatus
from mcp_compose.core.proxy.audit import AuditLog
from mcp_compose.core.proxy.oauth import MediatedResponse, OAuthMediator, callback_fallback_page
from mcp_compose.core.proxy.upstream import UpstreamForwarder
from mcp_compose.core.runtime.base import ContainerRuntime
from mcp_compose.core.streaming import (
    SSE_HEADERS,
    clamp_tail,
    now_rfc3339,
    resolve_container,
    sse_log_events,
    static_logs,
)
from mcp_compose.utils.logging import get_logger

logger = get_logger(__name__)

PUBLIC_PATHS = ("/", "/health")
PUBLIC_PREFIXES = ("/oauth/", "/.well-known/")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, Mcp-Session-Id, Accept",
    "Access-Control-Expose-Headers": "Mcp-Session-Id",
}

_DOCS_PAGE = Template("""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>$name MCP Server</title>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif; margin: 40px; line-height: 1.6; }
        .container { max-width: 800px; margin: 0 auto; }
        h1 { color: #2c3e50; border-bottom: 2px solid #3498db; padding-bottom: 10px; }
        .tool { background: #f8f9fa; padding: 15px 20px; border-radius: 8px; margin: 12px 0; }
        .tool h3 { margin: 0 0 6px; font-family: Monaco, Consolas, monospace; }
        .link-box a { color: #2980b9; text-decoration: none; font-weight: 500; }
        .error { color: #c0392b; }
    </style>
</head>
<body>
    <div class="container">
        <h1>$name MCP Server</h1>
        <div class="link-box">
            <p><a href="/$name/openapi.json">View OpenAPI Spec (JSON)</a></p>
        </div>
        <h2>Tools ($count)</h2>
        $tools
        <p><a href="/">&larr; Back to proxy index</a></p>
    </div>
</body>
</html>
""")

_INDEX_PAGE = Template("""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>MCP Compose Proxy</title>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif; margin: 40px; }
        li { padding: 6px 0; }
        code { background: #f0f0f0; padding: 2px 4px; border-radius: 3px; }
    </style>
</head>
<body>
    <h1>MCP Compose Proxy</h1>
    <p>Version $version. POST JSON-RPC to <code>/&lt;server&gt;</code>.</p>
    <ul>
$servers
    </ul>
</body>
</html>
""")


def tool_specs(result: Any) -> List[Dict[str, Any]]:
    """Pull the tool list out of a ``tools/list`` response envelope."""
    if not isinstance(result, dict):
        return []
    tools = (result.get("result") or {}).get("tools")
    if not isinstance(tools, list):
        return []
    return [t for t in tools if isinstance(t, dict) and t.get("name")]


def build_openapi(server: str, tools: List[Dict[str, Any]]) -> Dict[str, Any]:
    """An OpenAPI 3 document with one POST operation per tool."""
    paths: Dict[str, Any] = {}
    for tool in tools:
        name = tool["name"]
        paths[f"/{name}"] = {
            "post": {
                "summary": name.replace("_", " ").title(),
                "description": tool.get("description", ""),
                "operationId": name,
                "tags": [server],
                "requestBody": {
                    "required": True,
                    "content": {
                        "application/json": {
                            "schema": tool.get("inputSchema") or {"type": "object"},
                        },
                    },
                },
                "responses": {
                    "200": {
                        "description": "Successful Response",
                        "content": {"application/json": {"schema": {"type": "object"}}},
                    },
                },
                "security": [{"HTTPBearer": []}],
            },
        }
    return {
        "openapi": "3.1.0",
        "info": {
            "title": f"{server.title()} MCP Server",
            "description": f"{server} MCP Server",
            "version": "1.0.0",
        },
        "paths": paths,
        "components": {
            "securitySchemes": {"HTTPBearer": {"type": "http", "scheme": "bearer"}},
        },
        "security": [{"HTTPBearer": []}],
    }


def render_docs(server: str, tools: List[Dict[str, Any]], error: Optional[str] = None) -> str:
    esc = html.escape
    if tools:
        blocks = [
            f'<div class="tool"><h3>{esc(t["name"])}</h3><p>{esc(t.get("description", ""))}</p></div>'
            for t in tools
        ]
        body = "\n        ".join(blocks)
    elif error:
        body = f'<p class="error">Tool discovery failed: {esc(error)}</p>'
    else:
        body = "<p>No tools discovered.</p>"
    return _DOCS_PAGE.substitute(name=esc(server), count=len(tools), tools=body)


def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


class ProxyServer:
    """
    HTTP front for the composed MCP servers.

    One instance owns the upstream forwarder, the audit log and, when an
    authorization server is configured, the OAuth mediator.
    """

    def __init__(
        self,
        manifest: ComposeManifest,
        runtime: ContainerRuntime,
        host: str = "0.0.0.0",
        port: int = DEFAULT_PROXY_PORT,
        api_key: Optional[str] = None,
        publisher: Optional[ActivityPublisher] = None,
        orchestrator: Optional[ComposeOrchestrator] = None,
        oauth: Optional[OAuthMediator] = None,
        read_timeout: float = HTTP_READ_TIMEOUT,
        stdio_timeout: float = STDIO_EXEC_TIMEOUT,
        audit_max_entries: int = 1000,
    ):
        """
        Initialize proxy server.

        Args:
            manifest: Loaded compose manifest
            runtime: Container runtime used for status, logs and exec
            api_key: Bearer token; falls back to ``proxy_auth.api_key``
            publisher: Activity sink for request events
            orchestrator: Used by ``/api/reload`` to converge
            oauth: Mediator for the ``/oauth/*`` endpoints
        """
        self.manifest = manifest
        self.runtime = runtime
        self.host = host
        self.port = port
        if api_key is None and manifest.proxy_auth.enabled:
            api_key = manifest.proxy_auth.api_key
        self.api_key = api_key
        self.publisher = publisher or NullPublisher()
        self.orchestrator = orchestrator or ComposeOrchestrator(manifest, runtime, self.publisher)
        if oauth is None and manifest.oauth.enabled and manifest.oauth.issuer:
            oauth = OAuthMediator(manifest.oauth.issuer, timeout=read_timeout)
        self.oauth = oauth
        self.forwarder = UpstreamForwarder(runtime, read_timeout=read_timeout, stdio_timeout=stdio_timeout)
        self.audit = AuditLog(max_entries=audit_max_entries)

        self.started_at = time.time()
        self.app: Optional[Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

        logger.info("Proxy server initialized", extra={
            "host": self.host,
            "port": self.port,
            "servers": len(self.manifest.servers),
            "auth": bool(self.api_key),
            "oauth": self.oauth is not None,
        })

    async def start(self) -> None:
        """Start the proxy server."""
        self.app = self.create_app()
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        try:
            await self.site.start()
        except OSError:
            await self.runner.cleanup()
            raise
        self.started_at = time.time()
        logger.info(f"Proxy server started on {self.host}:{self.port}")
        self.publisher.emit("INFO", "service", f"Proxy started on port {self.port}", server="proxy")

    async def stop(self) -> None:
        """Stop the proxy server."""
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        logger.info("Proxy server stopped")

    async def run_forever(self) -> None:
        """Start server and run until cancelled."""
        await self.start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await self.stop()

    async def _close_clients(self, app: Application) -> None:
        await self.forwarder.close()
        if self.oauth is not None:
            await self.oauth.close()

    def create_app(self) -> Application:
        """Create aiohttp web application with routes."""
        app = Application(middlewares=[
            self._request_logging_middleware,
            self._cors_middleware,
            self._error_handling_middleware,
            self._auth_middleware,
        ])
        self._add_routes(app)
        app.on_cleanup.append(self._close_clients)
        return app

    def _add_routes(self, app: Application) -> None:
        router = app.router
        router.add_get("/", self._handle_index)
        router.add_get("/health", self._handle_health)

        router.add_get("/api/servers", self._handle_servers)
        router.add_get("/api/status", self._handle_status)
        router.add_get("/api/connections", self._handle_connections)
        router.add_get("/api/containers/{name}/logs", self._handle_container_logs)
        router.add_get("/api/containers/{name}/stats", self._handle_container_stats)
        router.add_post("/api/reload", self._handle_reload)
        router.add_get("/api/audit/entries", self._handle_audit_entries)
        router.add_get("/api/audit/stats", self._handle_audit_stats)
        router.add_route("*", "/api/oauth/{tail:.*}", self._handle_oauth_api)

        router.add_route("*", "/oauth/authorize", self._handle_oauth_authorize)
        router.add_route("*", "/oauth/callback", self._handle_oauth_callback)
        router.add_post("/oauth/token", self._handle_oauth_token)
        router.add_post("/oauth/register", self._handle_oauth_register)
        router.add_get("/.well-known/{tail:.*}", self._handle_well_known)

        router.add_get("/{server}/docs", self._handle_server_docs)
        router.add_get("/{server}/openapi.json", self._handle_server_openapi)
        router.add_post("/{server}", self._handle_mcp_request)

        for route in router.routes():
            logger.info(f"Registered route {route.method} {route.resource.canonical}")

    # Middleware

    def _is_public(self, path: str) -> bool:
        return path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES)

    @web.middleware
    async def _request_logging_middleware(self, request: Request, handler) -> StreamResponse:
        """Log all requests."""
        start_time = time.time()
        try:
            response = await handler(request)
        except web.HTTPException as e:
            logger.info(f"{request.method} {request.path}", extra={
                "status": e.status,
                "processing_time_ms": round((time.time() - start_time) * 1000, 2),
                "client_ip": request.remote,
            })
            raise
        logger.info(f"{request.method} {request.path}", extra={
            "status": response.status,
            "processing_time_ms": round((time.time() - start_time) * 1000, 2),
            "client_ip": request.remote,
        })
        return response

    @web.middleware
    async def _cors_middleware(self, request: Request, handler) -> StreamResponse:
        """Answer preflights and add CORS headers."""
        if request.method == "OPTIONS":
            return web.Response(status=200, headers=CORS_HEADERS)
        response = await handler(request)
        if not response.prepared:
            response.headers.update(CORS_HEADERS)
        return response

    @web.middleware
    async def _error_handling_middleware(self, request: Request, handler) -> StreamResponse:
        """Render errors as ``{"error": message}``."""
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except MCPComposeError as e:
            if e.http_status >= 500:
                logger.error(f"{request.method} {request.path} failed: {e}")
            return web.json_response({"error": e.message}, status=e.http_status)
        except Exception as e:
            logger.error(f"Unhandled error in {request.method} {request.path}: {e}", exc_info=True)
            return web.json_response({"error": "Internal server error"}, status=500)

    @web.middleware
    async def _auth_middleware(self, request: Request, handler) -> StreamResponse:
        """Require the bearer token on everything but public paths."""
        if not self.api_key or self._is_public(request.path):
            return await handler(request)

        header = request.headers.get("Authorization", "")
        if not header:
            kind = "missing"
        elif header == f"Bearer {self.api_key}":
            return await handler(request)
        else:
            kind = "invalid"

        logger.warning(f"Unauthorized access attempt to {request.path} from {request.remote} ({kind} token)")
        self.audit.record(
            "api_key_auth",
            success=False,
            ip_address=request.remote,
            user_agent=request.headers.get("User-Agent"),
            error=f"{kind} bearer token",
            details={"path": request.path},
        )
        raise AuthError(kind)

    # Basic endpoints

    async def _handle_index(self, request: Request) -> Response:
        items = [
            f'        <li><strong>{html.escape(n)}</strong> '
            f'<a href="/{html.escape(n)}/docs">docs</a> '
            f'<a href="/{html.escape(n)}/openapi.json">openapi.json</a></li>'
            for n in sorted(self.manifest.servers)
        ]
        page = _INDEX_PAGE.substitute(version=__version__, servers="\n".join(items))
        return web.Response(text=page, content_type="text/html")

    async def _handle_health(self, request: Request) -> Response:
        return web.json_response({
            "status": "healthy",
            "timestamp": now_rfc3339(),
            "servers": len(self.manifest.servers),
        })

    async def server_statuses(self) -> Dict[str, WorkloadStatus]:
        names = list(self.manifest.servers)
        statuses = await asyncio.gather(*(self.orchestrator.status(n) for n in names))
        return dict(zip(names, statuses))

    async def _handle_servers(self, request: Request) -> Response:
        statuses = await self.server_statuses()
        servers = {}
        for name, server in self.manifest.servers.items():
            servers[name] = {
                "name": name,
                "containerStatus": statuses[name].value,
                "configCapabilities": server.capabilities,
                "configProtocol": server.protocol,
                "configHttpPort": server.inferred_http_port(),
                "isContainer": server.is_container,
                "transport": self.forwarder.transport_for(server),
                "activeRequests": self.forwarder.active.get(name, 0),
            }
        return web.json_response(servers)

    async def _handle_status(self, request: Request) -> Response:
        statuses = await self.server_statuses()
        stats = self.forwarder.stats()
        return web.json_response({
            "proxyStartTime": datetime.fromtimestamp(self.started_at, timezone.utc).isoformat(),
            "proxyUptime": format_uptime(time.time() - self.started_at),
            "totalConfiguredServers": len(self.manifest.servers),
            "runningContainers": sum(1 for s in statuses.values() if s == WorkloadStatus.RUNNING),
            "activeHttpConnectionsToServers": self.forwarder.active_connections,
            "initializedMcpSessions": stats["mcp_sessions"],
            "totalRequests": stats["total_requests"],
            "failedRequests": stats["failed_requests"],
            "mcpComposeVersion": __version__,
        })

    async def _handle_connections(self, request: Request) -> Response:
        connections = {}
        for name, count in self.forwarder.active.items():
            server = self.manifest.servers.get(name)
            connections[name] = {
                "serverName": name,
                "activeRequests": count,
                "transport": self.forwarder.transport_for(server) if server else "unknown",
            }
        return web.json_response({
            "activeHttpConnectionsManagedByProxy": connections,
            "totalActiveManagedConnections": self.forwarder.active_connections,
            "timestamp": now_rfc3339(),
        })

    # Containers

    async def _handle_container_logs(self, request: Request) -> StreamResponse:
        container = resolve_container(request.match_info["name"])
        tail = clamp_tail(request.query.get("tail"))
        follow = request.query.get("follow") == "true"
        timestamps = request.query.get("timestamps") == "true"
        since = request.query.get("since") or None

        if not follow:
            return web.json_response(await static_logs(self.runtime, container, tail, timestamps))

        if not await self.runtime.exists(container):
            raise NotFoundError(f"Container not found: {container}")

        response = web.StreamResponse(status=200, headers={**SSE_HEADERS, **CORS_HEADERS})
        await response.prepare(request)
        try:
            async for frame in sse_log_events(self.runtime, container, tail, timestamps, since):
                await response.write(frame.encode("utf-8"))
        except ConnectionResetError:
            logger.debug(f"SSE client for '{container}' disconnected")
        return response

    async def _handle_container_stats(self, request: Request) -> Response:
        container = resolve_container(request.match_info["name"])
        stats = await self.runtime.stats(container)
        stats["timestamp"] = now_rfc3339()
        return web.json_response(stats)

    async def _handle_reload(self, request: Request) -> Response:
        logger.info(f"Received reload request from {request.remote}")
        manifest = load_manifest(self.manifest.path) if self.manifest.path else self.manifest
        changes = await self.orchestrator.reload(manifest)
        self.manifest = manifest
        return web.json_response({
            "status": "success",
            "message": "Configuration reloaded",
            "changes": changes,
            "timestamp": now_rfc3339(),
        })

    # Audit

    async def _handle_audit_entries(self, request: Request) -> Response:
        try:
            limit = int(request.query.get("limit", "100"))
            offset = int(request.query.get("offset", "0"))
        except ValueError:
            return web.json_response({"error": "limit and offset must be integers"}, status=400)
        event = request.query.get("event") or None
        return web.json_response(self.audit.entries(limit=limit, offset=offset, event=event))

    async def _handle_audit_stats(self, request: Request) -> Response:
        return web.json_response(self.audit.stats())

    # OAuth

    @staticmethod
    def _to_response(mediated: MediatedResponse) -> Response:
        return web.Response(status=mediated.status, body=mediated.body, headers=mediated.headers)

    def _require_oauth(self) -> OAuthMediator:
        if self.oauth is None:
            raise NotFoundError("OAuth not enabled")
        return self.oauth

    def _audit_oauth(self, request: Request, event: str, status: int, client_id: Optional[str] = None) -> None:
        self.audit.record(
            event,
            success=status < 400,
            client_id=client_id,
            ip_address=request.remote,
            user_agent=request.headers.get("User-Agent"),
            error=None if status < 400 else f"status {status}",
        )

    async def _handle_oauth_api(self, request: Request) -> Response:
        if self.oauth is None:
            if request.match_info["tail"] == "status":
                return web.json_response({"oauth_enabled": False})
            raise NotFoundError("OAuth not enabled")
        mediated = await self.oauth.forward(
            request.method, request.path, request.query_string, await request.read(), request.headers
        )
        return self._to_response(mediated)

    async def _handle_oauth_authorize(self, request: Request) -> Response:
        oauth = self._require_oauth()
        mediated = await oauth.authorize(
            request.method, request.query_string, await request.read(), request.headers
        )
        self._audit_oauth(request, "authorization_request", mediated.status, request.query.get("client_id"))
        return self._to_response(mediated)

    async def _handle_oauth_callback(self, request: Request) -> Response:
        if self.oauth is None:
            # No authorization server to relay to; show the code locally
            page = callback_fallback_page(
                request.query_string,
                host=request.host,
                upstream_error="OAuth is not enabled on this proxy",
                token_url=f"{request.scheme}://{request.host}/oauth/token",
            )
            self._audit_oauth(request, "authorization_callback", 200)
            return web.Response(text=page, content_type="text/html", charset="utf-8")

        mediated = await self.oauth.callback(
            request.method,
            request.query_string,
            await request.read(),
            request.headers,
            host=request.host,
            token_url_base=f"{request.scheme}://{request.host}",
        )
        self._audit_oauth(request, "authorization_callback", mediated.status)
        return self._to_response(mediated)

    async def _handle_oauth_token(self, request: Request) -> Response:
        oauth = self._require_oauth()
        mediated = await oauth.token(await request.read(), request.headers)
        self._audit_oauth(request, "token_request", mediated.status)
        return self._to_response(mediated)

    async def _handle_oauth_register(self, request: Request) -> Response:
        oauth = self._require_oauth()
        mediated = await oauth.forward("POST", "/oauth/register", body=await request.read(), headers=request.headers)
        self._audit_oauth(request, "client_registration", mediated.status)
        return self._to_response(mediated)

    async def _handle_well_known(self, request: Request) -> Response:
        oauth = self._require_oauth()
        return self._to_response(await oauth.forward("GET", request.path, request.query_string))

    # MCP servers

    def _server(self, request: Request) -> str:
        name = request.match_info["server"]
        if name not in self.manifest.servers:
            raise NotFoundError(f"Server '{name}' not found")
        return name

    async def list_tools(self, name: str) -> List[Dict[str, Any]]:
        """
        Ask a server for its tools.

        Raises:
            MCPComposeError: If the server answers with an error
        """
        payload = json.dumps({
            "jsonrpc": "2.0",
            "id": f"tools-{time.time_ns()}",
            "method": "tools/list",
            "params": {},
        }).encode("utf-8")
        response = await self.forwarder.forward(name, self.manifest.servers[name], payload)
        try:
            envelope = json.loads(response.body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise MCPComposeError(f"Server '{name}' returned a malformed tools/list response")
        if isinstance(envelope, dict) and envelope.get("error"):
            raise MCPComposeError(str(envelope["error"].get("message", envelope["error"])))
        return tool_specs(envelope)

    async def _handle_server_docs(self, request: Request) -> Response:
        name = self._server(request)
        try:
            tools = await self.list_tools(name)
            error = None
        except MCPComposeError as e:
            logger.warning(f"Failed to discover tools for {name}: {e.message}")
            tools, error = [], e.message
        return web.Response(text=render_docs(name, tools, error), content_type="text/html")

    async def _handle_server_openapi(self, request: Request) -> Response:
        name = self._server(request)
        try:
            tools = await self.list_tools(name)
        except MCPComposeError as e:
            logger.warning(f"Failed to discover tools for {name}: {e.message}")
            tools = []
        return web.json_response(build_openapi(name, tools))

    async def _handle_mcp_request(self, request: Request) -> Response:
        name = self._server(request)
        payload = await request.read()
        start = time.time()

        response = await self.forwarder.forward(name, self.manifest.servers[name], payload, request.headers)

        method = ""
        try:
            message = json.loads(payload)
            if isinstance(message, dict):
                method = str(message.get("method", ""))
        except (json.JSONDecodeError, UnicodeDecodeError):
            pass

        duration_ms = round((time.time() - start) * 1000, 2)
        details = {"method": method, "status": response.status, "duration_ms": duration_ms}
        if response.status >= 400:
            self.publisher.emit("ERROR", "error", f"{method or 'request'} to {name} failed", server=name,
                                client=request.remote, details=details)
        else:
            kind = "tool" if method == "tools/call" else "request"
            self.publisher.emit("INFO", kind, f"{method or 'request'} -> {name}", server=name,
                                client=request.remote, details=details)

        return web.Response(status=response.status, body=response.body, headers=response.headers)
