"""
FastAPI server for the MCP Compose dashboard.

Serves the operator UI, relays discovery and OAuth endpoints to the
proxy, terminates the log, metric and activity WebSockets, and owns the
activity bus and the inspector session pool.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response, StreamingResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from starlette.background import BackgroundTask

from mcp_compose import __version__
from mcp_compose.core.activity.bus import ActivityBus
from mcp_compose.core.activity.storage import open_store
from mcp_compose.core.constants import (
    ACTIVITY_RETENTION_DAYS,
    DEFAULT_DASHBOARD_PORT,
    DEFAULT_LOG_TAIL,
    DEFAULT_PROXY_PORT,
    HTTP_IDLE_TIMEOUT,
    HTTP_READ_TIMEOUT,
)
from mcp_compose.core.exceptions import (
    ConfigError,
    EngineError,
    MCPComposeError,
    NotFoundError,
    UpstreamError,
)
from mcp_compose.core.inspector import TaskSchedulerDispatcher, InspectorService
from mcp_compose.core.proxy.oauth import callback_fallback_page
from mcp_compose.core.manifest import ComposeManifest
from mcp_compose.core.models import ActivityEvent, canonical_name
from mcp_compose.core.runtime.base import ContainerRuntime
from mcp_compose.core.streaming import (
    SSE_HEADERS,
    LogStreamer,
    MetricsStreamer,
    SafeSocket,
    clamp_tail,
    now_rfc3339,
    resolve_container,
    sse_log_events,
    static_logs,
)
from mcp_compose.dashboard.middleware import (
    BearerAuthMiddleware,
    ErrorHandlingMiddleware,
    RequestLoggingMiddleware,
    client_ip,
    mcp_error_handler,
    websocket_authorized,
)
from mcp_compose.utils.config import Settings, get_settings
from mcp_compose.utils.logging import get_logger

logger = get_logger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"
STATIC_DIR = Path(__file__).parent / "static"

STREAM_HEADERS = {k: v for k, v in SSE_HEADERS.items() if k != "Content-Type"}
RELAYED_HEADERS = ("location", "mcp-session-id", "cache-control", "www-authenticate")
PROXY_METHODS = ["GET", "POST", "PUT", "DELETE"]

EMPTY_AUDIT_ENTRIES = {"entries": [], "total": 0}
EMPTY_AUDIT_STATS = {"total_entries": 0, "success_rate": 100.0, "event_counts": {}}

ACTION_PAST = {"stop": "stopped", "restart": "restarted"}


def rewrite_docs_links(html: str, server: str) -> str:
    """Point the proxy's docs page links at the dashboard's shims."""
    return html.replace(f"/{server}/openapi.json", f"/api/server-openapi/{server}")


def parse_since(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_limit(value: Optional[str], default: int = 100) -> int:
    try:
        limit = int(value) if value else default
    except ValueError:
        return default
    return limit if limit > 0 else default


class DashboardServer:
    """MCP Compose dashboard server."""

    def __init__(
        self,
        manifest: ComposeManifest,
        runtime: ContainerRuntime,
        proxy_url: str = f"http://localhost:{DEFAULT_PROXY_PORT}",
        api_key: Optional[str] = None,
        host: str = "0.0.0.0",
        port: int = DEFAULT_DASHBOARD_PORT,
        theme: str = "dark",
        postgres_url: Optional[str] = None,
        retention_days: int = ACTIVITY_RETENTION_DAYS,
        proxy_timeout: float = HTTP_READ_TIMEOUT,
        http: Optional[httpx.AsyncClient] = None,
        inspector: Optional[InspectorService] = None,
        bus: Optional[ActivityBus] = None,
    ):
        """
        Initialize dashboard server.

        Args:
            manifest: Loaded compose manifest
            runtime: Container runtime used for logs, stats and server actions
            proxy_url: Base URL of the MCP proxy
            api_key: Bearer token for the proxy and for this server's API
            postgres_url: Activity store connection string; no persistence when omitted
            http: Client for proxy calls; created on demand when omitted
            inspector: Inspector pool; created against ``proxy_url`` when omitted
            bus: Activity bus; created at startup when omitted
        """
        self.manifest = manifest
        self.runtime = runtime
        self.proxy_url = proxy_url.rstrip("/")
        self.api_key = api_key
        self.host = host
        self.port = port
        self.theme = theme
        self.postgres_url = postgres_url
        self.retention = timedelta(days=retention_days)
        self.proxy_timeout = proxy_timeout

        self.http = http or httpx.AsyncClient(timeout=proxy_timeout)
        self._owns_http = http is None
        self.inspector = inspector or InspectorService(self.proxy_url, api_key)
        self.scheduler = TaskSchedulerDispatcher(self.inspector)
        self.bus = bus
        self._owns_bus = bus is None

        self.templates = Jinja2Templates(directory=str(TEMPLATES_DIR))
        self.app = self._create_app()

        logger.info("Dashboard server initialized", extra={
            "proxy_url": self.proxy_url,
            "auth_enabled": bool(api_key),
            "activity_store": bool(postgres_url),
        })

    @asynccontextmanager
    async def lifespan(self, app: FastAPI):
        """Own the activity bus, the store and the inspector sweeper."""
        logger.info("Dashboard starting up")
        if self.bus is None:
            store = await asyncio.to_thread(open_store, self.postgres_url)
            self.bus = ActivityBus(store=store, retention=self.retention)
        self.bus.start()
        await self.inspector.start()
        try:
            yield
        finally:
            logger.info("Dashboard shutting down")
            await self.inspector.close()
            await self.bus.stop()
            if self._owns_bus and self.bus.store is not None:
                self.bus.store.close()
            if self._owns_http:
                await self.http.aclose()

    def _create_app(self) -> FastAPI:
        app = FastAPI(
            title="MCP Compose Dashboard",
            version=__version__,
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
            lifespan=self.lifespan,
        )
        app.add_exception_handler(MCPComposeError, mcp_error_handler)
        self._add_middleware(app)
        self._add_routes(app)
        return app

    def _add_middleware(self, app: FastAPI) -> None:
        # Last added runs first
        app.add_middleware(BearerAuthMiddleware, api_key=self.api_key)
        app.add_middleware(RequestLoggingMiddleware)
        app.add_middleware(ErrorHandlingMiddleware)
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "Mcp-Session-Id"],
        )

    # Proxy client

    def _auth_headers(self) -> Dict[str, str]:
        if self.api_key:
            return {"Authorization": f"Bearer {self.api_key}"}
        return {}

    async def proxy_request(
        self,
        method: str,
        path: str,
        params: Any = None,
        content: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        authenticate: bool = True,
    ) -> httpx.Response:
        """
        Send a request to the proxy.

        Raises:
            UpstreamError: If the proxy cannot be reached
        """
        out_headers = self._auth_headers() if authenticate else {}
        out_headers.update(headers or {})
        try:
            return await self.http.request(
                method,
                f"{self.proxy_url}{path}",
                params=params,
                content=content,
                headers=out_headers,
            )
        except httpx.HTTPError as e:
            raise UpstreamError("unreachable", f"Proxy request {method} {path} failed: {e}")

    async def fetch_json(self, path: str) -> Any:
        """GET a proxy path and decode its JSON body."""
        response = await self.proxy_request("GET", path)
        if response.status_code != 200:
            raise UpstreamError(
                "bad-status",
                f"proxy returned status {response.status_code}: {response.text.strip()}",
                status=response.status_code,
            )
        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise UpstreamError("malformed-response", f"proxy returned invalid JSON: {e}")

    @staticmethod
    def relay(response: httpx.Response) -> Response:
        headers = {k: v for k, v in response.headers.items() if k.lower() in RELAYED_HEADERS}
        return Response(
            content=response.content,
            status_code=response.status_code,
            headers=headers,
            media_type=response.headers.get("content-type", "application/json"),
        )

    async def forward(self, request: Request, path: str, authenticate: bool = True) -> Response:
        """Relay the incoming request to the same-shaped proxy path."""
        headers = {}
        for name in ("Content-Type", "Accept") + (() if authenticate else ("Authorization",)):
            value = request.headers.get(name)
            if value:
                headers[name] = value
        response = await self.proxy_request(
            request.method,
            path,
            params=list(request.query_params.multi_items()),
            content=await request.body() or None,
            headers=headers,
            authenticate=authenticate,
        )
        return self.relay(response)

    @staticmethod
    async def json_body(request: Request) -> Dict[str, Any]:
        try:
            data = json.loads(await request.body() or b"{}")
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ConfigError("Invalid request body")
        if not isinstance(data, dict):
            raise ConfigError("Invalid request body")
        return data

    # Route groups

    def _add_routes(self, app: FastAPI) -> None:
        """Register routes; specific paths first, ``/api/`` catch-all last."""
        app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")

        @app.get("/", response_class=HTMLResponse)
        async def index(request: Request):
            return self.templates.TemplateResponse(request, "index.html", {
                "title": "MCP-Compose Dashboard",
                "proxy_url": self.proxy_url,
                "api_key": self.api_key or "",
                "theme": self.theme,
                "port": self.port,
                "version": __version__,
                "servers": sorted(self.manifest.servers),
            })

        @app.get("/health")
        async def health():
            return {
                "status": "healthy",
                "timestamp": now_rfc3339(),
                "activity_store": self.bus is not None and self.bus.store is not None,
                "subscribers": self.bus.subscriber_count if self.bus else 0,
            }

        self._add_container_routes(app)
        self._add_discovery_routes(app)
        self._add_activity_routes(app)
        self._add_server_routes(app)
        self._add_oauth_routes(app)
        self._add_inspector_routes(app)
        self._add_websocket_routes(app)
        self._add_catch_all_routes(app)

        for route in app.routes:
            methods = getattr(route, "methods", None)
            label = ",".join(sorted(methods)) if methods else type(route).__name__
            logger.info(f"Registered route {label} {route.path}")

    def _add_container_routes(self, app: FastAPI) -> None:

        @app.get("/api/containers/{name}/logs")
        async def container_logs(name: str, request: Request):
            container = resolve_container(name)
            query = request.query_params
            tail = clamp_tail(query.get("tail"))
            timestamps = query.get("timestamps") == "true"

            if query.get("follow") == "true":
                return await self._stream_container_logs(container, tail, timestamps, query.get("since"))

            try:
                response = await self.proxy_request(
                    "GET", f"/api/containers/{container}/logs", params=list(query.multi_items())
                )
                if response.status_code == 200:
                    return self.relay(response)
            except UpstreamError as e:
                logger.info(f"Proxy logs unavailable for {container}, reading from engine: {e.message}")
            return await static_logs(self.runtime, container, tail, timestamps)

        @app.get("/api/containers/{name}/stats")
        async def container_stats(name: str):
            container = resolve_container(name)
            try:
                response = await self.proxy_request("GET", f"/api/containers/{container}/stats")
                if response.status_code == 200:
                    return self.relay(response)
            except UpstreamError as e:
                logger.info(f"Proxy stats unavailable for {container}, reading from engine: {e.message}")

            try:
                stats = await self.runtime.stats(container)
            except EngineError as e:
                return JSONResponse(
                    {"error": f"Failed to get stats: {e.message}", "runtime": self.runtime.name},
                    status_code=e.http_status,
                )
            stats["timestamp"] = now_rfc3339()
            return stats

    async def _stream_container_logs(
        self,
        container: str,
        tail: int,
        timestamps: bool,
        since: Optional[str],
    ) -> StreamingResponse:
        """Relay the proxy's SSE log stream, or read from the engine when it is unreachable."""
        params = {"follow": "true", "tail": str(tail), "timestamps": str(timestamps).lower()}
        if since:
            params["since"] = since
        try:
            request = self.http.build_request(
                "GET",
                f"{self.proxy_url}/api/containers/{container}/logs",
                params=params,
                headers={**self._auth_headers(), "Accept": "text/event-stream"},
                timeout=httpx.Timeout(self.proxy_timeout, read=None),
            )
            upstream = await self.http.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.info(f"Proxy log stream unavailable for {container}: {e}")
            upstream = None

        if upstream is not None and upstream.status_code == 200:
            return StreamingResponse(
                upstream.aiter_raw(),
                media_type="text/event-stream",
                headers=STREAM_HEADERS,
                background=BackgroundTask(upstream.aclose),
            )
        if upstream is not None:
            await upstream.aclose()

        if not await self.runtime.exists(container):
            raise NotFoundError(f"Container not found: {container}")
        return StreamingResponse(
            sse_log_events(self.runtime, container, tail, timestamps, since),
            media_type="text/event-stream",
            headers=STREAM_HEADERS,
        )

    def _add_discovery_routes(self, app: FastAPI) -> None:

        async def discovery(request: Request, path: str) -> Response:
            if request.method == "HEAD":
                return Response(status_code=200, media_type="application/json")
            return self.relay(await self.proxy_request("GET", path))

        @app.api_route("/api/servers", methods=["GET", "HEAD"])
        async def servers(request: Request):
            return await discovery(request, "/api/servers")

        @app.api_route("/api/status", methods=["GET", "HEAD"])
        async def status(request: Request):
            return await discovery(request, "/api/status")

        @app.api_route("/api/connections", methods=["GET", "HEAD"])
        async def connections(request: Request):
            return await discovery(request, "/api/connections")

    def _add_activity_routes(self, app: FastAPI) -> None:

        @app.post("/api/activity")
        async def activity_receive(request: Request):
            try:
                data = json.loads(await request.body())
            except (json.JSONDecodeError, UnicodeDecodeError):
                return JSONResponse({"error": "Invalid JSON"}, status_code=400)
            if not isinstance(data, dict):
                return JSONResponse({"error": "Invalid JSON"}, status_code=400)
            try:
                event = ActivityEvent.model_validate(data)
            except ValueError as e:
                return JSONResponse({"error": f"Invalid activity event: {e}"}, status_code=400)
            self.bus.publish(event)
            return JSONResponse({"status": "accepted"}, status_code=202)

        @app.get("/api/activity/history")
        async def activity_history(request: Request):
            if self.bus.store is None:
                return JSONResponse({"error": "Activity storage not available"}, status_code=503)
            limit = parse_limit(request.query_params.get("limit"))
            since = parse_since(request.query_params.get("since"))
            events = await self.bus.history(limit, since)
            return {"activities": [e.to_wire() for e in events], "count": len(events)}

        @app.get("/api/activity/stats")
        async def activity_stats():
            if self.bus.store is None:
                return JSONResponse({"error": "Activity storage not available"}, status_code=503)
            return await self.bus.stats()

    def _add_server_routes(self, app: FastAPI) -> None:

        async def server_action(request: Request, action: str) -> Response:
            body = await self.json_body(request)
            server = body.get("server")
            if not server:
                raise ConfigError("Server name required")

            if action == "start":
                return JSONResponse(
                    {"error": f"Server start is not available from the dashboard. Use CLI: mcp-compose start {server}"},
                    status_code=501,
                )

            container = canonical_name(server)
            if action == "stop":
                await self.runtime.stop(container)
            else:
                await self.runtime.restart(container)

            message = f"Container {container} {ACTION_PAST[action]} successfully"
            self.bus.emit("INFO", "service", message, server=server, client=client_ip(request))
            return JSONResponse({"success": message, "runtime": self.runtime.name})

        @app.post("/api/servers/start")
        async def server_start(request: Request):
            return await server_action(request, "start")

        @app.post("/api/servers/stop")
        async def server_stop(request: Request):
            return await server_action(request, "stop")

        @app.post("/api/servers/restart")
        async def server_restart(request: Request):
            return await server_action(request, "restart")

        @app.post("/api/proxy/reload")
        async def proxy_reload(request: Request):
            response = await self.proxy_request("POST", "/api/reload")
            if response.status_code == 200:
                self.bus.emit("INFO", "service", "Proxy configuration reloaded", client=client_ip(request))
            return self.relay(response)

        @app.get("/api/server-docs/{server}", response_class=HTMLResponse)
        async def server_docs(server: str):
            response = await self.proxy_request("GET", f"/{server}/docs")
            if response.status_code != 200:
                return self.relay(response)
            return HTMLResponse(rewrite_docs_links(response.text, server))

        @app.get("/api/server-openapi/{server}")
        async def server_openapi(server: str):
            return self.relay(await self.proxy_request("GET", f"/{server}/openapi.json"))

        @app.get("/api/server-direct/{server}")
        async def server_direct(server: str):
            servers = await self.fetch_json("/api/servers")
            if not isinstance(servers, dict) or server not in servers:
                raise NotFoundError(f"Server '{server}' not found")
            return servers[server]

        @app.get("/api/server-logs/{server}")
        async def server_logs(server: str, request: Request):
            tail = clamp_tail(request.query_params.get("tail"))
            return await static_logs(self.runtime, canonical_name(server), tail)

    def _add_oauth_routes(self, app: FastAPI) -> None:

        @app.get("/api/audit/entries")
        async def audit_entries(request: Request):
            try:
                response = await self.proxy_request(
                    "GET", "/api/audit/entries", params=list(request.query_params.multi_items())
                )
            except UpstreamError as e:
                logger.warning(f"Failed to get audit entries from proxy: {e.message}")
                return EMPTY_AUDIT_ENTRIES
            if response.status_code != 200:
                return EMPTY_AUDIT_ENTRIES
            return self.relay(response)

        @app.get("/api/audit/stats")
        async def audit_stats():
            try:
                response = await self.proxy_request("GET", "/api/audit/stats")
            except UpstreamError as e:
                logger.warning(f"Failed to get audit stats from proxy: {e.message}")
                return EMPTY_AUDIT_STATS
            if response.status_code != 200:
                return EMPTY_AUDIT_STATS
            return self.relay(response)

        @app.api_route("/api/oauth/{path:path}", methods=PROXY_METHODS)
        async def oauth_api(path: str, request: Request):
            return await self.forward(request, f"/api/oauth/{path}")

        @app.api_route("/oauth/{path:path}", methods=["GET", "POST"])
        async def oauth_flow(path: str, request: Request):
            if path != "callback":
                return await self.forward(request, f"/oauth/{path}", authenticate=False)

            try:
                response = await self.forward(request, "/oauth/callback", authenticate=False)
                if response.status_code < 500:
                    return response
                error = f"upstream returned status {response.status_code}"
            except UpstreamError as e:
                error = e.message

            logger.warning(f"OAuth callback relay failed, rendering fallback page: {error}")
            return HTMLResponse(callback_fallback_page(
                request.url.query,
                host=request.headers.get("host", "localhost"),
                upstream_error=error,
            ))

    def _add_inspector_routes(self, app: FastAPI) -> None:

        @app.post("/api/inspector/connect")
        async def inspector_connect(request: Request):
            body = await self.json_body(request)
            server = body.get("server")
            if not server:
                raise ConfigError("Server name required")
            if server == "__healthcheck__":
                return {"status": "available"}

            session = await self.inspector.create(server, owner=client_ip(request))
            return {
                "sessionId": session.id,
                "result": {
                    "protocolVersion": "2024-11-05",
                    "serverInfo": {"name": session.server_name, "version": "unknown"},
                    "capabilities": session.capabilities,
                },
            }

        @app.post("/api/inspector/request")
        async def inspector_request(request: Request):
            body = await self.json_body(request)
            session_id = body.get("sessionId")
            method = body.get("method")
            if not session_id or not method:
                raise ConfigError("SessionID and Method required")
            return await self.inspector.execute(session_id, method, body.get("params"))

        @app.post("/api/inspector/disconnect")
        async def inspector_disconnect(request: Request):
            body = await self.json_body(request)
            session_id = body.get("sessionId")
            if not session_id:
                raise ConfigError("SessionID required")
            await self.inspector.destroy(session_id)
            return {"status": "disconnected"}

        @app.get("/api/inspector/sessions")
        async def inspector_sessions():
            sessions = [s.to_summary() for s in self.inspector.list()]
            return {"sessions": sessions, "count": len(sessions)}

        @app.get("/api/task-scheduler/health")
        async def task_scheduler_health():
            try:
                return await self.scheduler.health()
            except MCPComposeError as e:
                return JSONResponse(
                    {"available": False, "error": e.message, "serverName": self.scheduler.server},
                    status_code=503,
                )

        @app.api_route("/api/task-scheduler/{path:path}", methods=["GET", "POST"])
        async def task_scheduler(path: str, request: Request):
            body = await self.json_body(request) if request.method == "POST" else None
            result = await self.scheduler.dispatch(request.method, f"/{path}", body)
            return JSONResponse(result)

    def _add_websocket_routes(self, app: FastAPI) -> None:

        @app.websocket("/ws/logs")
        async def ws_logs(websocket: WebSocket):
            if not websocket_authorized(websocket, self.api_key):
                await websocket.close(code=1008)
                return
            await websocket.accept()
            socket = SafeSocket(websocket)
            server = websocket.query_params.get("server")
            if not server:
                await socket.send_json({"error": "server query parameter required"})
                await socket.close()
                return

            streamer = LogStreamer(
                self.runtime,
                http=self.http,
                proxy_url=self.proxy_url,
                api_key=self.api_key,
                tail=clamp_tail(websocket.query_params.get("tail"), default=DEFAULT_LOG_TAIL),
            )
            try:
                await streamer.stream(socket, server)
            except WebSocketDisconnect:
                logger.debug(f"Log socket for '{server}' disconnected")
            finally:
                await socket.close()

        @app.websocket("/ws/metrics")
        async def ws_metrics(websocket: WebSocket):
            if not websocket_authorized(websocket, self.api_key):
                await websocket.close(code=1008)
                return
            await websocket.accept()
            socket = SafeSocket(websocket)
            try:
                await MetricsStreamer(self.fetch_json).stream(socket)
            except WebSocketDisconnect:
                logger.debug("Metrics socket disconnected")
            finally:
                await socket.close()

        @app.websocket("/ws/activity")
        async def ws_activity(websocket: WebSocket):
            if not websocket_authorized(websocket, self.api_key):
                await websocket.close(code=1008)
                return
            await websocket.accept()
            client = client_ip(websocket)
            logger.info(f"Activity subscriber connected from {client}")

            subscriber = await self.bus.subscribe(websocket, client=client)
            watcher = asyncio.create_task(SafeSocket(websocket).wait_closed())
            dropped = asyncio.create_task(subscriber.done.wait())
            try:
                await asyncio.wait({watcher, dropped}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (watcher, dropped):
                    task.cancel()
                await asyncio.gather(watcher, dropped, return_exceptions=True)
                await self.bus.unsubscribe(subscriber)
                logger.info(f"Activity subscriber from {client} disconnected")

    def _add_catch_all_routes(self, app: FastAPI) -> None:

        @app.api_route("/api/servers/{path:path}", methods=PROXY_METHODS)
        async def servers_proxy(path: str, request: Request):
            return await self.forward(request, f"/api/servers/{path}")

        @app.api_route("/api/{path:path}", methods=PROXY_METHODS)
        async def api_proxy(path: str, request: Request):
            logger.info(f"Catch-all relaying {request.method} /api/{path} to proxy")
            return await self.forward(request, f"/api/{path}")

    def run(self) -> None:
        """Serve until interrupted."""
        logger.info(f"Starting MCP-Compose Dashboard at http://{self.host}:{self.port}")
        uvicorn.run(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            timeout_keep_alive=HTTP_IDLE_TIMEOUT,
        )


def create_dashboard_server(
    manifest: ComposeManifest,
    runtime: ContainerRuntime,
    settings: Optional[Settings] = None,
    host: Optional[str] = None,
    port: Optional[int] = None,
) -> DashboardServer:
    """
    Build a dashboard from the manifest and process settings.

    Manifest values already carry the ``MCP_*``/``POSTGRES_URL``
    environment overrides; process settings fill what the manifest leaves
    unset.
    """
    settings = settings or get_settings()
    dashboard = manifest.dashboard
    return DashboardServer(
        manifest,
        runtime,
        proxy_url=dashboard.proxy_url or settings.proxy.url,
        api_key=manifest.proxy_auth.api_key or settings.proxy.api_key,
        host=host or dashboard.host,
        port=port or dashboard.port,
        theme=dashboard.theme,
        postgres_url=dashboard.postgres_url or settings.activity.postgres_url,
        retention_days=dashboard.activity_retention_days,
        proxy_timeout=settings.dashboard.proxy_timeout,
    )
