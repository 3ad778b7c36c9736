"""
Live log and metric streaming.

Log tails are relayed to WebSocket clients either from the proxy's SSE
endpoint or, when the proxy is unreachable, straight from the engine's
``logs -f``. Every stream runs its reader, ping and disconnect-watch
tasks under one cancellation scope tied to the socket: the first task
to finish or fail tears the rest down and kills the engine child.
"""

import asyncio
import json
import re
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

from mcp_compose.core.constants import (
    CONTAINER_PREFIX,
    DEFAULT_LOG_TAIL,
    DEFAULT_SSE_TAIL,
    MAX_LOG_TAIL,
    METRICS_INTERVAL,
    WS_PING_INTERVAL,
    WS_PING_TIMEOUT,
    WS_WRITE_TIMEOUT,
)
from mcp_compose.core.exceptions import EngineError, NotFoundError
from mcp_compose.core.models import canonical_name
from mcp_compose.core.runtime.base import ContainerRuntime
from mcp_compose.utils.logging import get_logger

logger = get_logger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

SSE_YIELD_EVERY = 50
SSE_YIELD_DELAY = 0.01

_RFC3339_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{1,9})?(Z|[+-]\d{2}:\d{2})$"
)


def now_rfc3339() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def detect_level(line: str) -> str:
    """Infer a severity from substrings of a log line."""
    text = line.upper()
    if "ERROR" in text or "FATAL" in text or "PANIC" in text:
        return "ERROR"
    if "WARN" in text:
        return "WARN"
    if "INFO" in text:
        return "INFO"
    if "DEBUG" in text or "TRACE" in text:
        return "DEBUG"
    return "INFO"


def sse_level(content: str) -> str:
    """Lowercase level used in SSE log records."""
    text = content.lower()
    if "err" in text:
        return "error"
    if "warn" in text:
        return "warning"
    if "info" in text:
        return "info"
    if "debug" in text:
        return "debug"
    return "info"


def parse_log_line(line: str, line_number: int = 0) -> Dict[str, Any]:
    """
    Split an engine log line into an SSE log record.

    A leading RFC3339 timestamp (as produced by ``logs --timestamps``) is
    moved to ``original_timestamp`` and the level is inferred from the
    remaining content.
    """
    entry: Dict[str, Any] = {
        "line": line_number,
        "content": line,
        "timestamp": now_rfc3339(),
    }

    head, sep, rest = line.partition(" ")
    if sep and _RFC3339_RE.match(head):
        entry["original_timestamp"] = head
        entry["content"] = rest

    entry["level"] = sse_level(entry["content"])
    return entry


def clamp_tail(value: Any, default: int = DEFAULT_SSE_TAIL) -> int:
    """Parse a ``tail`` query value; anything outside [1, 10000] becomes ``default``."""
    try:
        tail = int(value)
    except (TypeError, ValueError):
        return default
    if tail < 1 or tail > MAX_LOG_TAIL:
        return default
    return tail


def sse_frame(event: str, data: Any) -> str:
    if not isinstance(data, str):
        data = json.dumps(data)
    return f"event: {event}\ndata: {data}\n\n"


def resolve_container(name: str) -> str:
    """Accept either a server name or a canonical container name."""
    if name.startswith(f"{CONTAINER_PREFIX}-"):
        return name
    return canonical_name(name)


async def sse_log_events(
    runtime: ContainerRuntime,
    container: str,
    tail: int = DEFAULT_SSE_TAIL,
    timestamps: bool = False,
    since: Optional[str] = None,
) -> AsyncIterator[str]:
    """
    Yield SSE frames for a followed container log.

    Emits ``connected`` first, one ``log`` frame per line, then
    ``completed`` on clean end or ``error`` when the engine fails.
    """
    yield sse_frame("connected", {"container": container, "message": "Log stream connected"})

    try:
        handle = await runtime.logs(container, follow=True, tail=tail, timestamps=timestamps, since=since)
    except EngineError as e:
        yield sse_frame("error", {"error": e.message})
        return

    queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=1000)

    async def _pump(reader: Optional[asyncio.StreamReader]) -> None:
        try:
            if reader is None:
                return
            while True:
                raw = await reader.readline()
                if not raw:
                    return
                await queue.put(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
        finally:
            await queue.put(None)

    pumps = [asyncio.create_task(_pump(handle.stdout)), asyncio.create_task(_pump(handle.stderr))]
    try:
        finished = 0
        count = 0
        while finished < len(pumps):
            line = await queue.get()
            if line is None:
                finished += 1
                continue
            if not line:
                continue
            count += 1
            yield sse_frame("log", parse_log_line(line, count))
            if count % SSE_YIELD_EVERY == 0:
                await asyncio.sleep(SSE_YIELD_DELAY)

        code = await handle.wait()
        if code == 0:
            yield sse_frame("completed", {"message": "Log stream completed"})
        else:
            yield sse_frame("error", {"error": f"log command exited with status {code}"})
    finally:
        for task in pumps:
            task.cancel()
        await handle.close()


class SafeSocket:
    """Serializes writes to a Starlette-style WebSocket.

    The wrapped object needs ``send_text``, ``receive`` and ``close``.
    """

    def __init__(self, websocket: Any, write_timeout: float = WS_WRITE_TIMEOUT):
        self.websocket = websocket
        self.write_timeout = write_timeout
        self.lock = asyncio.Lock()

    async def send_json(self, data: Any, timeout: Optional[float] = None) -> None:
        payload = json.dumps(data)
        async with self.lock:
            await asyncio.wait_for(
                self.websocket.send_text(payload),
                timeout=timeout or self.write_timeout,
            )

    async def send_text(self, data: str) -> None:
        async with self.lock:
            await asyncio.wait_for(self.websocket.send_text(data), timeout=self.write_timeout)

    async def ping(self, timeout: float = WS_PING_TIMEOUT) -> None:
        await self.send_json({"type": "ping", "timestamp": now_rfc3339()}, timeout=timeout)

    async def wait_closed(self) -> None:
        """Return once the client disconnects."""
        while True:
            message = await self.websocket.receive()
            if message.get("type") == "websocket.disconnect":
                return

    async def close(self, code: int = 1000) -> None:
        try:
            await self.websocket.close(code=code)
        except RuntimeError:
            # Already closed
            pass


async def _ping_loop(socket: SafeSocket, interval: float, timeout: float) -> None:
    while True:
        await asyncio.sleep(interval)
        await socket.ping(timeout)


async def _run_scope(tasks: List[asyncio.Task]) -> asyncio.Task:
    """Wait for the first task to finish, cancel the rest, return the finisher."""
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        raise
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    return next(iter(done))


class LogStreamer:
    """Relays one server's log tail to a WebSocket."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        http: Optional[httpx.AsyncClient] = None,
        proxy_url: Optional[str] = None,
        api_key: Optional[str] = None,
        tail: int = DEFAULT_LOG_TAIL,
        ping_interval: float = WS_PING_INTERVAL,
        ping_timeout: float = WS_PING_TIMEOUT,
    ):
        self.runtime = runtime
        self.http = http
        self.proxy_url = proxy_url.rstrip("/") if proxy_url else None
        self.api_key = api_key
        self.tail = tail
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout

    def log_message(self, server: str, line: str) -> Dict[str, str]:
        return {
            "timestamp": now_rfc3339(),
            "server": server,
            "level": detect_level(line),
            "message": line,
        }

    async def stream(self, socket: SafeSocket, server: str) -> None:
        """Stream logs until the socket or the log source goes away."""
        container = canonical_name(server)
        logger.info(f"Starting log stream for '{server}'", extra={"server": server})

        if self.http is not None and self.proxy_url:
            if await self._stream_via_proxy(socket, server, container):
                return
            logger.info(
                f"Proxy log stream unavailable, falling back to engine for '{container}'",
                extra={"server": server},
            )

        await self._stream_via_engine(socket, server, container)

    async def _stream_via_proxy(self, socket: SafeSocket, server: str, container: str) -> bool:
        url = f"{self.proxy_url}/api/containers/{container}/logs"
        params = {"follow": "true", "tail": str(self.tail)}
        headers = {"Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            request = self.http.build_request("GET", url, params=params, headers=headers)
            response = await self.http.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.debug(f"Proxy log stream request failed: {e}")
            return False

        if response.status_code != 200:
            await response.aclose()
            logger.debug(f"Proxy log stream returned {response.status_code}")
            return False

        async def _relay() -> str:
            event = ""
            async for line in response.aiter_lines():
                if line.startswith("event: "):
                    event = line[len("event: "):].strip()
                    continue
                if not line.startswith("data: "):
                    continue
                try:
                    data = json.loads(line[len("data: "):])
                except json.JSONDecodeError:
                    continue
                if event == "error":
                    return str(data.get("error", "upstream error"))
                if event == "completed":
                    return "completed"
                content = data.get("content") if isinstance(data, dict) else None
                if isinstance(content, str):
                    await socket.send_json(self.log_message(server, content))
            return "proxy stream closed"

        relay = asyncio.create_task(_relay())
        pinger = asyncio.create_task(_ping_loop(socket, self.ping_interval, self.ping_timeout))
        watcher = asyncio.create_task(socket.wait_closed())
        try:
            finished = await _run_scope([relay, pinger, watcher])
        finally:
            await response.aclose()

        if finished is relay and not relay.cancelled():
            error = relay.exception()
            if error is None:
                await self._send_final(socket, relay.result())
            elif isinstance(error, httpx.HTTPError):
                await self._send_final(socket, str(error))
        return True

    async def _stream_via_engine(self, socket: SafeSocket, server: str, container: str) -> None:
        try:
            handle = await self.runtime.logs(container, follow=True, tail=self.tail)
        except EngineError as e:
            await self._send_error(socket, f"Failed to start log stream: {e.message}")
            return

        readers = asyncio.ensure_future(asyncio.gather(
            self._pump(socket, server, handle.stdout),
            self._pump(socket, server, handle.stderr),
        ))
        pinger = asyncio.create_task(_ping_loop(socket, self.ping_interval, self.ping_timeout))
        watcher = asyncio.create_task(socket.wait_closed())

        try:
            finished = await _run_scope([readers, pinger, watcher])
            if finished is readers and not readers.cancelled() and readers.exception() is None:
                code = await handle.wait()
                await self._send_final(socket, f"exit status {code}")
        finally:
            await handle.close()
            logger.info(f"Log stream for '{server}' closed", extra={"server": server})

    async def _pump(self, socket: SafeSocket, server: str, reader: Optional[asyncio.StreamReader]) -> None:
        if reader is None:
            return
        while True:
            raw = await reader.readline()
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if line:
                await socket.send_json(self.log_message(server, line))

    async def _send_final(self, socket: SafeSocket, reason: str) -> None:
        await self._send_error(socket, f"log stream ended: {reason}")

    async def _send_error(self, socket: SafeSocket, message: str) -> None:
        try:
            await socket.send_json({"error": message})
        except (asyncio.TimeoutError, RuntimeError, ConnectionError, OSError) as e:
            logger.debug(f"Could not deliver final frame: {e}")


class MetricsStreamer:
    """Pushes proxy status and connection counters to a WebSocket."""

    def __init__(
        self,
        fetch: Callable[[str], Awaitable[Dict[str, Any]]],
        interval: float = METRICS_INTERVAL,
        ping_interval: float = WS_PING_INTERVAL,
        ping_timeout: float = WS_PING_TIMEOUT,
    ):
        """
        Args:
            fetch: Coroutine returning the decoded JSON of a proxy path
        """
        self.fetch = fetch
        self.interval = interval
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout

    async def snapshot(self) -> Dict[str, Any]:
        try:
            status = await self.fetch("/api/status")
        except Exception as e:
            return {"error": f"Failed to get status: {e}"}
        try:
            connections = await self.fetch("/api/connections")
        except Exception as e:
            return {"error": f"Failed to get connections: {e}"}
        return {
            "timestamp": now_rfc3339(),
            "status": status,
            "connections": connections,
        }

    async def _tick_loop(self, socket: SafeSocket) -> None:
        while True:
            await socket.send_json(await self.snapshot())
            await asyncio.sleep(self.interval)

    async def stream(self, socket: SafeSocket) -> None:
        ticker = asyncio.create_task(self._tick_loop(socket))
        pinger = asyncio.create_task(_ping_loop(socket, self.ping_interval, self.ping_timeout))
        watcher = asyncio.create_task(socket.wait_closed())
        await _run_scope([ticker, pinger, watcher])
        logger.debug("Metrics stream closed")


async def static_logs(
    runtime: ContainerRuntime,
    container: str,
    tail: int = DEFAULT_SSE_TAIL,
    timestamps: bool = False,
) -> Dict[str, Any]:
    """
    Read a container's recent logs as parsed entries.

    Raises:
        NotFoundError: If the container does not exist
        EngineError: If the engine cannot read the logs
    """
    if not await runtime.exists(container):
        raise NotFoundError(f"Container not found: {container}")

    text = await runtime.read_logs(container, tail=tail, timestamps=timestamps)
    lines = [line for line in text.splitlines() if line.strip()]
    return {
        "container": container,
        "logs": [parse_log_line(line, i + 1) for i, line in enumerate(lines)],
        "tail": tail,
        "timestamp": now_rfc3339(),
        "title": "Logs",
    }
