"""
Pytest configuration and fixtures for MCP Compose testing.

Provides a sample manifest and an in-memory container runtime so the
orchestrator, proxy and dashboard can be exercised without an engine.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from mcp_compose.core.exceptions import EngineError
from mcp_compose.core.manifest import ComposeManifest, parse_manifest
from mcp_compose.core.models import ContainerOptions, WorkloadStatus
from mcp_compose.core.runtime.base import ContainerRuntime, ProcessHandle


SAMPLE_MANIFEST: Dict[str, Any] = {
    "version": "1",
    "servers": {
        "filesystem": {
            "image": "mcp/filesystem:latest",
            "protocol": "stdio",
            "command": "node",
            "args": ["/app/index.js", "/data"],
            "capabilities": ["tools", "resources"],
            "volumes": ["fs-data:/data"],
        },
        "weather": {
            "image": "mcp/weather:latest",
            "protocol": "http",
            "http_port": 8000,
            "http_path": "/mcp",
            "capabilities": ["tools"],
            "depends_on": ["filesystem"],
        },
        "notes": {
            "image": "mcp/notes:latest",
            "protocol": "stdio",
            "stdio_hoster_port": 9000,
            "depends_on": ["weather"],
        },
    },
}


class FakeProcess:
    """Stands in for an engine child process with canned output."""

    def __init__(self, lines: List[bytes], returncode: int = 0):
        self.stdout = asyncio.StreamReader()
        for line in lines:
            self.stdout.feed_data(line)
        self.stdout.feed_eof()
        self.stderr = asyncio.StreamReader()
        self.stderr.feed_eof()
        self.stdin = None
        self.returncode: Optional[int] = None
        self._exit = returncode
        self.killed = False

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    async def wait(self) -> int:
        if self.returncode is None:
            self.returncode = self._exit
        return self.returncode


class FakeRuntime(ContainerRuntime):
    """In-memory runtime recording every call."""

    name = "fake"

    def __init__(self):
        self.containers: Dict[str, WorkloadStatus] = {}
        self.started: List[ContainerOptions] = []
        self.stopped: List[str] = []
        self.restarted: List[str] = []
        self.networks: Dict[str, str] = {}
        self.log_text: Dict[str, str] = {}
        self.fail_start: Dict[str, str] = {}

    async def start(self, options: ContainerOptions) -> str:
        if options.name in self.fail_start:
            raise EngineError("start-failed", self.fail_start[options.name])
        self.started.append(options)
        self.containers[options.name] = WorkloadStatus.RUNNING
        return f"id-{options.name}"

    async def stop(self, name: str) -> None:
        self.stopped.append(name)
        self.containers.pop(name, None)

    async def restart(self, name: str) -> None:
        if name not in self.containers:
            raise EngineError("not-found", f"Container '{name}' not found")
        self.restarted.append(name)

    async def status(self, name: str) -> WorkloadStatus:
        return self.containers.get(name, WorkloadStatus.STOPPED)

    async def logs(self, name, follow=False, tail=None, timestamps=False, since=None) -> ProcessHandle:
        lines = [f"{line}\n".encode() for line in self.log_text.get(name, "").splitlines()]
        return ProcessHandle(FakeProcess(lines), f"logs {name}")

    async def read_logs(self, name: str, tail: Optional[int] = None, timestamps: bool = False) -> str:
        if name not in self.containers:
            raise EngineError("not-found", f"Container '{name}' not found")
        lines = self.log_text.get(name, "").splitlines()
        if tail is not None:
            lines = lines[-tail:]
        return "\n".join(lines)

    async def stats(self, name: str) -> Dict[str, Any]:
        if name not in self.containers:
            raise EngineError("not-found", f"Container '{name}' not found")
        return {"name": name, "cpu_perc": "1.00%", "mem_usage": "10MiB / 1GiB", "runtime": self.name}

    async def container_id(self, name: str) -> Optional[str]:
        return f"{name}-0123456789abcdef" if name in self.containers else None

    async def exists(self, name: str) -> bool:
        return name in self.containers

    async def image_exists(self, image: str) -> bool:
        return True

    async def build(self, options: ContainerOptions) -> str:
        return options.image or f"{options.name}:latest"

    async def pull(self, image: str) -> None:
        pass

    async def network_exists(self, name: str) -> bool:
        return name in self.networks

    async def network_create(self, name: str, driver: str = "bridge") -> None:
        self.networks[name] = driver

    async def network_remove(self, name: str) -> None:
        self.networks.pop(name, None)

    async def network_connect(self, container: str, network: str) -> None:
        pass

    async def exec(self, name: str, command: List[str], interactive: bool = True) -> ProcessHandle:
        return ProcessHandle(FakeProcess([]), f"exec {name}")


@pytest.fixture
def manifest_data() -> Dict[str, Any]:
    """Fresh copy of the sample manifest document."""
    import copy
    return copy.deepcopy(SAMPLE_MANIFEST)


@pytest.fixture
def manifest(manifest_data) -> ComposeManifest:
    return parse_manifest(manifest_data)


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def manifest_file(tmp_path, monkeypatch):
    """Write a minimal manifest to disk and isolate env overrides."""
    for var in ("MCP_API_KEY", "MCP_PROXY_URL", "MCP_DASHBOARD_HOST", "MCP_DASHBOARD_PORT",
                "MCP_DASHBOARD_THEME", "POSTGRES_URL", "POSTGRES_PASSWORD", "MCP_ENV"):
        monkeypatch.delenv(var, raising=False)
    path = tmp_path / "mcp-compose.yaml"
    path.write_text(
        "version: '1'\n"
        "servers:\n"
        "  echo:\n"
        "    image: ${ECHO_IMAGE:-mcp/echo:latest}\n"
        "    protocol: http\n"
        "    http_port: 8080\n"
        "    env:\n"
        "      LOG_LEVEL: info\n"
        "environments:\n"
        "  production:\n"
        "    servers:\n"
        "      echo:\n"
        "        env:\n"
        "          LOG_LEVEL: warn\n"
    )
    return path
