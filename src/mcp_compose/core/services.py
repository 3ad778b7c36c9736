"""
Auxiliary services owned by the orchestrator.

The memory server (with its postgres database), the task scheduler and
the containerized dashboard run next to the declared MCP servers. Each
service builds its image from an embedded Dockerfile when the image is
missing, brings up what it depends on, starts its container and waits for
the engine to report it running.
"""

import asyncio
import shutil
import tempfile
import time
from importlib import metadata
from pathlib import Path
from typing import Dict, List, Optional

import toml

from mcp_compose.core.activity.bus import ActivityPublisher, NullPublisher
from mcp_compose.core.constants import (
    ACTIVITY_WEBHOOK_URL,
    CONTAINER_PREFIX,
    DASHBOARD_CONTAINER,
    DEFAULT_DASHBOARD_PORT,
    DEFAULT_MEMORY_PORT,
    DEFAULT_NETWORK,
    DEFAULT_PROXY_PORT,
    DISTRIBUTION_NAME,
    ENGINE_SOCKETS,
    FAILED_START_LOG_LINES,
    MEMORY_CONTAINER,
    MEMORY_POSTGRES_CONTAINER,
    PROXY_CONTAINER,
    SERVICE_HEALTH_INTERVAL,
    SERVICE_HEALTH_TIMEOUT,
    TASK_SCHEDULER_CONTAINER,
)
from mcp_compose.core.exceptions import ConfigError, EngineError, MCPComposeError, TimeoutError
from mcp_compose.core.manifest import ComposeManifest
from mcp_compose.core.models import BuildOptions, ContainerOptions, SecurityContext, WorkloadStatus
from mcp_compose.core.runtime.base import ContainerRuntime
from mcp_compose.utils.logging import get_logger

logger = get_logger(__name__)

SYSTEM_LABEL = f"{CONTAINER_PREFIX}.system"
ROLE_LABEL = f"{CONTAINER_PREFIX}.role"
RESTART_POLICY = "unless-stopped"
NO_NEW_PRIVILEGES = "no-new-privileges:true"
DEFAULT_PROXY_URL = f"http://{PROXY_CONTAINER}:{DEFAULT_PROXY_PORT}"

MEMORY_DOCKERFILE = """\
FROM golang:1.21-alpine AS builder
RUN apk add --no-cache git gcc musl-dev ca-certificates
WORKDIR /build
RUN git clone https://github.com/phildougherty/mcp-compose-memory.git .
RUN go mod tidy && go mod download
RUN CGO_ENABLED=1 GOOS=linux go build -a -installsuffix cgo -ldflags="-s -w" -o mcp-compose-memory .

FROM alpine:3.18
RUN apk --no-cache add ca-certificates tzdata postgresql-client wget
WORKDIR /app
COPY --from=builder /build/mcp-compose-memory .
RUN chmod +x ./mcp-compose-memory && mkdir -p /data && chmod 755 /data
EXPOSE 3001
HEALTHCHECK --interval=30s --timeout=5s --retries=3 --start-period=15s \\
    CMD wget --no-verbose --tries=1 --spider http://localhost:3001/health || exit 1
CMD ["./mcp-compose-memory", "--host", "0.0.0.0", "--port", "3001"]
"""

TASK_SCHEDULER_DOCKERFILE = """\
FROM golang:1.21-alpine AS builder
RUN apk add --no-cache git gcc musl-dev ca-certificates
WORKDIR /build
RUN git clone https://github.com/phildougherty/mcp-cron-persistent.git .
RUN go mod download
RUN CGO_ENABLED=1 GOOS=linux go build -ldflags="-s -w" -o mcp-cron ./cmd/mcp-cron

FROM alpine:3.18
RUN apk --no-cache add ca-certificates tzdata sqlite wget
WORKDIR /app
COPY --from=builder /build/mcp-cron .
RUN mkdir -p /data /workspace
EXPOSE 8080
CMD ["/app/mcp-cron", "--transport", "sse", "--address", "0.0.0.0", "--port", "8080"]
"""

DASHBOARD_DOCKERFILE = """\
FROM python:3.11-slim
RUN apt-get update \\
    && apt-get install -y --no-install-recommends docker.io curl \\
    && rm -rf /var/lib/apt/lists/*
RUN useradd -u 1000 -m dashboard
COPY . /src
RUN pip install --no-cache-dir /src
WORKDIR /app
USER dashboard
EXPOSE 3001
CMD ["mcp-compose", "--file", "/app/mcp-compose.yaml", "dashboard", "--native", "--host", "0.0.0.0", "--port", "3001"]
"""


class AuxiliaryService:
    """
    Start/stop/restart/status for one system container.

    Subclasses set the container name, image, embedded Dockerfile and
    role, and build the container options from the manifest.
    """

    name: str = ""
    container: str = ""
    image: str = ""
    dockerfile: str = ""
    role: str = ""

    def __init__(
        self,
        manifest: ComposeManifest,
        runtime: ContainerRuntime,
        publisher: Optional[ActivityPublisher] = None,
        network: str = DEFAULT_NETWORK,
        health_timeout: float = SERVICE_HEALTH_TIMEOUT,
        health_interval: float = SERVICE_HEALTH_INTERVAL,
        restart_delay: float = 1.0,
    ):
        self.manifest = manifest
        self.runtime = runtime
        self.publisher = publisher or NullPublisher()
        self.network = network
        self.health_timeout = health_timeout
        self.health_interval = health_interval
        self.restart_delay = restart_delay

    def options(self) -> ContainerOptions:
        raise NotImplementedError

    def system_labels(self, role: Optional[str] = None) -> Dict[str, str]:
        return {SYSTEM_LABEL: "true", ROLE_LABEL: role or self.role}

    def _event(self, level: str, message: str, **details) -> None:
        self.publisher.emit(level, "service", message, server=self.name, details=details or None)

    async def status(self, container: Optional[str] = None) -> WorkloadStatus:
        try:
            return await self.runtime.status(container or self.container)
        except EngineError as e:
            logger.debug(f"Status check failed for '{container or self.container}': {e}")
            return WorkloadStatus.UNKNOWN

    async def ensure_network(self) -> None:
        if not await self.runtime.network_exists(self.network):
            await self.runtime.network_create(self.network)
            logger.info(f"Created {self.network} network for {self.name}")

    async def ensure_image(self) -> None:
        """Build the service image from its embedded Dockerfile if missing."""
        if await self.runtime.image_exists(self.image):
            return

        logger.info(f"Building image '{self.image}' for {self.name}")
        self._event("INFO", f"Building {self.name} image", image=self.image)
        with tempfile.TemporaryDirectory(prefix=f"{self.container}-") as context:
            (Path(context) / "Dockerfile").write_text(self.dockerfile)
            self.prepare_context(Path(context))
            await self.runtime.build(ContainerOptions(
                name=self.container,
                image=self.image,
                build=BuildOptions(context=context, dockerfile="Dockerfile"),
            ))

    def prepare_context(self, context: Path) -> None:
        """Add files next to the Dockerfile before the image is built."""

    async def wait_running(self, container: Optional[str] = None) -> None:
        """
        Poll status until the container reports running.

        Raises:
            EngineError: ``start-failed`` if the container exits
            TimeoutError: If it is not running within the health timeout
        """
        target = container or self.container
        deadline = time.monotonic() + self.health_timeout
        while time.monotonic() < deadline:
            status = await self.status(target)
            if status == WorkloadStatus.RUNNING:
                return
            if status == WorkloadStatus.STOPPED:
                raise EngineError(
                    "start-failed",
                    f"Container '{target}' exited unexpectedly",
                    stderr_tail=await self._log_tail(target),
                )
            await asyncio.sleep(self.health_interval)
        raise TimeoutError(f"Container '{target}' did not become healthy within {self.health_timeout}s")

    async def _log_tail(self, container: str) -> str:
        try:
            return await self.runtime.read_logs(container, tail=FAILED_START_LOG_LINES)
        except EngineError:
            return ""

    async def start_dependencies(self) -> None:
        pass

    async def start(self) -> None:
        """Bring the service up; a no-op when it is already running."""
        if await self.status() == WorkloadStatus.RUNNING:
            logger.info(f"{self.name} is already running")
            return

        self._event("INFO", f"Starting {self.name}")
        try:
            await self.start_dependencies()
            await self.ensure_network()
            await self.ensure_image()
            container_id = await self.runtime.start(self.options())
            await self.wait_running()
        except MCPComposeError as e:
            self._event("ERROR", f"Failed to start {self.name}: {e.message}")
            raise

        logger.info(f"{self.name} started", extra={"container": self.container, "id": container_id[:12]})
        self._event("INFO", f"{self.name} started", container=self.container)

    async def stop(self) -> None:
        self._event("INFO", f"Stopping {self.name}")
        await self.runtime.stop(self.container)
        logger.info(f"{self.name} stopped", extra={"container": self.container})
        self._event("INFO", f"{self.name} stopped", container=self.container)

    async def restart(self) -> None:
        await self.stop()
        await asyncio.sleep(self.restart_delay)
        await self.start()

    async def describe(self) -> Dict[str, str]:
        return {
            "service": self.name,
            "container": self.container,
            "image": self.image,
            "status": (await self.status()).value,
        }


class MemoryService(AuxiliaryService):
    """Knowledge-graph memory server backed by postgres."""

    name = "memory"
    container = MEMORY_CONTAINER
    image = f"{MEMORY_CONTAINER}:latest"
    dockerfile = MEMORY_DOCKERFILE
    role = "memory"
    postgres_image = "postgres:15-alpine"

    def database_url(self) -> str:
        config = self.manifest.memory
        if config.database_url:
            url = config.database_url
            if "sslmode=" not in url:
                url += "&sslmode=disable" if "?" in url else "?sslmode=disable"
            return url
        return (
            f"postgresql://{config.postgres_user}:{config.postgres_password}"
            f"@{MEMORY_POSTGRES_CONTAINER}:5432/{config.postgres_db}?sslmode=disable"
        )

    def postgres_options(self) -> ContainerOptions:
        config = self.manifest.memory
        volumes = list(config.volumes) or ["postgres-memory-data:/var/lib/postgresql/data"]
        return ContainerOptions(
            name=MEMORY_POSTGRES_CONTAINER,
            image=self.postgres_image,
            env={
                "POSTGRES_DB": config.postgres_db,
                "POSTGRES_USER": config.postgres_user,
                "POSTGRES_PASSWORD": config.postgres_password,
            },
            volumes=volumes,
            user="postgres",
            cpus=config.postgres_cpus,
            memory=config.postgres_memory,
            security_opt=[NO_NEW_PRIVILEGES],
            networks=[self.network],
            labels=self.system_labels("database"),
            restart=RESTART_POLICY,
        )

    def options(self) -> ContainerOptions:
        config = self.manifest.memory
        return ContainerOptions(
            name=self.container,
            image=self.image,
            ports=[f"{config.port}:{DEFAULT_MEMORY_PORT}"],
            env={"NODE_ENV": "production", "DATABASE_URL": self.database_url()},
            user="root",
            cpus=config.cpus,
            memory=config.memory,
            security_opt=[NO_NEW_PRIVILEGES],
            networks=[self.network],
            labels=self.system_labels(),
            restart=RESTART_POLICY,
        )

    async def start_dependencies(self) -> None:
        if not self.manifest.memory.postgres_enabled:
            return
        if await self.status(MEMORY_POSTGRES_CONTAINER) == WorkloadStatus.RUNNING:
            return
        logger.info("Starting postgres-memory database")
        await self.ensure_network()
        await self.runtime.start(self.postgres_options())
        await self.wait_running(MEMORY_POSTGRES_CONTAINER)
        self._event("INFO", "postgres-memory started", container=MEMORY_POSTGRES_CONTAINER)

    async def stop(self) -> None:
        """Stop the memory server, then its database."""
        self._event("INFO", f"Stopping {self.name}")
        errors: List[str] = []
        for container in (self.container, MEMORY_POSTGRES_CONTAINER):
            try:
                await self.runtime.stop(container)
            except EngineError as e:
                logger.warning(f"Failed to stop {container}: {e}")
                errors.append(f"{container}: {e.message}")
        if errors:
            self._event("WARN", f"{self.name} stopped with errors", errors=errors)
        else:
            self._event("INFO", f"{self.name} stopped", container=self.container)


class TaskSchedulerService(AuxiliaryService):
    """Cron-style task scheduler speaking MCP over SSE."""

    name = "task-scheduler"
    container = TASK_SCHEDULER_CONTAINER
    image = f"{TASK_SCHEDULER_CONTAINER}:latest"
    dockerfile = TASK_SCHEDULER_DOCKERFILE
    role = "task-scheduler"

    def environment(self) -> Dict[str, str]:
        config = self.manifest.task_scheduler
        env = {
            "MCP_CRON_SERVER_TRANSPORT": "sse",
            "MCP_CRON_SERVER_ADDRESS": "0.0.0.0",
            "MCP_CRON_SERVER_PORT": str(config.port),
            "MCP_CRON_DATABASE_PATH": config.database_path,
            "MCP_CRON_DATABASE_ENABLED": "true",
            "MCP_CRON_LOGGING_LEVEL": config.log_level,
            "MCP_CRON_SCHEDULER_DEFAULT_TIMEOUT": "10m",
            "MCP_PROXY_URL": config.mcp_proxy_url or DEFAULT_PROXY_URL,
            "MCP_MEMORY_SERVER_URL": f"http://{MEMORY_CONTAINER}:{DEFAULT_MEMORY_PORT}",
            "MCP_ACTIVITY_WEBHOOK_URL": ACTIVITY_WEBHOOK_URL,
        }
        api_key = config.mcp_proxy_api_key or self.manifest.proxy_auth.api_key
        if api_key:
            env["MCP_PROXY_API_KEY"] = api_key
        if config.ollama_url:
            url = config.ollama_url
            if not url.startswith(("http://", "https://")):
                url = f"http://{url}"
            env["MCP_CRON_OLLAMA_ENABLED"] = "true"
            env["MCP_CRON_OLLAMA_BASE_URL"] = url
        if config.ollama_model:
            env["MCP_CRON_OLLAMA_DEFAULT_MODEL"] = config.ollama_model
        if config.openrouter_api_key:
            env["OPENROUTER_API_KEY"] = config.openrouter_api_key
            env["OPENROUTER_ENABLED"] = "true"
        if config.openrouter_model:
            env["OPENROUTER_MODEL"] = config.openrouter_model
        env.update(config.env)
        return env

    def options(self) -> ContainerOptions:
        config = self.manifest.task_scheduler
        volumes = ["task-scheduler-data:/data"] + list(config.volumes)
        if config.workspace:
            volumes.append(f"{config.workspace}:/workspace:rw")
        return ContainerOptions(
            name=self.container,
            image=self.image,
            command="/app/mcp-cron",
            args=[
                "--transport", "sse",
                "--address", "0.0.0.0",
                "--port", str(config.port),
                "--db-path", config.database_path,
            ],
            ports=[f"{config.port}:{config.port}"],
            env=self.environment(),
            volumes=volumes,
            user="root",
            cpus=config.cpus,
            memory=config.memory,
            cap_drop=["SYS_ADMIN", "NET_ADMIN"],
            security_opt=[NO_NEW_PRIVILEGES],
            networks=[self.network],
            labels=self.system_labels(),
            restart=RESTART_POLICY,
        )


class DashboardService(AuxiliaryService):
    """The dashboard server running in a container next to the proxy."""

    name = "dashboard"
    container = DASHBOARD_CONTAINER
    image = f"{DASHBOARD_CONTAINER}:latest"
    dockerfile = DASHBOARD_DOCKERFILE
    role = "dashboard"

    def options(self) -> ContainerOptions:
        config = self.manifest.dashboard
        if self.manifest.path is None:
            raise ConfigError("The dashboard container needs a manifest file to mount")

        env = {
            "MCP_DASHBOARD_HOST": "0.0.0.0",
            "MCP_PROXY_URL": config.proxy_url or DEFAULT_PROXY_URL,
            "MCP_API_KEY": self.manifest.proxy_auth.api_key or "",
            "MCP_DASHBOARD_THEME": config.theme,
            "POSTGRES_URL": config.postgres_url or "",
        }
        socket = next((s for s in ENGINE_SOCKETS if Path(s).exists()), ENGINE_SOCKETS[0])

        return ContainerOptions(
            name=self.container,
            image=self.image,
            ports=[f"{config.port}:{DEFAULT_DASHBOARD_PORT}"],
            env=env,
            volumes=[
                f"{socket}:/var/run/docker.sock:ro",
                f"{self.manifest.path}:/app/mcp-compose.yaml:ro",
            ],
            user="1000:1000",
            security=SecurityContext(allow_docker_socket=True, trusted_image=True),
            cpus="0.5",
            memory="512m",
            cap_drop=["ALL"],
            cap_add=["SETUID", "SETGID"],
            security_opt=[NO_NEW_PRIVILEGES],
            networks=[self.network],
            labels=self.system_labels(),
            restart=RESTART_POLICY,
        )

    def prepare_context(self, context: Path) -> None:
        """Ship the installed mcp_compose package as an installable project."""
        try:
            dist = metadata.distribution(DISTRIBUTION_NAME)
        except metadata.PackageNotFoundError:
            raise ConfigError(f"{DISTRIBUTION_NAME} must be installed to build the dashboard image")

        package_dir = Path(__file__).resolve().parents[1]
        shutil.copytree(
            package_dir,
            context / "src" / package_dir.name,
            ignore=shutil.ignore_patterns("__pycache__", "*.pyc"),
        )
        project = {
            "build-system": {
                "requires": ["setuptools>=61.0"],
                "build-backend": "setuptools.build_meta",
            },
            "project": {
                "name": DISTRIBUTION_NAME,
                "version": dist.version,
                "dependencies": [r for r in dist.requires or [] if "extra ==" not in r],
                "scripts": {"mcp-compose": "mcp_compose.cli.main:main"},
            },
            "tool": {"setuptools": {
                "packages": {"find": {"where": ["src"]}},
                "package-data": {package_dir.name: ["dashboard/templates/*.html", "dashboard/static/*"]},
            }},
        }
        (context / "pyproject.toml").write_text(toml.dumps(project))

    async def start(self) -> None:
        if not self.manifest.dashboard.enabled:
            raise ConfigError("dashboard is disabled in configuration")
        await super().start()


SERVICES = {
    MemoryService.name: MemoryService,
    TaskSchedulerService.name: TaskSchedulerService,
    DashboardService.name: DashboardService,
}


def get_service(
    name: str,
    manifest: ComposeManifest,
    runtime: ContainerRuntime,
    publisher: Optional[ActivityPublisher] = None,
) -> AuxiliaryService:
    """Look up an auxiliary service by name."""
    try:
        service_class = SERVICES[name]
    except KeyError:
        raise ConfigError(f"Unknown service '{name}' (expected one of: {', '.join(SERVICES)})")
    return service_class(manifest, runtime, publisher)
