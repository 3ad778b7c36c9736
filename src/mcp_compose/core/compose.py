"""
Compose orchestration for MCP servers.

Turns a manifest into running workloads: resolves ``depends_on`` into
start levels, converts server specs into runtime options, runs lifecycle
hooks and keeps the shared networks in place. Container servers go
through the runtime driver; command-only servers run as host processes.
"""

import asyncio
import os
from collections import deque
from typing import Dict, List, NamedTuple, Optional, Set

from mcp_compose.core.activity.bus import ActivityPublisher, NullPublisher
from mcp_compose.core.constants import DEFAULT_LOG_TAIL, DEFAULT_NETWORK, HOOK_TIMEOUT
from mcp_compose.core.exceptions import ConfigError, EngineError, MCPComposeError, NotFoundError
from mcp_compose.core.manifest import ComposeManifest, ServerConfig
from mcp_compose.core.models import (
    BuildOptions,
    ContainerOptions,
    SecurityContext,
    WorkloadStatus,
    canonical_name,
)
from mcp_compose.core.process import ProcessSupervisor
from mcp_compose.core.runtime.base import ContainerRuntime, ProcessHandle
from mcp_compose.utils.logging import get_logger

logger = get_logger(__name__)

NO_NEW_PRIVILEGES = "no-new-privileges:true"
SERVER_LABEL = "mcp-compose.server"
PROJECT_LABEL = "mcp-compose.project"


class HookError(MCPComposeError):
    """A lifecycle hook exited non-zero or timed out."""
    pass


class ServerRow(NamedTuple):
    """One line of ``ls`` output."""

    name: str
    status: str
    type: str
    container_id: str
    capabilities: str


class ComposeOrchestrator:
    """Brings manifest servers to their desired state."""

    def __init__(
        self,
        manifest: ComposeManifest,
        runtime: ContainerRuntime,
        publisher: Optional[ActivityPublisher] = None,
        processes: Optional[ProcessSupervisor] = None,
        default_network: str = DEFAULT_NETWORK,
        hook_timeout: float = HOOK_TIMEOUT,
    ):
        self.manifest = manifest
        self.runtime = runtime
        self.publisher = publisher or NullPublisher()
        self.processes = processes or ProcessSupervisor()
        self.default_network = default_network
        self.hook_timeout = hook_timeout
        self._background: Set[asyncio.Task] = set()

    # Option conversion

    def _resolve_path(self, value: str) -> str:
        if value.startswith(("./", "../")) or value in (".", ".."):
            return str((self.manifest.project_dir / value).resolve())
        return os.path.expanduser(value)

    def _resolve_volume(self, volume: str) -> str:
        host, sep, rest = volume.partition(":")
        if not sep:
            return volume
        return f"{self._resolve_path(host)}:{rest}"

    def to_container_options(self, name: str, server: ServerConfig) -> ContainerOptions:
        """
        Map a manifest server to the options the runtime driver starts.

        Args:
            name: Server name as declared in the manifest
            server: Server configuration

        Returns:
            Options keyed by the server's canonical name
        """
        env = dict(server.env)
        env["MCP_SERVER_NAME"] = name

        security_opt = list(server.security_opt)
        if server.security.no_new_privileges and NO_NEW_PRIVILEGES not in security_opt:
            security_opt.append(NO_NEW_PRIVILEGES)

        labels = dict(server.labels)
        labels[SERVER_LABEL] = name
        labels[PROJECT_LABEL] = self.manifest.project_name

        build = None
        if server.build:
            build = BuildOptions(
                context=self._resolve_path(server.build.context),
                dockerfile=server.build.dockerfile,
                args=dict(server.build.args),
                target=server.build.target,
                no_cache=server.build.no_cache,
                pull=server.build.pull,
                platform=server.build.platform,
            )

        limits = server.deploy.resources.limits
        networks = list(server.networks) if server.networks else [self.default_network]

        return ContainerOptions(
            name=canonical_name(name),
            image=server.image,
            build=build,
            pull=server.pull,
            command=server.command,
            args=list(server.args),
            env=env,
            ports=list(server.ports),
            volumes=[self._resolve_volume(v) for v in server.volumes],
            workdir=server.workdir,
            restart=server.restart,
            cpus=limits.cpus,
            memory=limits.memory,
            memory_swap=limits.memory_swap,
            pids_limit=limits.pids,
            cap_add=list(server.cap_add),
            cap_drop=list(server.cap_drop),
            security_opt=security_opt,
            read_only=server.read_only,
            tmpfs=list(server.tmpfs),
            user=server.user,
            privileged=server.privileged,
            security=SecurityContext(
                allow_docker_socket=server.security.allow_docker_socket,
                allow_host_mounts=list(server.security.allow_host_mounts),
                allow_privileged_ops=server.security.allow_privileged_ops,
                trusted_image=server.security.trusted_image,
            ),
            hostname=server.hostname,
            dns=list(server.dns),
            extra_hosts=list(server.extra_hosts),
            platform=server.platform,
            network_mode=server.network_mode,
            networks=networks,
            labels=labels,
        )

    # Dependency resolution

    def _require(self, names: List[str]) -> None:
        if not names:
            raise ConfigError("no server names specified")
        for name in names:
            if name not in self.manifest.servers:
                raise NotFoundError(f"server '{name}' not found in configuration")

    def servers_to_start(self, names: Optional[List[str]] = None) -> List[str]:
        """Requested servers plus everything they transitively depend on."""
        if not names:
            return list(self.manifest.servers)

        selected: List[str] = []
        queue = deque(names)
        while queue:
            name = queue.popleft()
            if name in selected:
                continue
            server = self.manifest.servers.get(name)
            if server is None:
                logger.warning(f"Server '{name}' not found in configuration, skipping")
                continue
            selected.append(name)
            queue.extend(server.depends_on)
        return selected

    def dependency_levels(self, names: List[str]) -> List[List[str]]:
        """
        Group servers into start levels, dependencies first.

        Servers in the same level have no dependencies on each other and can
        start concurrently. Servers caught in a cycle are reported and
        appended as a final level.
        """
        wanted = set(names)
        indegree = {name: 0 for name in names}
        dependents: Dict[str, List[str]] = {name: [] for name in names}
        for name in names:
            for dep in self.manifest.servers[name].depends_on:
                if dep in wanted:
                    indegree[name] += 1
                    dependents[dep].append(name)

        levels: List[List[str]] = []
        current = [name for name in names if indegree[name] == 0]
        placed: Set[str] = set()
        while current:
            levels.append(current)
            placed.update(current)
            following = []
            for name in current:
                for dependent in dependents[name]:
                    indegree[dependent] -= 1
                    if indegree[dependent] == 0:
                        following.append(dependent)
            current = following

        remaining = [name for name in names if name not in placed]
        if remaining:
            logger.warning(f"Circular dependency detected among: {', '.join(remaining)}")
            levels.append(remaining)
        return levels

    # Networks and hooks

    def _networks_for(self, names: List[str]) -> List[str]:
        networks = [self.default_network]
        for name in names:
            server = self.manifest.servers[name]
            if not server.is_container or server.network_mode:
                continue
            for network in server.networks:
                if network not in networks:
                    networks.append(network)
        return networks

    async def ensure_networks(self, names: Optional[List[str]] = None) -> None:
        """Create the default network and any network the servers attach to."""
        for network in self._networks_for(names if names is not None else list(self.manifest.servers)):
            config = self.manifest.networks.get(network)
            if await self.runtime.network_exists(network):
                continue
            if config is not None and config.external:
                raise ConfigError(f"External network '{network}' does not exist")
            driver = config.driver if config is not None else "bridge"
            await self.runtime.network_create(network, driver)
            self.publisher.emit("INFO", "network", f"Network '{network}' created", details={"driver": driver})

    async def run_hook(self, name: str, stage: str, command: str) -> None:
        """
        Run a lifecycle hook with ``sh -c`` from the manifest directory.

        Raises:
            HookError: If the hook exits non-zero or exceeds the timeout
        """
        logger.info(f"Running {stage} hook for '{name}'", extra={"server": name})
        env = dict(os.environ)
        env["MCP_SERVER_NAME"] = name
        process = await asyncio.create_subprocess_exec(
            "sh", "-c", command,
            cwd=str(self.manifest.project_dir),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            output, _ = await asyncio.wait_for(process.communicate(), timeout=self.hook_timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise HookError(f"{stage} hook for '{name}' timed out after {self.hook_timeout}s")

        if process.returncode != 0:
            text = output.decode("utf-8", errors="replace").strip()
            raise HookError(
                f"{stage} hook for '{name}' failed with exit code {process.returncode}",
                details={"output": text[-2000:]},
            )

    async def _run_post_hook(self, name: str, stage: str, command: str) -> None:
        try:
            await self.run_hook(name, stage, command)
        except (HookError, OSError) as e:
            logger.warning(f"{stage} hook failed for '{name}': {e}", extra={"server": name})

    def _spawn_post_hook(self, name: str, stage: str, command: str) -> None:
        task = asyncio.create_task(self._run_post_hook(name, stage, command))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_background(self) -> None:
        """Wait for detached post_start hooks."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Single-server lifecycle

    async def status(self, name: str) -> WorkloadStatus:
        """Current status; ``unknown`` when the engine cannot be inspected."""
        server = self.manifest.servers.get(name)
        if server is not None and not server.is_container:
            return self.processes.status(canonical_name(name))
        try:
            return await self.runtime.status(canonical_name(name))
        except EngineError as e:
            logger.debug(f"Status check failed for '{name}': {e}")
            return WorkloadStatus.UNKNOWN

    async def start_server(self, name: str) -> None:
        """Start one server; a no-op when it is already running."""
        server = self.manifest.get_server(name)
        if await self.status(name) == WorkloadStatus.RUNNING:
            logger.info(f"Server '{name}' is already running", extra={"server": name})
            return

        if server.lifecycle.pre_start:
            await self.run_hook(name, "pre_start", server.lifecycle.pre_start)

        try:
            if server.is_container:
                await self.ensure_networks([name])
                await self.runtime.start(self.to_container_options(name, server))
            else:
                env = dict(server.env)
                env["MCP_SERVER_NAME"] = name
                workdir = self._resolve_path(server.workdir) if server.workdir else str(self.manifest.project_dir)
                await self.processes.start(canonical_name(name), server.command, server.args, env, workdir)
        except MCPComposeError as e:
            self.publisher.emit("ERROR", "service", f"Server '{name}' failed to start: {e.message}", server=name)
            raise

        logger.info(f"Server '{name}' started", extra={"server": name})
        self.publisher.emit("INFO", "service", f"Server '{name}' started", server=name)

        if server.lifecycle.post_start:
            self._spawn_post_hook(name, "post_start", server.lifecycle.post_start)

    async def stop_server(self, name: str) -> None:
        """Stop one server; a no-op when it is not running."""
        server = self.manifest.get_server(name)
        if await self.status(name) != WorkloadStatus.RUNNING:
            logger.info(f"Server '{name}' is not running", extra={"server": name})
            return

        if server.lifecycle.pre_stop:
            await self.run_hook(name, "pre_stop", server.lifecycle.pre_stop)

        if server.is_container:
            await self.runtime.stop(canonical_name(name))
        else:
            await self.processes.stop(canonical_name(name))

        logger.info(f"Server '{name}' stopped", extra={"server": name})
        self.publisher.emit("INFO", "service", f"Server '{name}' stopped", server=name)

        if server.lifecycle.post_stop:
            await self._run_post_hook(name, "post_stop", server.lifecycle.post_stop)

    # Batch operations

    async def _start_level(self, level: List[str]) -> List[str]:
        results = await asyncio.gather(*(self.start_server(n) for n in level), return_exceptions=True)
        errors = []
        for name, result in zip(level, results):
            if isinstance(result, Exception):
                errors.append(f"{name}: {result}")
            elif isinstance(result, BaseException):
                raise result
        return errors

    async def up(self, names: Optional[List[str]] = None) -> List[str]:
        """
        Start servers and their dependencies, level by level.

        Already-started servers are left running when a level fails.

        Args:
            names: Servers to start; all declared servers when empty

        Returns:
            Servers in the order they were started

        Raises:
            EngineError: ``start-failed`` listing every failure of the level
        """
        selected = self.servers_to_start(names)
        await self.ensure_networks(selected)

        started: List[str] = []
        for level in self.dependency_levels(selected):
            errors = await self._start_level(level)
            if errors:
                raise EngineError("start-failed", "failed to start servers: " + "; ".join(errors))
            started.extend(level)
        return started

    async def down(self, names: Optional[List[str]] = None) -> List[str]:
        """
        Stop servers in reverse dependency order.

        Returns:
            Warnings for servers that failed to stop
        """
        selected = [n for n in (names or list(self.manifest.servers)) if n in self.manifest.servers]
        warnings = []
        for level in reversed(self.dependency_levels(selected)):
            results = await asyncio.gather(*(self.stop_server(n) for n in level), return_exceptions=True)
            for name, result in zip(level, results):
                if isinstance(result, Exception):
                    message = f"failed to stop server '{name}': {result}"
                    logger.warning(message, extra={"server": name})
                    warnings.append(message)
                elif isinstance(result, BaseException):
                    raise result
        return warnings

    async def start(self, names: List[str]) -> None:
        self._require(names)
        for name in names:
            await self.start_server(name)

    async def stop(self, names: List[str]) -> None:
        self._require(names)
        for name in names:
            await self.stop_server(name)

    async def restart(self, names: List[str]) -> None:
        self._require(names)
        for name in names:
            await self.stop_server(name)
            await self.start_server(name)

    async def list_servers(self) -> List[ServerRow]:
        rows = []
        for name, server in self.manifest.servers.items():
            status = await self.status(name)
            container_id = "-"
            if server.is_container:
                try:
                    found = await self.runtime.container_id(canonical_name(name))
                except EngineError:
                    found = None
                if found:
                    container_id = found[:12]
            rows.append(ServerRow(
                name=name,
                status=status.value,
                type="container" if server.is_container else "process",
                container_id=container_id,
                capabilities=", ".join(server.capabilities) or "-",
            ))
        return rows

    async def read_logs(self, name: str, tail: Optional[int] = DEFAULT_LOG_TAIL) -> str:
        server = self.manifest.get_server(name)
        if server.is_container:
            return await self.runtime.read_logs(canonical_name(name), tail=tail)
        return self.processes.read_logs(canonical_name(name), tail=tail)

    async def follow_logs(self, name: str, tail: int = DEFAULT_LOG_TAIL) -> ProcessHandle:
        server = self.manifest.get_server(name)
        if server.is_container:
            return await self.runtime.logs(canonical_name(name), follow=True, tail=tail)
        return await self.processes.follow_logs(canonical_name(name), tail=tail)

    async def reload(self, manifest: ComposeManifest) -> Dict[str, List[str]]:
        """
        Converge on a new manifest.

        Removed servers are stopped, changed servers that are running are
        recreated and added servers are started. Unchanged servers are left
        alone, so reloading the same manifest twice is a no-op.
        """
        old = self.manifest
        removed = [n for n in old.servers if n not in manifest.servers]
        added = [n for n in manifest.servers if n not in old.servers]
        changed = [
            n for n in manifest.servers
            if n in old.servers and manifest.servers[n].model_dump() != old.servers[n].model_dump()
        ]

        summary: Dict[str, List[str]] = {"stopped": [], "started": [], "recreated": []}

        for name in removed:
            await self.stop_server(name)
            summary["stopped"].append(name)

        recreate = [n for n in changed if await self.status(n) == WorkloadStatus.RUNNING]
        for name in recreate:
            await self.stop_server(name)

        self.manifest = manifest
        for name in recreate:
            await self.start_server(name)
            summary["recreated"].append(name)

        if added:
            summary["started"] = await self.up(added)

        logger.info(
            "Manifest reloaded",
            extra={k: ",".join(v) for k, v in summary.items() if v},
        )
        self.publisher.emit("INFO", "service", "Configuration reloaded", details=summary)
        return summary

