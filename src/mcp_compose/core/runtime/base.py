"""
Container runtime driver.

Defines the engine-agnostic ``ContainerRuntime`` contract and
``CLIRuntime``, the shared implementation that drives an engine through
its command-line client as child processes. Engine-specific subclasses
only override the executable name and the few places where the CLIs
disagree.
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional

from mcp_compose.core.constants import (
    CONTAINER_PREFIX,
    DANGEROUS_CAPABILITIES,
    ENGINE_SOCKETS,
    FAILED_START_LOG_LINES,
    SENSITIVE_HOST_PATHS,
    START_SETTLE_DELAY,
)
from mcp_compose.core.exceptions import EngineError, ValidationError
from mcp_compose.core.models import ContainerOptions, WorkloadStatus
from mcp_compose.utils.logging import get_logger

logger = get_logger(__name__)

NOT_FOUND_MARKERS = ("no such container", "no such object", "no container with name or id")
ALREADY_EXISTS_MARKERS = ("already exists",)


class CommandResult(NamedTuple):
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return (self.stdout + self.stderr).strip()


def tail_lines(text: str, count: int = 20) -> str:
    lines = text.strip().splitlines()
    return "\n".join(lines[-count:])


class ProcessHandle:
    """A running engine child process (log follower or exec session).

    Closing the handle kills the child if it is still running.
    """

    def __init__(self, process: asyncio.subprocess.Process, description: str):
        self.process = process
        self.description = description

    @property
    def stdin(self) -> Optional[asyncio.StreamWriter]:
        return self.process.stdin

    @property
    def stdout(self) -> Optional[asyncio.StreamReader]:
        return self.process.stdout

    @property
    def stderr(self) -> Optional[asyncio.StreamReader]:
        return self.process.stderr

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    async def wait(self) -> int:
        return await self.process.wait()

    async def close(self) -> None:
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
            await self.process.wait()

    async def __aenter__(self) -> "ProcessHandle":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class ContainerRuntime(ABC):
    """Abstract container engine."""

    name = "abstract"

    @abstractmethod
    async def start(self, options: ContainerOptions) -> str:
        """Bring a workload to running state and return its engine id."""

    @abstractmethod
    async def stop(self, name: str) -> None:
        """Stop and remove a workload. Absent workloads are not an error."""

    @abstractmethod
    async def restart(self, name: str) -> None:
        pass

    @abstractmethod
    async def status(self, name: str) -> WorkloadStatus:
        pass

    @abstractmethod
    async def logs(
        self,
        name: str,
        follow: bool = False,
        tail: Optional[int] = None,
        timestamps: bool = False,
        since: Optional[str] = None,
    ) -> ProcessHandle:
        """Open a log stream; the caller owns and must close the handle."""

    @abstractmethod
    async def read_logs(self, name: str, tail: Optional[int] = None, timestamps: bool = False) -> str:
        pass

    @abstractmethod
    async def stats(self, name: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def container_id(self, name: str) -> Optional[str]:
        pass

    @abstractmethod
    async def exists(self, name: str) -> bool:
        pass

    @abstractmethod
    async def image_exists(self, image: str) -> bool:
        pass

    @abstractmethod
    async def build(self, options: ContainerOptions) -> str:
        pass

    @abstractmethod
    async def pull(self, image: str) -> None:
        pass

    @abstractmethod
    async def network_exists(self, name: str) -> bool:
        pass

    @abstractmethod
    async def network_create(self, name: str, driver: str = "bridge") -> None:
        pass

    @abstractmethod
    async def network_remove(self, name: str) -> None:
        pass

    @abstractmethod
    async def network_connect(self, container: str, network: str) -> None:
        pass

    @abstractmethod
    async def exec(self, name: str, command: List[str], interactive: bool = True) -> ProcessHandle:
        """Run a command inside a workload with piped stdin/stdout."""


class CLIRuntime(ContainerRuntime):
    """Runtime driven through an engine's command-line client."""

    executable = "docker"

    STATUS_MAP = {
        "running": WorkloadStatus.RUNNING,
        "created": WorkloadStatus.STARTING,
        "restarting": WorkloadStatus.STARTING,
        "paused": WorkloadStatus.PAUSED,
        "exited": WorkloadStatus.STOPPED,
        "dead": WorkloadStatus.STOPPED,
    }

    def __init__(self, path: Optional[str] = None, command_timeout: Optional[float] = None):
        """
        Initialize the runtime.

        Args:
            path: Full path to the engine client, defaults to ``executable``
            command_timeout: Timeout for short engine commands, None for no limit
        """
        self.path = path or self.executable
        self.command_timeout = command_timeout

    async def _run(
        self,
        *args: str,
        input: Optional[bytes] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run an engine command to completion and capture its output."""
        cmd = [self.path, *args]
        logger.debug(f"Executing: {' '.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise EngineError("engine-absent", f"Container engine '{self.path}' not found")

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(input=input),
                timeout=timeout or self.command_timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise EngineError("busy", f"Engine command timed out: {' '.join(args[:3])}")

        return CommandResult(
            process.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def _spawn(self, *args: str, stdin: bool = False) -> asyncio.subprocess.Process:
        """Start a long-running engine child with piped output."""
        cmd = [self.path, *args]
        logger.debug(f"Spawning: {' '.join(cmd)}")
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise EngineError("engine-absent", f"Container engine '{self.path}' not found")

    @staticmethod
    def _is_not_found(text: str) -> bool:
        lowered = text.lower()
        return any(marker in lowered for marker in NOT_FOUND_MARKERS)

    def map_status(self, raw: str) -> WorkloadStatus:
        """Normalize an engine status string."""
        value = raw.strip().lower()
        if not value:
            return WorkloadStatus.STOPPED
        return self.STATUS_MAP.get(value, WorkloadStatus.UNKNOWN)

    async def status(self, name: str) -> WorkloadStatus:
        result = await self._run("inspect", "--format", "{{.State.Status}}", name)
        if not result.ok:
            if self._is_not_found(result.output):
                return WorkloadStatus.STOPPED
            raise EngineError(
                "inspect-failed",
                f"Failed to inspect container '{name}'",
                stderr_tail=tail_lines(result.stderr),
            )
        return self.map_status(result.stdout)

    async def exists(self, name: str) -> bool:
        result = await self._run("inspect", "--type=container", "--format", "{{.Id}}", name)
        return result.ok

    async def container_id(self, name: str) -> Optional[str]:
        result = await self._run("inspect", "--type=container", "--format", "{{.Id}}", name)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    async def image_exists(self, image: str) -> bool:
        result = await self._run("image", "inspect", image)
        return result.ok

    # Networks

    async def network_exists(self, name: str) -> bool:
        result = await self._run("network", "inspect", name)
        return result.ok

    async def network_create(self, name: str, driver: str = "bridge") -> None:
        if await self.network_exists(name):
            logger.debug(f"Network '{name}' already exists")
            return

        result = await self._run("network", "create", "--driver", driver, name)
        if not result.ok:
            if any(marker in result.output.lower() for marker in ALREADY_EXISTS_MARKERS):
                logger.debug(f"Network '{name}' created concurrently")
                return
            raise EngineError(
                "start-failed",
                f"Failed to create network '{name}'",
                stderr_tail=tail_lines(result.stderr),
            )
        logger.info(f"Created network '{name}'", extra={"network": name})

    async def network_remove(self, name: str) -> None:
        result = await self._run("network", "rm", name)
        if not result.ok:
            lowered = result.output.lower()
            if "not found" in lowered or "no such network" in lowered:
                return
            raise EngineError(
                "stop-failed",
                f"Failed to remove network '{name}'",
                stderr_tail=tail_lines(result.stderr),
            )
        logger.info(f"Removed network '{name}'", extra={"network": name})

    async def network_connect(self, container: str, network: str) -> None:
        result = await self._run("network", "connect", network, container)
        if not result.ok:
            raise EngineError(
                "start-failed",
                f"Failed to connect '{container}' to network '{network}'",
                stderr_tail=tail_lines(result.stderr),
            )

    # Images

    def default_build_tag(self, options: ContainerOptions) -> str:
        return f"{CONTAINER_PREFIX}-built-{options.name.lower()}:latest"

    def resolve_dockerfile(self, options: ContainerOptions) -> Path:
        build = options.build
        dockerfile = Path(build.dockerfile or "Dockerfile")
        if not dockerfile.is_absolute():
            dockerfile = Path(build.context) / dockerfile
        return dockerfile

    def build_args(self, options: ContainerOptions, tag: str) -> List[str]:
        build = options.build
        args = ["build", "-t", tag, "-f", str(self.resolve_dockerfile(options))]
        for key, value in build.args.items():
            args.extend(["--build-arg", f"{key}={value}"])
        if build.target:
            args.extend(["--target", build.target])
        if build.no_cache:
            args.append("--no-cache")
        if build.pull:
            args.append("--pull")
        if build.platform:
            args.extend(["--platform", build.platform])
        args.append(build.context)
        return args

    async def build(self, options: ContainerOptions) -> str:
        """Build the workload's image and return the tag used."""
        if options.build is None:
            raise EngineError("build-failed", f"No build context for '{options.name}'")

        context = Path(options.build.context)
        if not context.is_dir():
            raise EngineError(
                "build-failed", f"Build context directory '{context}' does not exist"
            )
        dockerfile = self.resolve_dockerfile(options)
        if not dockerfile.exists():
            raise EngineError(
                "build-failed", f"Dockerfile '{dockerfile}' does not exist"
            )

        tag = options.image or self.default_build_tag(options)
        logger.info(f"Building image '{tag}'", extra={"container": options.name, "context": str(context)})

        result = await self._run(*self.build_args(options, tag))
        if not result.ok:
            raise EngineError(
                "build-failed",
                f"Failed to build image '{tag}'",
                stderr_tail=tail_lines(result.stderr or result.stdout),
            )
        return tag

    async def pull(self, image: str) -> None:
        logger.info(f"Pulling image '{image}'")
        result = await self._run("pull", image)
        if not result.ok:
            raise EngineError(
                "pull-failed",
                f"Failed to pull image '{image}'",
                stderr_tail=tail_lines(result.stderr),
            )

    # Workloads

    def validate_security(self, options: ContainerOptions) -> None:
        """
        Check a workload's security opt-ins before it is run.

        System containers (label ``mcp-compose.system=true``) are exempt.

        Raises:
            ValidationError: If the workload requests access it was not granted
        """
        if options.labels.get(f"{CONTAINER_PREFIX}.system") == "true":
            return

        security = options.security

        if options.privileged and not security.allow_privileged_ops:
            raise ValidationError(
                f"Container '{options.name}' requests privileged mode but "
                "security.allow_privileged_ops is not enabled"
            )

        for volume in options.volumes:
            source = volume.split(":", 1)[0]
            if not source.startswith(("/", ".")):
                continue  # named volume

            normalized = os.path.normpath(source) if source != "/" else "/"
            if normalized in ENGINE_SOCKETS:
                if not security.allow_docker_socket:
                    raise ValidationError(
                        f"Container '{options.name}' requests engine socket access but "
                        "security.allow_docker_socket is not enabled"
                    )
                continue

            if normalized in SENSITIVE_HOST_PATHS and normalized not in security.allow_host_mounts:
                raise ValidationError(
                    f"Container '{options.name}' requests sensitive mount '{source}' "
                    "which is not listed in security.allow_host_mounts"
                )

        for capability in options.cap_add:
            if capability.upper() in DANGEROUS_CAPABILITIES:
                logger.warning(
                    f"Container '{options.name}' adds dangerous capability '{capability}'",
                    extra={"container": options.name},
                )

    def run_args(self, options: ContainerOptions, image: str) -> List[str]:
        """Compose the ``run`` argv for a workload."""
        args = ["run", "-d", "--name", options.name]
        if options.interactive:
            args.append("-i")

        args.extend(["--restart", options.restart or "unless-stopped"])

        if options.cpus:
            args.extend(["--cpus", options.cpus])
        if options.memory:
            args.extend(["--memory", options.memory])
        if options.memory_swap:
            args.extend(["--memory-swap", options.memory_swap])
        if options.pids_limit:
            args.extend(["--pids-limit", str(options.pids_limit)])

        if options.user:
            args.extend(["--user", options.user])
        if options.privileged:
            args.append("--privileged")
        for cap in options.cap_add:
            args.extend(["--cap-add", cap])
        for cap in options.cap_drop:
            args.extend(["--cap-drop", cap])
        for opt in options.security_opt:
            args.extend(["--security-opt", opt])
        if options.read_only:
            args.append("--read-only")

        if options.hostname:
            args.extend(["--hostname", options.hostname])
        for dns in options.dns:
            args.extend(["--dns", dns])
        for host in options.extra_hosts:
            args.extend(["--add-host", host])

        for key, value in options.env.items():
            args.extend(["-e", f"{key}={value}"])
        for port in options.ports:
            args.extend(["-p", port])
        for volume in options.volumes:
            args.extend(["-v", volume])
        for tmpfs in options.tmpfs:
            args.extend(["--tmpfs", tmpfs])
        if options.workdir:
            args.extend(["-w", options.workdir])
        for key, value in options.labels.items():
            args.extend(["--label", f"{key}={value}"])
        if options.platform:
            args.extend(["--platform", options.platform])

        args.extend(["--network", options.primary_network()])
        args.append(image)

        if options.command:
            args.append(options.command)
            args.extend(options.args)

        return args

    async def _remove_existing(self, name: str) -> None:
        if not await self.exists(name):
            return
        logger.info(f"Container '{name}' already exists, replacing it", extra={"container": name})
        await self._run("stop", name)
        result = await self._run("rm", "-f", name)
        if not result.ok and not self._is_not_found(result.output):
            raise EngineError(
                "start-failed",
                f"Failed to remove existing container '{name}'",
                stderr_tail=tail_lines(result.stderr),
            )

    async def _ensure_primary_network(self, options: ContainerOptions) -> None:
        if options.network_mode:
            return
        network = options.primary_network()
        if not await self.network_exists(network):
            await self.network_create(network)

    async def start(self, options: ContainerOptions) -> str:
        """
        Start a workload, replacing any existing one with the same name.

        Args:
            options: Workload description

        Returns:
            Engine container id

        Raises:
            EngineError: On build, pull or run failure
            ValidationError: If the security opt-ins do not cover the request
        """
        name = options.name
        await self._remove_existing(name)

        image = options.image
        if options.build is not None:
            image = await self.build(options)
        elif options.pull and image:
            await self.pull(image)

        if not image:
            raise EngineError("start-failed", f"No image specified or built for '{name}'")

        self.validate_security(options)
        await self._ensure_primary_network(options)

        args = self.run_args(options, image)
        logger.debug(f"Starting container '{name}' from '{image}'", extra={"container": name})
        result = await self._run(*args)

        if not result.ok:
            log_tail = ""
            if await self.exists(name):
                log_tail = await self.read_logs(name, tail=FAILED_START_LOG_LINES)
                await self._run("rm", "-f", name)
            raise EngineError(
                "start-failed",
                f"Failed to start container '{name}' with image '{image}'",
                stderr_tail=tail_lines(result.stderr),
                details={"logs": log_tail} if log_tail else None,
            )

        container_id = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else name

        for network in options.additional_networks():
            try:
                if not await self.network_exists(network):
                    await self.network_create(network)
                await self.network_connect(container_id, network)
            except EngineError as e:
                logger.warning(
                    f"Failed to attach '{name}' to network '{network}': {e.message}",
                    extra={"container": name, "network": network},
                )

        await asyncio.sleep(START_SETTLE_DELAY)
        try:
            current = await self.status(name)
        except EngineError as e:
            logger.warning(f"Could not verify status of '{name}': {e.message}")
        else:
            if current != WorkloadStatus.RUNNING:
                tail = await self.read_logs(name, tail=20)
                logger.warning(
                    f"Container '{name}' is {current.value}, not running\n{tail}",
                    extra={"container": name},
                )

        logger.info(f"Started container '{name}'", extra={"container": name, "id": container_id[:12]})
        return container_id

    async def stop(self, name: str) -> None:
        if not await self.exists(name):
            logger.debug(f"Container '{name}' not present, nothing to stop")
            return

        result = await self._run("stop", name)
        if not result.ok:
            logger.warning(
                f"Failed to stop container '{name}', forcing removal",
                extra={"container": name, "stderr": tail_lines(result.stderr, 5)},
            )

        result = await self._run("rm", "-f", name)
        if not result.ok and not self._is_not_found(result.output):
            raise EngineError(
                "stop-failed",
                f"Failed to remove container '{name}'",
                stderr_tail=tail_lines(result.stderr),
            )
        logger.info(f"Stopped container '{name}'", extra={"container": name})

    async def restart(self, name: str) -> None:
        result = await self._run("restart", name)
        if not result.ok:
            if self._is_not_found(result.output):
                raise EngineError("not-found", f"Container '{name}' not found")
            raise EngineError(
                "start-failed",
                f"Failed to restart container '{name}'",
                stderr_tail=tail_lines(result.stderr),
            )

    def logs_args(
        self,
        name: str,
        follow: bool = False,
        tail: Optional[int] = None,
        timestamps: bool = False,
        since: Optional[str] = None,
    ) -> List[str]:
        args = ["logs"]
        if follow:
            args.append("-f")
        if tail is not None:
            args.extend(["--tail", str(tail)])
        if timestamps:
            args.append("--timestamps")
        if since:
            args.extend(["--since", since])
        args.append(name)
        return args

    async def logs(
        self,
        name: str,
        follow: bool = False,
        tail: Optional[int] = None,
        timestamps: bool = False,
        since: Optional[str] = None,
    ) -> ProcessHandle:
        process = await self._spawn(*self.logs_args(name, follow, tail, timestamps, since))
        return ProcessHandle(process, f"logs {name}")

    async def read_logs(self, name: str, tail: Optional[int] = None, timestamps: bool = False) -> str:
        """Return recent log output (stdout and stderr combined)."""
        result = await self._run(*self.logs_args(name, tail=tail, timestamps=timestamps))
        if not result.ok and self._is_not_found(result.output):
            raise EngineError("not-found", f"Container '{name}' not found")
        return result.output

    async def stats(self, name: str) -> Dict[str, Any]:
        result = await self._run("stats", "--no-stream", "--format", "{{json .}}", name)
        if not result.ok:
            if self._is_not_found(result.output):
                raise EngineError("not-found", f"Container '{name}' not found")
            raise EngineError(
                "inspect-failed",
                f"Failed to get stats for '{name}'",
                stderr_tail=tail_lines(result.stderr),
            )
        return self.parse_stats(name, result.stdout)

    def parse_stats(self, name: str, output: str) -> Dict[str, Any]:
        text = output.strip()
        try:
            data = json.loads(text.splitlines()[0]) if text else {}
        except json.JSONDecodeError:
            raise EngineError("inspect-failed", f"Unparsable stats output for '{name}'")
        if isinstance(data, list):
            data = data[0] if data else {}

        def pick(*keys: str) -> str:
            for key in keys:
                if key in data:
                    return str(data[key])
            return ""

        return {
            "name": pick("Name", "name") or name,
            "cpu_perc": pick("CPUPerc", "CPU", "cpu_percent"),
            "mem_usage": pick("MemUsage", "mem_usage"),
            "mem_perc": pick("MemPerc", "Mem", "mem_percent"),
            "net_io": pick("NetIO", "net_io"),
            "block_io": pick("BlockIO", "block_io"),
            "runtime": self.name,
        }

    async def exec(self, name: str, command: List[str], interactive: bool = True) -> ProcessHandle:
        args = ["exec"]
        if interactive:
            args.append("-i")
        args.append(name)
        args.extend(command)
        process = await self._spawn(*args, stdin=interactive)
        return ProcessHandle(process, f"exec {name}")
