"""Docker engine driver."""

from mcp_compose.core.runtime.base import CLIRuntime


class DockerRuntime(CLIRuntime):
    """Runtime backed by the ``docker`` CLI."""

    name = "docker"
    executable = "docker"
