"""
Podman engine driver.

Podman accepts the same verbs as Docker; it differs in a few status
strings and in reporting missing networks.
"""

from mcp_compose.core.models import WorkloadStatus
from mcp_compose.core.runtime.base import CLIRuntime


class PodmanRuntime(CLIRuntime):
    """Runtime backed by the ``podman`` CLI."""

    name = "podman"
    executable = "podman"

    STATUS_MAP = {
        **CLIRuntime.STATUS_MAP,
        "configured": WorkloadStatus.STARTING,
        "initialized": WorkloadStatus.STARTING,
        "stopping": WorkloadStatus.RUNNING,
        "stopped": WorkloadStatus.STOPPED,
    }
