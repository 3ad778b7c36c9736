"""
MCP Compose - compose-style orchestration for MCP servers.

Brings declared MCP servers up on a shared container network, fronts
them with an authenticating JSON-RPC reverse proxy and serves a live
operator dashboard.
"""

__version__ = "1.0.0"
__description__ = "Compose-style orchestrator, reverse proxy and dashboard for MCP servers"

from mcp_compose.core.exceptions import MCPComposeError
from mcp_compose.core.models import ActivityEvent, ContainerOptions, WorkloadStatus

__all__ = [
    "__version__",
    "__description__",
    "MCPComposeError",
    "ActivityEvent",
    "ContainerOptions",
    "WorkloadStatus",
]
