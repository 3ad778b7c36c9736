"""
Container runtime drivers.

``detect_runtime`` probes for docker, then podman, and falls back to the
null runtime. The first detection is remembered for the process.
"""

import shutil
from typing import Optional

from mcp_compose.core.runtime.base import CLIRuntime, CommandResult, ContainerRuntime, ProcessHandle
from mcp_compose.core.runtime.docker import DockerRuntime
from mcp_compose.core.runtime.null import NullRuntime
from mcp_compose.core.runtime.podman import PodmanRuntime
from mcp_compose.utils.logging import get_logger

logger = get_logger(__name__)

ENGINES = (DockerRuntime, PodmanRuntime)

_selected: Optional[ContainerRuntime] = None


def detect_runtime(preferred: Optional[str] = None) -> ContainerRuntime:
    """
    Pick a container runtime.

    Args:
        preferred: Force ``docker`` or ``podman`` if installed

    Returns:
        The first engine found on PATH, or a ``NullRuntime``
    """
    candidates = ENGINES
    if preferred:
        candidates = tuple(e for e in ENGINES if e.name == preferred) + tuple(
            e for e in ENGINES if e.name != preferred
        )

    for engine in candidates:
        path = shutil.which(engine.executable)
        if path:
            logger.info(f"Detected {engine.name} runtime", extra={"path": path})
            return engine(path)

    logger.warning("No container runtime detected; container operations will fail")
    return NullRuntime()


def get_runtime(preferred: Optional[str] = None) -> ContainerRuntime:
    """Return the process-wide runtime, detecting it on first use."""
    global _selected
    if _selected is None:
        _selected = detect_runtime(preferred)
    return _selected


__all__ = [
    "CLIRuntime",
    "CommandResult",
    "ContainerRuntime",
    "DockerRuntime",
    "NullRuntime",
    "PodmanRuntime",
    "ProcessHandle",
    "detect_runtime",
    "get_runtime",
]
