"""
Null runtime.

Selected when no container engine is installed. Every call fails with
an ``engine-absent`` error so callers can report it instead of silently
doing nothing.
"""

from typing import Any, Dict, List, Optional

from mcp_compose.core.exceptions import EngineError
from mcp_compose.core.models import ContainerOptions, WorkloadStatus
from mcp_compose.core.runtime.base import ContainerRuntime, ProcessHandle


class NullRuntime(ContainerRuntime):
    """Runtime that refuses every operation."""

    name = "none"

    def _refuse(self, operation: str) -> EngineError:
        return EngineError(
            "engine-absent",
            f"No container engine available (cannot {operation}); install docker or podman",
        )

    async def start(self, options: ContainerOptions) -> str:
        raise self._refuse(f"start '{options.name}'")

    async def stop(self, name: str) -> None:
        raise self._refuse(f"stop '{name}'")

    async def restart(self, name: str) -> None:
        raise self._refuse(f"restart '{name}'")

    async def status(self, name: str) -> WorkloadStatus:
        raise self._refuse(f"inspect '{name}'")

    async def logs(
        self,
        name: str,
        follow: bool = False,
        tail: Optional[int] = None,
        timestamps: bool = False,
        since: Optional[str] = None,
    ) -> ProcessHandle:
        raise self._refuse(f"read logs of '{name}'")

    async def read_logs(self, name: str, tail: Optional[int] = None, timestamps: bool = False) -> str:
        raise self._refuse(f"read logs of '{name}'")

    async def stats(self, name: str) -> Dict[str, Any]:
        raise self._refuse(f"read stats of '{name}'")

    async def container_id(self, name: str) -> Optional[str]:
        raise self._refuse(f"inspect '{name}'")

    async def exists(self, name: str) -> bool:
        raise self._refuse(f"inspect '{name}'")

    async def image_exists(self, image: str) -> bool:
        raise self._refuse(f"inspect image '{image}'")

    async def build(self, options: ContainerOptions) -> str:
        raise self._refuse(f"build '{options.name}'")

    async def pull(self, image: str) -> None:
        raise self._refuse(f"pull '{image}'")

    async def network_exists(self, name: str) -> bool:
        raise self._refuse(f"inspect network '{name}'")

    async def network_create(self, name: str, driver: str = "bridge") -> None:
        raise self._refuse(f"create network '{name}'")

    async def network_remove(self, name: str) -> None:
        raise self._refuse(f"remove network '{name}'")

    async def network_connect(self, container: str, network: str) -> None:
        raise self._refuse(f"connect '{container}' to '{network}'")

    async def exec(self, name: str, command: List[str], interactive: bool = True) -> ProcessHandle:
        raise self._refuse(f"exec in '{name}'")
