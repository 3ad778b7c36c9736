"""
Data models for MCP Compose.

Pydantic models for workloads, networks, activity events and inspector
sessions. These are the shapes passed between the runtime driver, the
orchestrator, the activity bus and the dashboard.
"""

import secrets
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from mcp_compose.core.constants import CONTAINER_PREFIX, DEFAULT_NETWORK, DEFAULT_NETWORK_DRIVER


def canonical_name(server: str) -> str:
    """Return the engine-level name of a server's workload."""
    return f"{CONTAINER_PREFIX}-{server}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkloadStatus(str, Enum):
    """Normalized workload status."""

    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


class BuildOptions(BaseModel):
    """Image build context for a workload."""

    context: str = Field(description="Build context directory")
    dockerfile: Optional[str] = Field(default=None, description="Dockerfile path, absolute or relative to context")
    args: Dict[str, str] = Field(default_factory=dict, description="Build arguments")
    target: Optional[str] = Field(default=None, description="Build stage to target")
    no_cache: bool = Field(default=False, description="Disable build cache")
    pull: bool = Field(default=False, description="Always pull base images")
    platform: Optional[str] = Field(default=None, description="Target platform")


class SecurityContext(BaseModel):
    """Opt-ins checked before a workload is run."""

    allow_docker_socket: bool = False
    allow_host_mounts: List[str] = Field(default_factory=list)
    allow_privileged_ops: bool = False
    trusted_image: bool = False


class ContainerOptions(BaseModel):
    """Everything the runtime driver needs to start one workload."""

    name: str = Field(description="Canonical container name")
    image: Optional[str] = Field(default=None, description="Image reference")
    build: Optional[BuildOptions] = Field(default=None, description="Build context")
    pull: bool = Field(default=False, description="Pull the image before running")

    command: Optional[str] = Field(default=None, description="Command override")
    args: List[str] = Field(default_factory=list, description="Command arguments")
    env: Dict[str, str] = Field(default_factory=dict, description="Environment variables")
    ports: List[str] = Field(default_factory=list, description="host:container port mappings")
    volumes: List[str] = Field(default_factory=list, description="Volume mounts")
    workdir: Optional[str] = Field(default=None, description="Working directory")
    restart: Optional[str] = Field(default=None, description="Restart policy")
    interactive: bool = Field(default=True, description="Keep STDIN open")

    cpus: Optional[str] = None
    memory: Optional[str] = None
    memory_swap: Optional[str] = None
    pids_limit: Optional[int] = None

    cap_add: List[str] = Field(default_factory=list)
    cap_drop: List[str] = Field(default_factory=list)
    security_opt: List[str] = Field(default_factory=list)
    read_only: bool = False
    tmpfs: List[str] = Field(default_factory=list)
    user: Optional[str] = None
    privileged: bool = False
    security: SecurityContext = Field(default_factory=SecurityContext)

    hostname: Optional[str] = None
    dns: List[str] = Field(default_factory=list)
    extra_hosts: List[str] = Field(default_factory=list)
    platform: Optional[str] = None

    network_mode: Optional[str] = Field(default=None, description="Pinned network mode")
    networks: List[str] = Field(default_factory=list, description="Networks to attach, primary first")
    labels: Dict[str, str] = Field(default_factory=dict, description="Container labels")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Container name cannot be empty")
        return v.strip()

    def primary_network(self) -> str:
        """Network the container is created on."""
        if self.network_mode:
            return self.network_mode
        if self.networks:
            return self.networks[0]
        return DEFAULT_NETWORK

    def additional_networks(self) -> List[str]:
        """Networks attached after the container is running."""
        if self.network_mode:
            return []
        return [n for n in self.networks[1:] if n != self.primary_network()]


class WorkloadRecord(BaseModel):
    """Observed state of a workload."""

    id: Optional[str] = None
    name: str
    status: WorkloadStatus = WorkloadStatus.UNKNOWN
    error: Optional[str] = None


class NetworkRecord(BaseModel):
    """An engine network."""

    name: str = DEFAULT_NETWORK
    driver: str = DEFAULT_NETWORK_DRIVER
    exists: bool = False


ACTIVITY_LEVELS = ("INFO", "WARN", "ERROR", "DEBUG")


def new_event_id() -> str:
    """Time-ordered unique event id."""
    return f"{time.time_ns()}-{secrets.token_hex(3)}"


class ActivityEvent(BaseModel):
    """An observability record delivered to activity subscribers."""

    id: str = Field(default_factory=new_event_id)
    timestamp: datetime = Field(default_factory=utcnow)
    level: str = "INFO"
    type: str = "request"
    server: Optional[str] = None
    client: Optional[str] = None
    message: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: Any) -> str:
        level = str(v or "INFO").upper()
        if level == "WARNING":
            level = "WARN"
        if level not in ACTIVITY_LEVELS:
            raise ValueError(f"Invalid activity level: {v}")
        return level

    @field_validator("details", mode="before")
    @classmethod
    def default_details(cls, v: Any) -> Dict[str, Any]:
        return v or {}

    def to_wire(self) -> Dict[str, Any]:
        """JSON-ready dict as sent to WebSocket subscribers."""
        data = self.model_dump(mode="json")
        if not data["details"]:
            data.pop("details")
        return data


class InspectorSession(BaseModel):
    """A capability-negotiated logical connection to one MCP server."""

    id: str
    server_name: str
    created_at: datetime = Field(default_factory=utcnow)
    last_used: datetime = Field(default_factory=utcnow)
    capabilities: Dict[str, Any] = Field(default_factory=dict)

    def touch(self) -> None:
        self.last_used = utcnow()

    def idle_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.last_used).total_seconds()

    def to_summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "server": self.server_name,
            "createdAt": self.created_at.isoformat(),
            "lastUsed": self.last_used.isoformat(),
        }
