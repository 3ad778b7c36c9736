"""
Compose manifest loading and validation.

The manifest (``mcp-compose.yaml``) declares the MCP servers to run and
the auxiliary services around them. Loading reads a sibling ``.env``
file, expands environment references, applies the ``MCP_ENV``
environment overrides and validates cross-field rules.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from mcp_compose.core.constants import (
    ACTIVITY_RETENTION_DAYS,
    DEFAULT_DASHBOARD_PORT,
    DEFAULT_MEMORY_PORT,
    DEFAULT_NETWORK_DRIVER,
    DEFAULT_TASK_SCHEDULER_PORT,
)
from mcp_compose.core.exceptions import ConfigError, NotFoundError, ValidationError
from mcp_compose.utils.logging import get_logger
from mcp_compose.utils.validators import (
    container_port,
    validate_capability,
    validate_cpus,
    validate_memory,
    validate_port_mapping,
    validate_protocol,
    validate_server_name,
    validate_volume,
)

logger = get_logger(__name__)

DEFAULT_MANIFEST_FILES = ("mcp-compose.yaml", "mcp-compose.yml")

_ENV_REF_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}|\$([A-Za-z_][A-Za-z0-9_]*)")


class _Section(BaseModel):
    model_config = ConfigDict(extra="ignore")


class BuildConfig(_Section):
    context: str = "."
    dockerfile: Optional[str] = None
    args: Dict[str, str] = Field(default_factory=dict)
    target: Optional[str] = None
    no_cache: bool = False
    pull: bool = False
    platform: Optional[str] = None


class ResourceLimits(_Section):
    cpus: Optional[str] = None
    memory: Optional[str] = None
    memory_swap: Optional[str] = None
    pids: Optional[int] = None

    @field_validator("cpus", mode="before")
    @classmethod
    def coerce_cpus(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)


class Resources(_Section):
    limits: ResourceLimits = Field(default_factory=ResourceLimits)


class DeployConfig(_Section):
    resources: Resources = Field(default_factory=Resources)


class SecurityConfig(_Section):
    allow_docker_socket: bool = False
    allow_host_mounts: List[str] = Field(default_factory=list)
    allow_privileged_ops: bool = False
    trusted_image: bool = False
    no_new_privileges: bool = True


class LifecycleConfig(_Section):
    pre_start: Optional[str] = None
    post_start: Optional[str] = None
    pre_stop: Optional[str] = None
    post_stop: Optional[str] = None


class ServerConfig(_Section):
    """One declared MCP server."""

    image: Optional[str] = None
    build: Optional[BuildConfig] = None
    pull: bool = False
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    ports: List[str] = Field(default_factory=list)
    volumes: List[str] = Field(default_factory=list)
    workdir: Optional[str] = None
    restart: Optional[str] = None

    protocol: str = "stdio"
    http_port: Optional[int] = None
    http_path: str = "/"
    stdio_hoster_port: Optional[int] = None
    capabilities: List[str] = Field(default_factory=list)
    depends_on: List[str] = Field(default_factory=list)

    deploy: DeployConfig = Field(default_factory=DeployConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    cap_add: List[str] = Field(default_factory=list)
    cap_drop: List[str] = Field(default_factory=list)
    security_opt: List[str] = Field(default_factory=list)
    read_only: bool = False
    tmpfs: List[str] = Field(default_factory=list)
    user: Optional[str] = None
    privileged: bool = False
    hostname: Optional[str] = None
    dns: List[str] = Field(default_factory=list)
    extra_hosts: List[str] = Field(default_factory=list)
    platform: Optional[str] = None
    network_mode: Optional[str] = None
    networks: List[str] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)

    @field_validator("env", "labels", mode="before")
    @classmethod
    def stringify_values(cls, v: Any) -> Dict[str, str]:
        if v is None:
            return {}
        if isinstance(v, list):
            pairs = [item.split("=", 1) for item in v]
            return {p[0]: p[1] if len(p) > 1 else "" for p in pairs}
        return {str(k): "" if val is None else str(val) for k, val in v.items()}

    @field_validator("ports", mode="before")
    @classmethod
    def stringify_ports(cls, v: Any) -> List[str]:
        return [str(p) for p in (v or [])]

    @field_validator("args", mode="before")
    @classmethod
    def split_args(cls, v: Any) -> List[str]:
        if isinstance(v, str):
            return v.split()
        return [str(a) for a in (v or [])]

    @property
    def is_container(self) -> bool:
        return bool(self.image or self.build)

    def inferred_http_port(self) -> Optional[int]:
        """``http_port`` or, failing that, the first mapped container port."""
        if self.http_port:
            return self.http_port
        for mapping in self.ports:
            port = container_port(mapping)
            if port:
                return port
        return None


class ProxyAuthConfig(_Section):
    enabled: bool = False
    api_key: Optional[str] = None


class DashboardConfig(_Section):
    enabled: bool = False
    port: int = DEFAULT_DASHBOARD_PORT
    host: str = "0.0.0.0"
    proxy_url: Optional[str] = None
    postgres_url: Optional[str] = None
    theme: str = "dark"
    log_streaming: bool = True
    config_editor: bool = True
    metrics: bool = True
    activity_retention_days: int = ACTIVITY_RETENTION_DAYS

    @field_validator("activity_retention_days")
    @classmethod
    def validate_retention(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("activity_retention_days must be positive")
        return v


class TaskSchedulerConfig(_Section):
    enabled: bool = False
    port: int = DEFAULT_TASK_SCHEDULER_PORT
    host: str = "0.0.0.0"
    database_path: str = "/data/task-scheduler.db"
    log_level: str = "info"
    openrouter_api_key: Optional[str] = None
    openrouter_model: Optional[str] = None
    ollama_url: Optional[str] = None
    ollama_model: Optional[str] = None
    mcp_proxy_url: Optional[str] = None
    mcp_proxy_api_key: Optional[str] = None
    workspace: Optional[str] = None
    cpus: str = "2.0"
    memory: str = "1g"
    volumes: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)


class MemoryConfig(_Section):
    enabled: bool = False
    port: int = DEFAULT_MEMORY_PORT
    host: str = "0.0.0.0"
    database_url: Optional[str] = None
    postgres_enabled: bool = True
    postgres_port: int = 5432
    postgres_db: str = "memory_graph"
    postgres_user: str = "postgres"
    postgres_password: str = "password"
    cpus: str = "1.0"
    memory: str = "1g"
    postgres_cpus: str = "2.0"
    postgres_memory: str = "2g"
    volumes: List[str] = Field(default_factory=list)


class OAuthConfig(_Section):
    enabled: bool = False
    issuer: Optional[str] = None


class NetworkConfig(_Section):
    driver: str = DEFAULT_NETWORK_DRIVER
    external: bool = False


class EnvironmentServerOverride(_Section):
    env: Dict[str, str] = Field(default_factory=dict)


class EnvironmentConfig(_Section):
    servers: Dict[str, EnvironmentServerOverride] = Field(default_factory=dict)


class ComposeManifest(_Section):
    """Top-level manifest document."""

    version: str = "1"
    servers: Dict[str, ServerConfig] = Field(default_factory=dict)
    networks: Dict[str, NetworkConfig] = Field(default_factory=dict)
    proxy_auth: ProxyAuthConfig = Field(default_factory=ProxyAuthConfig)
    dashboard: DashboardConfig = Field(default_factory=DashboardConfig)
    task_scheduler: TaskSchedulerConfig = Field(default_factory=TaskSchedulerConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    environments: Dict[str, EnvironmentConfig] = Field(default_factory=dict)

    path: Optional[Path] = Field(default=None, exclude=True)

    @field_validator("version", mode="before")
    @classmethod
    def stringify_version(cls, v: Any) -> str:
        return str(v)

    @field_validator("servers", "networks", "environments", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return v or {}

    @property
    def project_name(self) -> str:
        if self.path is None:
            return "mcp-compose"
        return self.path.stem

    @property
    def project_dir(self) -> Path:
        if self.path is None:
            return Path.cwd()
        return self.path.parent

    def get_server(self, name: str) -> ServerConfig:
        if name not in self.servers:
            raise NotFoundError(f"Server '{name}' not found in configuration")
        return self.servers[name]


def expand_env(text: str, environ: Optional[Dict[str, str]] = None) -> str:
    """Expand ``${VAR}``, ``${VAR:-default}`` and ``$VAR`` references.

    Unset variables expand to the default or an empty string.
    """
    env = os.environ if environ is None else environ

    def _sub(match: "re.Match[str]") -> str:
        name = match.group(1) or match.group(3)
        default = match.group(2)
        value = env.get(name)
        if value is None or (value == "" and default is not None):
            return default or ""
        return value

    return _ENV_REF_RE.sub(_sub, text)


def find_manifest(start: Optional[Path] = None) -> Path:
    """Locate a manifest file in ``start`` (default: cwd)."""
    base = start or Path.cwd()
    for name in DEFAULT_MANIFEST_FILES:
        candidate = base / name
        if candidate.exists():
            return candidate
    raise ConfigError(
        f"No manifest found in {base} (looked for {', '.join(DEFAULT_MANIFEST_FILES)})"
    )


def load_manifest(path: Optional[Union[str, Path]] = None) -> ComposeManifest:
    """
    Load and validate a compose manifest.

    Args:
        path: Manifest path; searched in the current directory if omitted

    Returns:
        Validated manifest with environment overrides applied

    Raises:
        ConfigError: If the file is missing, unparsable or invalid
    """
    manifest_path = Path(path) if path else find_manifest()
    if not manifest_path.exists():
        raise ConfigError(f"Manifest file not found: {manifest_path}")

    env_file = manifest_path.parent / ".env"
    if env_file.exists():
        load_dotenv(env_file, override=False)
        logger.debug(f"Loaded environment from {env_file}")

    try:
        raw_text = manifest_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read manifest {manifest_path}: {e}")

    try:
        data = yaml.safe_load(expand_env(raw_text)) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse manifest {manifest_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Manifest {manifest_path} must be a mapping")

    manifest = parse_manifest(data)
    manifest.path = manifest_path.resolve()

    apply_environment(manifest, os.getenv("MCP_ENV", "development"))
    apply_env_overrides(manifest)

    logger.info(
        f"Loaded manifest with {len(manifest.servers)} server(s)",
        extra={"manifest": str(manifest.path)},
    )
    return manifest


def parse_manifest(data: Dict[str, Any]) -> ComposeManifest:
    """Build and validate a manifest from already-parsed data."""
    try:
        manifest = ComposeManifest.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid manifest: {e}")
    validate_manifest(manifest)
    return manifest


def apply_environment(manifest: ComposeManifest, environment: str) -> None:
    """Merge per-environment server env overrides into the manifest."""
    env_config = manifest.environments.get(environment)
    if env_config is None:
        return

    for server_name, override in env_config.servers.items():
        server = manifest.servers.get(server_name)
        if server is None:
            logger.warning(
                f"Environment '{environment}' overrides unknown server '{server_name}'"
            )
            continue
        server.env.update(override.env)

    logger.debug(f"Applied environment '{environment}'")


def apply_env_overrides(manifest: ComposeManifest, environ: Optional[Dict[str, str]] = None) -> None:
    """Process environment variables win over manifest values."""
    env = os.environ if environ is None else environ

    if env.get("MCP_API_KEY"):
        manifest.proxy_auth.api_key = env["MCP_API_KEY"]
    if env.get("MCP_PROXY_URL"):
        manifest.dashboard.proxy_url = env["MCP_PROXY_URL"]
    if env.get("MCP_DASHBOARD_HOST"):
        manifest.dashboard.host = env["MCP_DASHBOARD_HOST"]
    if env.get("MCP_DASHBOARD_PORT"):
        try:
            manifest.dashboard.port = int(env["MCP_DASHBOARD_PORT"])
        except ValueError:
            raise ConfigError(f"Invalid MCP_DASHBOARD_PORT: {env['MCP_DASHBOARD_PORT']}")
    if env.get("MCP_DASHBOARD_THEME"):
        manifest.dashboard.theme = env["MCP_DASHBOARD_THEME"]
    if env.get("POSTGRES_URL"):
        manifest.dashboard.postgres_url = env["POSTGRES_URL"]
    if env.get("POSTGRES_PASSWORD"):
        manifest.memory.postgres_password = env["POSTGRES_PASSWORD"]


def validate_manifest(manifest: ComposeManifest) -> None:
    """
    Validate cross-field manifest rules.

    Raises:
        ConfigError: On the first violation found
    """
    if manifest.version != "1":
        raise ConfigError(f"Unsupported manifest version '{manifest.version}' (expected '1')")

    for name, server in manifest.servers.items():
        try:
            validate_server(name, server, manifest)
        except ValidationError as e:
            raise ConfigError(f"Server '{name}': {e.message}")

    if manifest.proxy_auth.enabled and not manifest.proxy_auth.api_key:
        raise ConfigError("proxy_auth is enabled but no api_key is set")

    if manifest.oauth.enabled and not manifest.oauth.issuer:
        raise ConfigError("oauth is enabled but no issuer is set")


def validate_server(name: str, server: ServerConfig, manifest: ComposeManifest) -> None:
    validate_server_name(name)

    if not (server.command or server.image or server.build):
        raise ValidationError("must declare a command, image or build context")

    validate_protocol(server.protocol)
    for capability in server.capabilities:
        validate_capability(capability)

    for mapping in server.ports:
        validate_port_mapping(mapping)

    for volume in server.volumes:
        validate_volume(volume)

    if server.protocol in ("http", "sse") and server.inferred_http_port() is None:
        raise ValidationError(
            f"protocol '{server.protocol}' requires http_port or a port mapping"
        )

    limits = server.deploy.resources.limits
    if limits.memory:
        validate_memory(limits.memory)
    if limits.memory_swap and limits.memory_swap != "-1":
        validate_memory(limits.memory_swap)
    if limits.cpus:
        validate_cpus(limits.cpus)
    if limits.pids is not None and limits.pids < 0:
        raise ValidationError(f"pids limit must be >= 0, got {limits.pids}")

    for dep in server.depends_on:
        if dep == name:
            raise ValidationError("cannot depend on itself")
        if dep not in manifest.servers:
            raise ValidationError(f"depends on unknown server '{dep}'")
