"""
Process settings for MCP Compose.

Hierarchical settings loading with pydantic-settings: TOML files first,
then ``MCP_COMPOSE_*`` environment variables, then the well-known
variables (``MCP_PROXY_URL``, ``MCP_API_KEY``, ``POSTGRES_URL`` ...)
which always win.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import toml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from mcp_compose.core import constants
from mcp_compose.utils.logging import get_logger

logger = get_logger(__name__)


class LoggingSettings(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="File logging level")
    console_level: str = Field(default="INFO", description="Console logging level")
    format_type: str = Field(default="text", description="Log format (text/json)")
    file: Optional[str] = Field(default=None, description="Log file path")
    enable_rich: bool = Field(default=True, description="Enable Rich console output")
    max_bytes: int = Field(default=10 * 1024 * 1024, description="Max log file size")
    backup_count: int = Field(default=5, description="Number of backup files")
    suppress_http: bool = Field(default=True, description="Suppress HTTP client logging")

    @field_validator("level", "console_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate logging level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator("format_type")
    @classmethod
    def validate_format_type(cls, v: str) -> str:
        """Validate format type."""
        if v not in ["text", "json"]:
            raise ValueError(f"Invalid format type: {v}")
        return v


class ProxySettings(BaseModel):
    """Reverse proxy configuration."""

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=constants.DEFAULT_PROXY_PORT, description="Listen port")
    url: str = Field(
        default=f"http://localhost:{constants.DEFAULT_PROXY_PORT}",
        description="Base URL other components use to reach the proxy",
    )
    api_key: Optional[str] = Field(default=None, description="Bearer token for /api and server routes")
    read_timeout: int = Field(default=constants.HTTP_READ_TIMEOUT, description="Upstream read timeout")
    idle_timeout: int = Field(default=constants.HTTP_IDLE_TIMEOUT, description="Keep-alive idle timeout")
    stdio_timeout: int = Field(default=constants.STDIO_EXEC_TIMEOUT, description="exec transport timeout")
    audit_max_entries: int = Field(default=1000, description="Audit entries kept in memory")


class DashboardSettings(BaseModel):
    """Dashboard server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=constants.DEFAULT_DASHBOARD_PORT, description="Listen port")
    theme: str = Field(default="dark", description="UI theme")
    proxy_timeout: int = Field(default=constants.HTTP_READ_TIMEOUT, description="Proxy request timeout")

    @field_validator("theme")
    @classmethod
    def validate_theme(cls, v: str) -> str:
        """Validate theme."""
        if v not in ["dark", "light"]:
            raise ValueError(f"Invalid theme: {v}")
        return v


class ActivitySettings(BaseModel):
    """Activity bus and store configuration."""

    postgres_url: Optional[str] = Field(default=None, description="Store connection string")
    retention_days: int = Field(default=constants.ACTIVITY_RETENTION_DAYS, description="Retention window")
    replay_count: int = Field(default=constants.ACTIVITY_REPLAY_COUNT, description="Events replayed on subscribe")
    mailbox_size: int = Field(default=constants.ACTIVITY_MAILBOX_SIZE, description="Inbound mailbox capacity")
    webhook_url: Optional[str] = Field(default=None, description="Dashboard intake URL for cross-process publish")

    @field_validator("retention_days")
    @classmethod
    def validate_retention(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Retention must be a positive number of days")
        return v


class InspectorSettings(BaseModel):
    """Inspector session pool configuration."""

    rpc_timeout: int = Field(default=constants.INSPECTOR_RPC_TIMEOUT, description="JSON-RPC timeout")
    session_idle_timeout: int = Field(default=constants.SESSION_IDLE_TIMEOUT, description="Idle TTL")
    sweep_interval: int = Field(default=constants.SESSION_SWEEP_INTERVAL, description="Sweeper period")


class RuntimeSettings(BaseModel):
    """Container engine selection."""

    engine: Optional[str] = Field(default=None, description="Force 'docker' or 'podman'")
    network: str = Field(default=constants.DEFAULT_NETWORK, description="Default overlay network")

    @field_validator("engine")
    @classmethod
    def validate_engine(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in ("docker", "podman"):
            raise ValueError(f"Unsupported engine: {v}")
        return v


class Settings(BaseSettings):
    """Main settings class."""

    debug: bool = Field(default=False, description="Enable debug mode")
    manifest: Optional[str] = Field(default=None, description="Default manifest path")

    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    dashboard: DashboardSettings = Field(default_factory=DashboardSettings)
    activity: ActivitySettings = Field(default_factory=ActivitySettings)
    inspector: InspectorSettings = Field(default_factory=InspectorSettings)
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)

    model_config = {
        "env_prefix": "MCP_COMPOSE_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    def get_log_file(self) -> Optional[Path]:
        """Get log file path."""
        if self.logging.file:
            return Path(os.path.expanduser(self.logging.file))
        return None


# Variable name -> (section, field)
ENV_ALIASES = {
    "MCP_PROXY_URL": ("proxy", "url"),
    "MCP_API_KEY": ("proxy", "api_key"),
    "MCP_DASHBOARD_HOST": ("dashboard", "host"),
    "MCP_DASHBOARD_PORT": ("dashboard", "port"),
    "MCP_DASHBOARD_THEME": ("dashboard", "theme"),
    "POSTGRES_URL": ("activity", "postgres_url"),
}


def _env_alias_overrides(environ: Dict[str, str]) -> Dict[str, Dict[str, Any]]:
    overrides: Dict[str, Dict[str, Any]] = {}
    for var, (section, field) in ENV_ALIASES.items():
        value = environ.get(var)
        if value:
            overrides.setdefault(section, {})[field] = value
    return overrides


def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


class ConfigManager:
    """Settings manager with hierarchical loading."""

    def __init__(self):
        self._settings: Optional[Settings] = None

    def load_settings(
        self,
        config_files: Optional[List[Union[str, Path]]] = None,
        **overrides: Any,
    ) -> Settings:
        """
        Load settings from multiple sources.

        Args:
            config_files: List of TOML files to load
            **overrides: Settings overrides

        Returns:
            Loaded settings
        """
        if self._settings is not None:
            return self._settings

        if config_files is None:
            config_files = [
                "/etc/mcp-compose/config.toml",
                "~/.config/mcp-compose/config.toml",
                "./.mcp-compose.toml",
            ]

        config_data: Dict[str, Any] = {}

        for config_file in config_files:
            file_path = Path(os.path.expanduser(str(config_file)))
            if file_path.exists():
                try:
                    _merge(config_data, toml.load(file_path))
                    logger.debug(f"Loaded settings from {file_path}")
                except (toml.TomlDecodeError, OSError) as e:
                    logger.warning(f"Failed to load settings from {file_path}: {e}")

        _merge(config_data, _env_alias_overrides(dict(os.environ)))
        _merge(config_data, overrides)

        self._settings = Settings(**config_data)
        return self._settings

    def get_settings(self) -> Settings:
        """Get current settings."""
        if self._settings is None:
            return self.load_settings()
        return self._settings

    def reload_settings(self, **overrides: Any) -> Settings:
        """Reload settings."""
        self._settings = None
        return self.load_settings(**overrides)


_config_manager = ConfigManager()

load_settings = _config_manager.load_settings
get_settings = _config_manager.get_settings
reload_settings = _config_manager.reload_settings
