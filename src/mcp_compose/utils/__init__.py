"""Utility modules for MCP Compose."""

from mcp_compose.utils.logging import get_logger, setup_logging
from mcp_compose.utils.config import Settings, get_settings

__all__ = [
    "get_logger",
    "setup_logging",
    "Settings",
    "get_settings",
]
