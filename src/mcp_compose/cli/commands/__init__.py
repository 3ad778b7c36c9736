"""
CLI command modules for MCP Compose.
"""

from .compose import compose_commands
from .servers import server_commands
from .services import service_commands

__all__ = [
    'compose_commands',
    'server_commands',
    'service_commands',
]
