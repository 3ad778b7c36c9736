"""
Error handling utilities for CLI commands.
"""

import functools
import sys

from rich.console import Console

from mcp_compose.core.exceptions import ConfigError

console = Console(stderr=True)

EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 2


def exit_code_for(error: Exception) -> int:
    """Configuration problems exit 1; everything else exits 2."""
    if isinstance(error, ConfigError):
        return EXIT_CONFIG_ERROR
    return EXIT_RUNTIME_ERROR


def handle_errors(func):
    """Decorator to handle common CLI errors."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except KeyboardInterrupt:
            console.print("\n[yellow]Operation cancelled by user[/yellow]")
            sys.exit(EXIT_RUNTIME_ERROR)
        except Exception as e:
            console.print(f"[red]Error: {e}[/red]")
            console.print("[dim]Use --debug for more details[/dim]")
            sys.exit(exit_code_for(e))

    return wrapper
