"""
Main CLI interface for MCP Compose.

Click command groups for compose lifecycle, the proxy and dashboard
servers, and the auxiliary system services.
"""

from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from mcp_compose import __version__
from mcp_compose.core.compose import ComposeOrchestrator
from mcp_compose.core.manifest import ComposeManifest, load_manifest
from mcp_compose.core.runtime import get_runtime
from mcp_compose.core.runtime.base import ContainerRuntime
from mcp_compose.utils.config import Settings, get_settings
from mcp_compose.utils.logging import get_logger, setup_logging

from mcp_compose.cli.commands.compose import compose_commands
from mcp_compose.cli.commands.servers import server_commands
from mcp_compose.cli.commands.services import service_commands

console = Console()
logger = get_logger(__name__)


class CLIContext:
    """CLI context for passing state between commands."""

    def __init__(self):
        self.manifest_path: Optional[Path] = None
        self.manifest: Optional[ComposeManifest] = None
        self.runtime: Optional[ContainerRuntime] = None
        self.orchestrator: Optional[ComposeOrchestrator] = None

    @property
    def settings(self) -> Settings:
        return get_settings()

    def get_manifest(self) -> ComposeManifest:
        """Load the manifest once per invocation."""
        if self.manifest is None:
            self.manifest = load_manifest(self.manifest_path or self.settings.manifest)
        return self.manifest

    def get_runtime(self) -> ContainerRuntime:
        if self.runtime is None:
            self.runtime = get_runtime(self.settings.runtime.engine)
        return self.runtime

    def get_orchestrator(self) -> ComposeOrchestrator:
        if self.orchestrator is None:
            self.orchestrator = ComposeOrchestrator(
                self.get_manifest(),
                self.get_runtime(),
                default_network=self.settings.runtime.network,
            )
        return self.orchestrator


# Global CLI context
cli_context = CLIContext()


@click.group()
@click.option(
    "--file", "-c",
    "manifest_file",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="MCP_COMPOSE_FILE",
    help="Path to mcp-compose.yaml (searched upward from the current directory by default)"
)
@click.option(
    "--debug", "-d",
    is_flag=True,
    help="Enable debug logging"
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    help="Enable verbose output"
)
@click.version_option(version=__version__, prog_name="MCP Compose")
def cli(manifest_file: Optional[Path], debug: bool, verbose: bool):
    """
    Compose-style orchestration for MCP servers.

    Declare servers in mcp-compose.yaml, bring them up on a shared
    network, front them with an authenticating proxy and watch them
    from the dashboard.
    """
    settings = cli_context.settings
    console_level = "DEBUG" if debug else "INFO" if verbose else "WARNING"
    setup_logging(
        level="DEBUG" if debug else settings.logging.level,
        console_level=console_level,
        log_file=Path(settings.logging.file) if settings.logging.file else None,
        format_type=settings.logging.format_type,
        enable_rich=settings.logging.enable_rich,
        suppress_http=settings.logging.suppress_http and not debug,
    )
    cli_context.manifest_path = manifest_file


def register_commands():
    """Register all modular command groups with the main CLI."""
    for cmd in compose_commands(cli_context):
        cli.add_command(cmd)

    for cmd in server_commands(cli_context):
        cli.add_command(cmd)

    for cmd in service_commands(cli_context):
        cli.add_command(cmd)


register_commands()


def main():
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
