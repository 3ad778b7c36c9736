"""
Auxiliary service commands for MCP Compose CLI.

Each system service (memory, task-scheduler, dashboard container) gets a
group with start/stop/restart/status.
"""

import asyncio

import click
from rich.console import Console

from mcp_compose.cli.helpers import handle_errors, service_table
from mcp_compose.core.services import get_service

console = Console()

SERVICE_GROUPS = {
    "memory": ("memory", "Manage the memory server and its PostgreSQL database."),
    "task-scheduler": ("task-scheduler", "Manage the task scheduler service."),
    "dashboard-service": ("dashboard", "Manage the dashboard container."),
}


def _service_group(cli_context, group_name: str, service_name: str, help_text: str) -> click.Group:

    @click.group(group_name, help=help_text)
    def group():
        pass

    def _service():
        return get_service(service_name, cli_context.get_manifest(), cli_context.get_runtime())

    @group.command("start")
    @handle_errors
    def start():
        """Start the service (no-op if already running)."""
        service = _service()
        asyncio.run(service.start())
        console.print(f"[green]✓[/green] {service.container} is running")

    @group.command("stop")
    @handle_errors
    def stop():
        """Stop the service."""
        service = _service()
        asyncio.run(service.stop())
        console.print(f"[green]✓[/green] {service.container} stopped")

    @group.command("restart")
    @handle_errors
    def restart():
        """Stop, then start the service."""
        service = _service()
        asyncio.run(service.restart())
        console.print(f"[green]✓[/green] {service.container} restarted")

    @group.command("status")
    @handle_errors
    def status():
        """Show the service container status."""
        info = asyncio.run(_service().describe())
        console.print(service_table(info))

    return group


def service_commands(cli_context):
    """Add auxiliary service groups to the CLI."""
    return [
        _service_group(cli_context, group_name, service_name, help_text)
        for group_name, (service_name, help_text) in SERVICE_GROUPS.items()
    ]
