"""
Proxy and dashboard server commands for MCP Compose CLI.
"""

import asyncio
from typing import Optional

import click
from rich.console import Console

from mcp_compose.cli.helpers import handle_errors
from mcp_compose.core.activity.bus import ActivityPublisher, NullPublisher, WebhookPublisher
from mcp_compose.core.proxy import ProxyServer
from mcp_compose.core.services import DashboardService
from mcp_compose.dashboard import create_dashboard_server

console = Console()


def activity_publisher(cli_context) -> ActivityPublisher:
    """Publish proxy activity to the dashboard's intake when a dashboard is configured."""
    manifest = cli_context.get_manifest()
    settings = cli_context.settings
    url = settings.activity.webhook_url
    if not url and manifest.dashboard.enabled:
        url = f"http://localhost:{manifest.dashboard.port}/api/activity"
    if not url:
        return NullPublisher()
    return WebhookPublisher(url, api_key=manifest.proxy_auth.api_key or settings.proxy.api_key)


def server_commands(cli_context):
    """Add proxy and dashboard commands to the CLI."""

    @click.command("proxy")
    @click.option("--host", "-h", default=None, help="Bind address")
    @click.option("--port", "-p", type=int, default=None, help="Listen port")
    @handle_errors
    def proxy(host: Optional[str], port: Optional[int]):
        """Run the MCP reverse proxy in the foreground."""
        manifest = cli_context.get_manifest()
        settings = cli_context.settings.proxy
        publisher = activity_publisher(cli_context)

        server = ProxyServer(
            manifest,
            cli_context.get_runtime(),
            host=host or settings.host,
            port=port or settings.port,
            api_key=settings.api_key,
            publisher=publisher,
            read_timeout=settings.read_timeout,
            stdio_timeout=settings.stdio_timeout,
            audit_max_entries=settings.audit_max_entries,
        )

        console.print("[blue]🚀 Starting MCP proxy server...[/blue]")
        console.print(f"   Address: [cyan]http://{server.host}:{server.port}[/cyan]")
        console.print(f"   Servers: [cyan]{len(manifest.servers)}[/cyan]")
        console.print(f"   Auth:    [cyan]{'enabled' if server.api_key else 'disabled'}[/cyan]")
        console.print("[dim]Press Ctrl+C to stop[/dim]")

        async def _run():
            try:
                await server.run_forever()
            finally:
                if isinstance(publisher, WebhookPublisher):
                    await publisher.close()

        try:
            asyncio.run(_run())
        except KeyboardInterrupt:
            console.print("\n[yellow]Proxy server stopped[/yellow]")

    @click.command("dashboard")
    @click.option("--native", is_flag=True, help="Serve in this process instead of the dashboard container")
    @click.option("--host", "-h", default=None, help="Bind address (native mode)")
    @click.option("--port", "-p", type=int, default=None, help="Listen port (native mode)")
    @handle_errors
    def dashboard(native: bool, host: Optional[str], port: Optional[int]):
        """Run the operator dashboard."""
        manifest = cli_context.get_manifest()
        runtime = cli_context.get_runtime()

        if not native:
            service = DashboardService(manifest, runtime)
            asyncio.run(service.start())
            console.print(f"[green]✓[/green] Dashboard running at [cyan]http://localhost:{manifest.dashboard.port}[/cyan]")
            return

        server = create_dashboard_server(manifest, runtime, cli_context.settings, host=host, port=port)
        console.print(f"[blue]🚀 Starting MCP-Compose Dashboard at [cyan]http://{server.host}:{server.port}[/cyan][/blue]")
        console.print(f"   Proxy: [cyan]{server.proxy_url}[/cyan]")
        server.run()

    return [proxy, dashboard]
