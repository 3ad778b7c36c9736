"""
Compose lifecycle commands for MCP Compose CLI.

up/down/start/stop/restart/ls/logs/validate plus ``reload``, which asks a
running proxy to re-read the manifest.
"""

import asyncio
import sys
from typing import Tuple

import click
import httpx
from rich.console import Console

from mcp_compose.cli.helpers import handle_errors, print_changes, servers_table
from mcp_compose.core.constants import DEFAULT_LOG_TAIL
from mcp_compose.core.exceptions import UpstreamError
from mcp_compose.core.manifest import validate_manifest

console = Console()


async def _follow(orchestrator, name: str, tail: int) -> None:
    handle = await orchestrator.follow_logs(name, tail=tail)
    async with handle:
        while True:
            line = await handle.stdout.readline()
            if not line:
                break
            sys.stdout.write(line.decode("utf-8", errors="replace"))
            sys.stdout.flush()


def compose_commands(cli_context):
    """Add compose lifecycle commands to the CLI."""

    @click.command("up")
    @click.argument("servers", nargs=-1)
    @handle_errors
    def up(servers: Tuple[str, ...]):
        """Start servers and their dependencies (all servers when none given)."""
        orchestrator = cli_context.get_orchestrator()

        async def _up():
            try:
                return await orchestrator.up(list(servers))
            finally:
                await orchestrator.wait_background()

        started = asyncio.run(_up())
        if started:
            console.print(f"[green]✓[/green] Started: {', '.join(started)}")
        else:
            console.print("[yellow]No servers to start[/yellow]")

    @click.command("down")
    @click.argument("servers", nargs=-1)
    @handle_errors
    def down(servers: Tuple[str, ...]):
        """Stop servers in reverse dependency order."""
        orchestrator = cli_context.get_orchestrator()

        async def _down():
            try:
                return await orchestrator.down(list(servers))
            finally:
                await orchestrator.wait_background()

        warnings = asyncio.run(_down())
        for warning in warnings:
            console.print(f"[yellow]⚠ {warning}[/yellow]")
        console.print("[green]✓[/green] Servers stopped")

    @click.command("start")
    @click.argument("servers", nargs=-1)
    @handle_errors
    def start(servers: Tuple[str, ...]):
        """Start the named servers."""
        orchestrator = cli_context.get_orchestrator()
        asyncio.run(orchestrator.start(list(servers)))
        console.print(f"[green]✓[/green] Started: {', '.join(servers)}")

    @click.command("stop")
    @click.argument("servers", nargs=-1)
    @handle_errors
    def stop(servers: Tuple[str, ...]):
        """Stop the named servers."""
        orchestrator = cli_context.get_orchestrator()
        asyncio.run(orchestrator.stop(list(servers)))
        console.print(f"[green]✓[/green] Stopped: {', '.join(servers)}")

    @click.command("restart")
    @click.argument("servers", nargs=-1)
    @handle_errors
    def restart(servers: Tuple[str, ...]):
        """Restart the named servers."""
        orchestrator = cli_context.get_orchestrator()
        asyncio.run(orchestrator.restart(list(servers)))
        console.print(f"[green]✓[/green] Restarted: {', '.join(servers)}")

    @click.command("ls")
    @handle_errors
    def ls():
        """List declared servers with their status."""
        orchestrator = cli_context.get_orchestrator()
        rows = asyncio.run(orchestrator.list_servers())
        if not rows:
            console.print("[yellow]No servers declared in manifest[/yellow]")
            return
        console.print(servers_table(rows, orchestrator.manifest.project_name))

    @click.command("logs")
    @click.argument("server")
    @click.option("--follow", "-f", is_flag=True, help="Follow log output")
    @click.option("--tail", "-n", default=DEFAULT_LOG_TAIL, show_default=True, help="Lines to show from the end")
    @handle_errors
    def logs(server: str, follow: bool, tail: int):
        """Print a server's logs."""
        orchestrator = cli_context.get_orchestrator()
        if follow:
            asyncio.run(_follow(orchestrator, server, tail))
        else:
            click.echo(asyncio.run(orchestrator.read_logs(server, tail=tail)), nl=False)

    @click.command("validate")
    @handle_errors
    def validate():
        """Load and validate the manifest."""
        manifest = cli_context.get_manifest()
        validate_manifest(manifest)
        console.print(f"[green]✓[/green] Configuration file is valid: [cyan]{manifest.path}[/cyan]")
        console.print(f"[dim]{len(manifest.servers)} servers declared[/dim]")

    @click.command("reload")
    @click.option("--proxy-url", help="Proxy base URL (defaults to MCP_PROXY_URL or settings)")
    @handle_errors
    def reload(proxy_url: str):
        """Ask a running proxy to re-read the manifest."""
        manifest = cli_context.get_manifest()
        settings = cli_context.settings
        base = (proxy_url or manifest.dashboard.proxy_url or settings.proxy.url).rstrip("/")
        api_key = manifest.proxy_auth.api_key or settings.proxy.api_key
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}

        try:
            response = httpx.post(f"{base}/api/reload", headers=headers, timeout=settings.proxy.read_timeout)
        except httpx.HTTPError as e:
            raise UpstreamError("unreachable", f"Proxy at {base} is not reachable: {e}")
        if response.status_code != 200:
            raise UpstreamError(
                "bad-status",
                f"Reload failed ({response.status_code}): {response.text.strip()}",
                status=response.status_code,
            )

        console.print("[green]✓[/green] Proxy configuration reloaded")
        print_changes(response.json().get("changes", {}))

    return [up, down, start, stop, restart, ls, logs, validate, reload]
