"""
Rich rendering for CLI output.
"""

from typing import Dict, List

from rich.console import Console
from rich.table import Table

from mcp_compose.core.compose import ServerRow

console = Console()

STATUS_STYLES = {
    "running": "green",
    "starting": "yellow",
    "paused": "yellow",
    "stopped": "red",
    "unknown": "dim",
}


def status_text(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def servers_table(rows: List[ServerRow], title: str) -> Table:
    """Build the ``ls`` table."""
    table = Table(
        title=f"{title} ({len(rows)} servers)",
        show_header=True,
        header_style="bold cyan",
        title_style="bold cyan",
    )
    table.add_column("Server", style="green")
    table.add_column("Status")
    table.add_column("Type", style="blue")
    table.add_column("Container ID", style="dim")
    table.add_column("Capabilities", style="white")

    for row in rows:
        table.add_row(row.name, status_text(row.status), row.type, row.container_id, row.capabilities)
    return table


def service_table(info: Dict[str, str]) -> Table:
    table = Table(show_header=False, box=None)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in info.items():
        table.add_row(key.capitalize(), status_text(value) if key == "status" else value)
    return table


def print_changes(changes: Dict[str, List[str]]) -> None:
    """Summarize a reload diff."""
    if not any(changes.values()):
        console.print("[dim]No changes[/dim]")
        return
    for action, names in changes.items():
        if names:
            console.print(f"  [cyan]{action}[/cyan]: {', '.join(names)}")
