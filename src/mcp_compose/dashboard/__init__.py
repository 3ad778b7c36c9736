"""Operator dashboard: FastAPI app, UI assets and WebSocket streams."""

from mcp_compose.dashboard.server import DashboardServer, create_dashboard_server

__all__ = ["DashboardServer", "create_dashboard_server"]
