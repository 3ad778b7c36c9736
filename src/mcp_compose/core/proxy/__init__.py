"""MCP reverse proxy: upstream transports, OAuth mediation and audit log."""

from mcp_compose.core.proxy.audit import AuditEntry, AuditLog
from mcp_compose.core.proxy.oauth import MediatedResponse, OAuthMediator
from mcp_compose.core.proxy.server import ProxyServer, build_openapi
from mcp_compose.core.proxy.upstream import UpstreamForwarder, UpstreamResponse

__all__ = [
    "AuditEntry",
    "AuditLog",
    "MediatedResponse",
    "OAuthMediator",
    "ProxyServer",
    "UpstreamForwarder",
    "UpstreamResponse",
    "build_openapi",
]
