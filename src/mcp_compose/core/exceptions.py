"""
Exception classes for MCP Compose.

Defines the error taxonomy shared by the runtime driver, the proxy,
the inspector and the dashboard. Every error knows the HTTP status it
maps to so REST surfaces can render ``{"error": "<message>"}`` uniformly.
"""

from typing import Any, Dict, Optional


class MCPComposeError(Exception):
    """Base exception for all MCP Compose errors."""

    http_status = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize MCPComposeError.

        Args:
            message: Error message
            error_code: Optional error code for categorization
            details: Optional additional error details
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        """String representation of the error."""
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary representation."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class ConfigError(MCPComposeError):
    """Malformed manifest or missing required setting."""

    http_status = 400


class ValidationError(ConfigError):
    """Invalid server name, port mapping, resource string or similar."""
    pass


class EngineError(MCPComposeError):
    """Container engine failures.

    ``kind`` is one of ``engine-absent``, ``busy``, ``not-found``,
    ``build-failed``, ``pull-failed``, ``start-failed``, ``stop-failed``
    or ``inspect-failed``.
    """

    KINDS = (
        "engine-absent",
        "busy",
        "not-found",
        "build-failed",
        "pull-failed",
        "start-failed",
        "stop-failed",
        "inspect-failed",
    )

    def __init__(
        self,
        kind: str,
        message: str,
        stderr_tail: str = "",
        details: Optional[Dict[str, Any]] = None,
    ):
        if kind not in self.KINDS:
            raise ValueError(f"Unknown engine error kind: {kind}")
        super().__init__(message, error_code=kind, details=details)
        self.kind = kind
        self.stderr_tail = stderr_tail

    @property
    def http_status(self) -> int:
        return 404 if self.kind == "not-found" else 500

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["kind"] = self.kind
        if self.stderr_tail:
            data["stderr_tail"] = self.stderr_tail
        return data


class UpstreamError(MCPComposeError):
    """Errors talking to MCP servers or the authorization server."""

    http_status = 502

    def __init__(
        self,
        kind: str,
        message: str,
        status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code=kind, details=details)
        self.kind = kind
        self.status = status


class AuthError(MCPComposeError):
    """Missing or invalid bearer token."""

    http_status = 401

    def __init__(self, kind: str = "missing", message: str = "Unauthorized"):
        super().__init__(message, error_code=kind)
        self.kind = kind


class NotFoundError(MCPComposeError):
    """Unknown server, container or session."""

    http_status = 404


class TimeoutError(MCPComposeError):
    """A deadline was exceeded."""

    http_status = 504


class InternalError(MCPComposeError):
    """Invariant violation."""
    pass
