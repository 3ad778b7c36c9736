"""
Dashboard middleware.

Bearer authentication, request logging and error rendering for the
dashboard's FastAPI app. WebSocket routes are not seen by Starlette's
HTTP middleware, so they check the token with ``websocket_authorized``.
"""

import time
from typing import Callable, Optional, Tuple

from fastapi import Request, Response, WebSocket
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from mcp_compose.core.exceptions import MCPComposeError
from mcp_compose.utils.logging import get_logger

logger = get_logger(__name__)

PUBLIC_PATHS = ("/", "/health", "/favicon.ico")
PUBLIC_PREFIXES: Tuple[str, ...] = ("/static/", "/oauth/", "/.well-known/")


def is_public(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES)


def bearer_matches(header: Optional[str], api_key: str) -> bool:
    return header == f"Bearer {api_key}"


def client_ip(request) -> str:
    """First hop of ``X-Forwarded-For``, then ``X-Real-IP``, then the peer."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def websocket_authorized(websocket: WebSocket, api_key: Optional[str]) -> bool:
    """Browsers cannot set headers on a WebSocket, so ``?token=`` is accepted too."""
    if not api_key:
        return True
    if bearer_matches(websocket.headers.get("Authorization"), api_key):
        return True
    return websocket.query_params.get("token") == api_key


async def mcp_error_handler(request: Request, exc: MCPComposeError) -> JSONResponse:
    """Render taxonomy errors as ``{"error": message}``."""
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse({"error": exc.message}, status_code=exc.http_status)


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """Require ``Authorization: Bearer <key>`` on non-public paths."""

    def __init__(self, app, api_key: Optional[str] = None):
        super().__init__(app)
        self.api_key = api_key

        logger.info("Authentication middleware initialized", extra={
            "auth_enabled": bool(api_key)
        })

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.api_key or request.method == "OPTIONS" or is_public(request.url.path):
            return await call_next(request)

        if bearer_matches(request.headers.get("Authorization"), self.api_key):
            return await call_next(request)

        logger.warning("Unauthorized dashboard request", extra={
            "path": request.url.path,
            "client_ip": client_ip(request),
        })
        return JSONResponse({"error": "Unauthorized"}, status_code=401)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Request/response logging middleware."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        response = await call_next(request)
        duration_ms = (time.time() - start_time) * 1000

        logger.info(f"{request.method} {request.url.path}", extra={
            "status_code": response.status_code,
            "duration_ms": round(duration_ms, 2),
            "client_ip": client_ip(request),
        })
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Last-resort handler for exceptions no route handled."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled dashboard error", extra={
                "method": request.method,
                "url": str(request.url),
                "error": str(e),
                "error_type": type(e).__name__,
            }, exc_info=True)
            return JSONResponse({"error": "Internal server error"}, status_code=500)
