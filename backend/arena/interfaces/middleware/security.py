"""
Sandbox Arena - Security Middleware
Security headers and request ids
"""

import uuid
from typing import Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from arena.core.config import Settings

logger = structlog.get_logger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Adds security headers and an X-Request-ID to every HTTP response.

    WebSocket upgrades bypass BaseHTTPMiddleware and are untouched.
    """

    def __init__(self, app: ASGIApp, settings: Settings):
        """
        Initialize security headers middleware.

        Args:
            app: ASGI application
            settings: Application settings
        """
        super().__init__(app)
        self._settings = settings
        self._csp = "; ".join([
            "default-src 'none'",
            "frame-ancestors 'none'",
            "base-uri 'none'",
        ])

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        """
        Tag the request with an id and add security headers to the response.

        Args:
            request: Incoming request
            call_next: Next middleware/handler

        Returns:
            Response with security headers
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"

        # HSTS (only in production with HTTPS)
        if self._settings.environment == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        response.headers["Content-Security-Policy"] = self._csp
        return response
