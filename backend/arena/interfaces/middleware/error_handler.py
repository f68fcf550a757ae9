"""
Sandbox Arena - Error Handling
Sandbox error rendering and a last-resort middleware for everything else
"""

import asyncio
import traceback
from typing import Callable

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from arena.infrastructure.orchestrator.exceptions import SandboxError

logger = structlog.get_logger(__name__)


async def sandbox_error_handler(request: Request, exc: SandboxError) -> JSONResponse:
    """Render a SandboxError with its own status and a short, safe message."""
    request_id = getattr(request.state, "request_id", None)

    logger.info(
        "Sandbox error",
        error=exc.kind.value,
        status_code=exc.status_code,
        path=request.url.path,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={**exc.to_dict(), "request_id": request_id},
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Global error handler middleware.

    Catches all unhandled exceptions and returns consistent error responses.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        """
        Process request and handle any exceptions.

        Args:
            request: Incoming request
            call_next: Next middleware/handler

        Returns:
            Response or error response
        """
        try:
            return await call_next(request)

        except Exception as exc:
            request_id = getattr(request.state, "request_id", None)

            logger.error(
                "Unhandled exception",
                error=str(exc),
                error_type=type(exc).__name__,
                path=request.url.path,
                method=request.method,
                request_id=request_id,
                traceback=traceback.format_exc(),
            )

            error_code, status_code, detail = self._classify_error(exc)

            return JSONResponse(
                status_code=status_code,
                content={
                    "error": error_code,
                    "detail": detail,
                    "request_id": request_id,
                },
            )

    def _classify_error(self, exc: Exception) -> tuple[str, int, str]:
        """
        Classify exception and return error details.

        Args:
            exc: The exception to classify

        Returns:
            Tuple of (error_code, status_code, detail)
        """
        # Normally rendered by the exception handler; this covers middleware-raised ones
        if isinstance(exc, SandboxError):
            return exc.kind.value, exc.status_code, exc.message

        if isinstance(exc, asyncio.TimeoutError):
            return "TIMEOUT", 504, "The operation timed out"

        if isinstance(exc, ValueError):
            return "VALIDATION_ERROR", 400, "Invalid request"

        if isinstance(exc, PermissionError):
            return "PERMISSION_DENIED", 403, "Permission denied"

        if isinstance(exc, LookupError):
            return "NOT_FOUND", 404, "Resource not found"

        return "INTERNAL_ERROR", 500, "An unexpected error occurred"
