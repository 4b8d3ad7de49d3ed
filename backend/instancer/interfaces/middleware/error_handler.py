"""
Instancer - Error Handler Middleware
Consistent error response format
"""

import traceback
from typing import Callable

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from instancer.core.exceptions import InstanceError

logger = structlog.get_logger(__name__)


async def instance_error_handler(request: Request, exc: InstanceError) -> JSONResponse:
    """Render lifecycle errors with their code, status and details."""
    log = logger.warning if exc.http_status >= 500 else logger.info
    log(
        "Instance request rejected",
        error=exc.code,
        status=exc.http_status,
        path=request.url.path,
        method=request.method,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


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
                    "message": detail,
                    "retryable": status_code >= 500,
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
        # Import here to avoid circular imports
        from sqlalchemy.exc import IntegrityError, OperationalError

        if isinstance(exc, InstanceError):
            return exc.code, exc.http_status, exc.message

        # Database errors
        if isinstance(exc, IntegrityError):
            return "DATABASE_INTEGRITY_ERROR", 409, "Database constraint violation"

        if isinstance(exc, OperationalError):
            return "DATABASE_ERROR", 503, "Database operation failed"

        # Validation errors
        if isinstance(exc, ValueError):
            return "VALIDATION_ERROR", 400, str(exc)

        # Permission errors
        if isinstance(exc, PermissionError):
            return "PERMISSION_DENIED", 403, str(exc)

        # Not found errors
        if isinstance(exc, LookupError):
            return "NOT_FOUND", 404, str(exc)

        # Default: internal server error
        return "INTERNAL_ERROR", 500, "An unexpected error occurred"
