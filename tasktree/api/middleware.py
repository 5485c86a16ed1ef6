"""
API Middleware

Request tracing and mapping of domain errors onto HTTP responses.
"""

import time
from collections.abc import Callable
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from tasktree.core.exceptions import (
    ConfigurationError,
    InvalidJobTransition,
    JobNotFoundError,
    SessionNotFoundError,
    StaleSessionError,
    TaskTreeError,
    WorkflowNotFoundError,
)
from tasktree.observability.logging import get_logger

logger = get_logger("tasktree.api")

_STATUS_CODES: dict[type[TaskTreeError], int] = {
    JobNotFoundError: 404,
    SessionNotFoundError: 404,
    WorkflowNotFoundError: 404,
    InvalidJobTransition: 409,
    StaleSessionError: 409,
    ConfigurationError: 503,
}


def status_code_for(error: TaskTreeError) -> int:
    for error_type, status in _STATUS_CODES.items():
        if isinstance(error, error_type):
            return status
    return 400


class TracingMiddleware(BaseHTTPMiddleware):
    """
    Adds a request id to the request state, the log context and the response.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        request_id = request.headers.get("X-Request-Id", str(uuid4()))
        request.state.request_id = request_id

        start_time = time.perf_counter()
        with logger.context(request_id=request_id):
            response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        response.headers["X-Request-Id"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """
    Global error handling middleware.

    Domain errors carry their code and message; anything else becomes a
    generic 500 without exception text.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        try:
            return await call_next(request)
        except TaskTreeError as e:
            status = status_code_for(e)
            if status >= 500:
                logger.error("Request failed", error=e, path=request.url.path)
            return JSONResponse({"error": e.code, "message": e.message}, status_code=status)
        except Exception:
            logger.exception("Unhandled error", path=request.url.path)
            return JSONResponse({"error": "INTERNAL_ERROR", "message": "Internal server error"}, status_code=500)
