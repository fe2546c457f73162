"""Request tracking and error mapping for the API.

Adds:
- X-Request-ID header (taken from the request or generated)
- X-Process-Time header
- request_id bound into structlog context, so audit and engine log lines
  emitted while serving a request carry it
- Exception handlers turning engine errors into ``{detail, request_id}`` bodies
"""

import logging
import time
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import get_settings
from core.exceptions import ExecutionFailure, WorkflowEngineError

logger = logging.getLogger(__name__)

_QUIET_PATHS = ("/api/health",)


class RequestTrackingMiddleware(BaseHTTPMiddleware):
    """Tag every request with an id and log its outcome."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id
        tokens = structlog.contextvars.bind_contextvars(request_id=request_id)
        started = time.monotonic()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.monotonic() - started) * 1000
            logger.error(
                f"Unhandled exception on {request.method} {request.url.path}",
                extra={"request_id": request_id, "duration_ms": round(duration_ms, 2)},
                exc_info=True,
            )
            # Production answers never carry internal error text
            detail = "Internal server error" if get_settings().is_production else (str(exc) or "Internal server error")
            return JSONResponse(
                status_code=500,
                content={"detail": detail, "request_id": request_id},
                headers={"X-Request-ID": request_id},
            )
        finally:
            structlog.contextvars.reset_contextvars(**tokens)

        duration_ms = (time.monotonic() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.2f}ms"

        if request.url.path not in _QUIET_PATHS:
            logger.log(
                logging.WARNING if response.status_code >= 400 else logging.INFO,
                f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.0f}ms)",
                extra={
                    "request_id": request_id,
                    "status_code": response.status_code,
                    "client_ip": request.client.host if request.client else None,
                },
            )
        return response


def _error_body(request: Request, exc: WorkflowEngineError) -> dict:
    body = {"detail": exc.message, "request_id": getattr(request.state, "request_id", None)}
    if isinstance(exc, ExecutionFailure):
        body["execution_id"] = exc.execution_id
        body["step_id"] = exc.step_id
    elif getattr(exc, "step_id", None):
        body["step_id"] = exc.step_id
    return body


def setup_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers.

    Every engine error carries its own HTTP status code; ExecutionFailure
    responses also name the execution and step that failed.
    """

    @app.exception_handler(WorkflowEngineError)
    async def engine_error_handler(request: Request, exc: WorkflowEngineError):
        if exc.status_code >= 500:
            logger.error(
                f"{type(exc).__name__}: {exc.message}",
                extra={"request_id": getattr(request.state, "request_id", None), "path": request.url.path},
            )
        return JSONResponse(status_code=exc.status_code, content=_error_body(request, exc))

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=400,
            content={"detail": str(exc), "request_id": getattr(request.state, "request_id", None)},
        )
