"""Request tracing and ledger error reporting for FastAPI.

Provides:
- Request ID generation and propagation (``X-Request-ID``)
- Per-request timing in the access log
- A single handler for ``CommerceError`` so every domain failure is logged
  with its type and returned as ``{"detail": ..., "error": ...}``

Usage:
    from libs.common.middleware import add_observability_middleware

    app = FastAPI()
    add_observability_middleware(app)
"""
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from libs.common.errors import CommerceError
from libs.common.logging import (
    clear_request_context,
    configure_logging,
    get_logger,
    get_request_id,
    set_request_context,
)

logger = get_logger(__name__)

# Health checks would drown the access log
QUIET_PATHS = frozenset({"/health"})


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the duration of the call and log the outcome."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = set_request_context(
            request_id=request.headers.get("X-Request-ID"),
            path=request.url.path,
            method=request.method,
        )
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "Unhandled error in %s %s",
                request.method,
                request.url.path,
                extra={"extra_fields": {"duration_ms": _elapsed_ms(started)}},
            )
            raise
        else:
            if request.url.path not in QUIET_PATHS:
                level = "warning" if response.status_code >= 400 else "info"
                getattr(logger, level)(
                    "%s %s -> %s",
                    request.method,
                    request.url.path,
                    response.status_code,
                    extra={"extra_fields": {
                        "status_code": response.status_code,
                        "duration_ms": _elapsed_ms(started),
                    }},
                )
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            clear_request_context()


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


async def commerce_error_handler(request: Request, exc: CommerceError) -> JSONResponse:
    """Domain errors keep their status and message; 5xx are logged as errors."""
    error = type(exc).__name__
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "%s on %s %s: %s",
        error,
        request.method,
        request.url.path,
        exc.detail,
        extra={"extra_fields": {"error": error, "status_code": exc.status_code}},
    )

    headers = dict(exc.headers or {})
    request_id = get_request_id()
    if request_id:
        headers["X-Request-ID"] = request_id
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": error},
        headers=headers,
    )


def add_observability_middleware(app: FastAPI) -> None:
    """
    Configure logging, request tracing and the domain error handler.

    Call this right after creating the app.
    """
    configure_logging()
    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(CommerceError, commerce_error_handler)
    logger.info("Observability middleware initialized for %s", app.title)
