# roadside/transport/middleware.py
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from roadside.infra.logging_config import LogContext, get_logger
from roadside.infra.metrics import observe_histogram

logger = get_logger(__name__)

# Path prefixes whose second segment is a capability token
_TOKEN_PREFIXES = ("/bids/job/", "/bids/", "/vendor/", "/public/customer/")


def redact_path(path: str) -> str:
    """Hide link tokens from logs: ``/vendor/abc123/status`` -> ``/vendor/***/status``."""
    for prefix in _TOKEN_PREFIXES:
        if path.startswith(prefix):
            rest = path[len(prefix):]
            token, sep, tail = rest.partition("/")
            if prefix == "/bids/" and tail.startswith("select"):
                return path
            return f"{prefix}***{sep}{tail}" if token else path
    return path


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add unique request ID to each request for tracing"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log requests and responses with token-free paths"""

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        request_id = getattr(request.state, "request_id", "unknown")
        path = redact_path(request.url.path)
        start_time = time.perf_counter()
        log_ctx = LogContext(logger, request_id=request_id)

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            log_ctx.error(
                f"Request failed: {request.method} {path} "
                f"error={exc.__class__.__name__} duration={duration_ms:.2f}ms",
                exc_info=True,
            )
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        observe_histogram("http_request_ms", duration_ms, method=request.method)
        log_ctx.info(
            f"{request.method} {path} status={response.status_code} duration={duration_ms:.2f}ms",
            extra={"status_code": response.status_code, "duration_ms": duration_ms},
        )
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Catch and format unhandled exceptions"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", "unknown")
            logger.error(
                f"Unhandled exception: {exc.__class__.__name__}: {exc}",
                extra={"request_id": request_id},
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={"message": "Internal server error", "request_id": request_id},
            )
