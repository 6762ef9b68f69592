"""
Request logging middleware.

Assigns each request an ID, binds it to the log context for the lifetime of
the request and writes one access log line when the response is ready.

Query strings are never logged: the session redeem URL carries a sign-in
token in its query.
"""

import logging
import time
import uuid
from typing import Any, Callable, Dict, FrozenSet, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.utils.logging import bind_log_context, clear_log_context, current_log_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
CORRELATION_ID_HEADER = "X-Correlation-ID"
MAX_REQUEST_ID_LENGTH = 128

SILENT_PATHS: FrozenSet[str] = frozenset({"/docs", "/redoc", "/openapi.json", "/favicon.ico"})
# Probes are logged only when they fail
PROBE_PATHS: FrozenSet[str] = frozenset({"/", "/health"})


def get_client_ip(request: Request) -> str:
    """First hop of X-Forwarded-For, then X-Real-IP, then the socket peer."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",", 1)[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def get_request_id_from_request(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None) or current_log_context().get("request_id")


def _access_log_level(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Sets X-Request-ID and X-Response-Time on every response."""

    def __init__(self, app, trust_request_id: bool = False):
        super().__init__(app)
        self.trust_request_id = trust_request_id

    def _request_id(self, request: Request) -> str:
        upstream = request.headers.get(REQUEST_ID_HEADER)
        if self.trust_request_id and upstream and len(upstream) <= MAX_REQUEST_ID_LENGTH:
            return upstream
        return str(uuid.uuid4())

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = self._request_id(request)
        correlation_id = request.headers.get(CORRELATION_ID_HEADER)
        request.state.request_id = request_id
        bind_log_context(request_id=request_id, correlation_id=correlation_id)

        path = request.url.path
        fields: Dict[str, Any] = {
            "http_method": request.method,
            "http_path": path,
            "client_ip": get_client_ip(request),
        }
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            fields["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
            fields["error_type"] = type(exc).__name__
            logger.error(f"{request.method} {path} raised", extra=fields, exc_info=True)
            clear_log_context()
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Response-Time"] = f"{elapsed_ms:.2f}ms"
        if correlation_id:
            response.headers[CORRELATION_ID_HEADER] = correlation_id

        status_code = response.status_code
        quiet = path in SILENT_PATHS or (path in PROBE_PATHS and status_code < 400)
        if not quiet:
            fields.update(
                http_status=status_code,
                duration_ms=round(elapsed_ms, 2),
                user_agent=request.headers.get("User-Agent", "-"),
            )
            logger.log(
                _access_log_level(status_code),
                f"{request.method} {path} {status_code}",
                extra=fields,
            )

        clear_log_context()
        return response
