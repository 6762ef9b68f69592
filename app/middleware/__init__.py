"""Middleware components for the SSO gateway."""

from .logging import (
    RequestLoggingMiddleware,
    get_client_ip,
    get_request_id_from_request,
)

__all__ = [
    "RequestLoggingMiddleware",
    "get_client_ip",
    "get_request_id_from_request",
]
