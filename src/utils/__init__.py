"""Utility modules for the SSO gateway."""

from .logging import (
    JSONFormatter,
    Timer,
    bind_log_context,
    clear_log_context,
    current_log_context,
    mask_email,
    redact_sensitive_data,
    setup_logging,
)

__all__ = [
    "setup_logging",
    "bind_log_context",
    "clear_log_context",
    "current_log_context",
    "mask_email",
    "redact_sensitive_data",
    "JSONFormatter",
    "Timer",
]
