"""
Logging setup for the SSO gateway.

Every record carries the request and correlation IDs of the HTTP request
that produced it, and the identity provider once one has been bound for the
request. SAML messages, RelayState values, sign-in tokens and key material
are scrubbed from messages and ``extra`` values before a handler formats
them.
"""

import json
import logging
import re
import sys
import time
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

CONTEXT_FIELDS: Tuple[str, ...] = ("request_id", "correlation_id", "provider_id")

_log_context: ContextVar[Mapping[str, str]] = ContextVar("sso_log_context", default={})

REDACTED = "[REDACTED]"

# key=value pairs keep their key so the line stays readable
_SCRUBBERS: Tuple[Tuple[re.Pattern, str], ...] = (
    (
        re.compile(
            r"\b(SAMLResponse|SAMLRequest|RelayState|token|password|secret)"
            r"([\"']?\s*[:=]\s*[\"']?)[^\s&\"',}]+",
            re.IGNORECASE,
        ),
        rf"\1\2{REDACTED}",
    ),
    (re.compile(r"\bbearer\s+[\w.~+/-]+=*", re.IGNORECASE), f"Bearer {REDACTED}"),
    (re.compile(r"eyJ[\w-]+\.eyJ[\w-]+\.[\w-]+"), REDACTED),
    (
        re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----[\s\S]+?-----END [A-Z ]*PRIVATE KEY-----"),
        REDACTED,
    ),
)

# Attributes every LogRecord has; anything else arrived through ``extra``
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", *CONTEXT_FIELDS}

NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "hpack", "signxml", "asyncio")


def redact_sensitive_data(message: str) -> str:
    """Replace protocol messages, tokens and secrets in ``message``."""
    if not message:
        return message
    for pattern, replacement in _SCRUBBERS:
        message = pattern.sub(replacement, message)
    return message


def mask_email(email: Optional[str]) -> str:
    """``jane@example.com`` -> ``j***@example.com``; ``-`` when absent."""
    if not email or "@" not in email:
        return "-"
    local, _, domain = email.partition("@")
    return f"{local[:1]}***@{domain}"


def bind_log_context(**values: Optional[str]) -> None:
    """Attach values to every record logged from the current task."""
    context = dict(_log_context.get())
    context.update({key: value for key, value in values.items() if value is not None})
    _log_context.set(context)


def clear_log_context() -> None:
    _log_context.set({})


def current_log_context() -> Dict[str, str]:
    return dict(_log_context.get())


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class LogContextFilter(logging.Filter):
    """Copy the bound context onto records that do not set it themselves."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _log_context.get()
        for field in CONTEXT_FIELDS:
            if getattr(record, field, None) is None:
                setattr(record, field, context.get(field, "-"))
        return True


class RedactionFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_sensitive_data(record.getMessage())
        record.args = None
        for key, value in _extra_fields(record).items():
            if isinstance(value, str):
                setattr(record, key, redact_sensitive_data(value))
        return True


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line, for log shipping in production.

    Context fields sit at the top level; values passed through ``extra``
    are grouped under ``"extra"``.
    """

    def __init__(self, service_name: str = "sso-gateway"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": self.service_name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            entry[field] = getattr(record, field, "-")

        extra = _extra_fields(record)
        if extra:
            entry["extra"] = extra
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        elif record.levelno >= logging.ERROR:
            entry["source"] = f"{record.pathname}:{record.lineno}"

        return json.dumps(entry, default=str, ensure_ascii=False)


class DevelopmentFormatter(logging.Formatter):
    """Colored single-line output for local runs."""

    LEVEL_COLORS: Dict[int, str] = {
        logging.DEBUG: "36",
        logging.INFO: "32",
        logging.WARNING: "33",
        logging.ERROR: "31",
        logging.CRITICAL: "35",
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "0")
        request_id = str(getattr(record, "request_id", "-"))[:8]
        provider_id = getattr(record, "provider_id", "-")

        line = (
            f"\033[2m{self.formatTime(record, '%H:%M:%S')}\033[0m "
            f"\033[{color}m{record.levelname:<8}\033[0m "
            f"[{request_id:>8}|{provider_id}] {record.name}: {record.getMessage()}"
        )
        extra = _extra_fields(record)
        if extra:
            line += " " + " ".join(f"{key}={value}" for key, value in extra.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    service_name: str = "sso-gateway",
) -> logging.Logger:
    """
    Replace the root logger's handlers with the gateway's stdout handler.

    Call once at startup, before the app package is imported.
    """
    root = logging.getLogger()
    root.setLevel(level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(LogContextFilter())
    handler.addFilter(RedactionFilter())
    handler.setFormatter(JSONFormatter(service_name) if json_output else DevelopmentFormatter())
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root.info(
        "Logging configured",
        extra={"log_level": level, "log_format": "json" if json_output else "development"},
    )
    return root


class Timer:
    """
    Measure a block and, given a logger, log how long it took.

        with Timer("saml_validation", logger):
            assertion = validator.validate(...)
    """

    def __init__(
        self,
        name: str,
        logger: Optional[logging.Logger] = None,
        log_level: int = logging.DEBUG,
    ):
        self.name = name
        self.logger = logger
        self.log_level = log_level
        self.elapsed_ms = 0.0
        self._started = 0.0

    def __enter__(self) -> "Timer":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.elapsed_ms = round((time.perf_counter() - self._started) * 1000, 2)
        if self.logger is not None:
            self.logger.log(
                self.log_level,
                "%s took %.2fms",
                self.name,
                self.elapsed_ms,
                extra={
                    "operation": self.name,
                    "duration_ms": self.elapsed_ms,
                    "success": exc_type is None,
                },
            )
