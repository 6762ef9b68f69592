"""
Exception handlers for the SSO gateway.

Every error leaves the service in one shape::

    {"success": false, "error": "...", "error_code": "...", "details": {...}}

Messages go through ``sanitize_error_message`` and details through an
allow-list, so SAML payloads, sign-in tokens, certificates and
infrastructure addresses never reach a client. TrustErrors and 5xx
responses are reported to Sentry.
"""

import logging
import re
import uuid
from http import HTTPStatus
from typing import Any, Dict, List, Optional

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.auth.sso.errors import SSOError, TrustError
from src.config import get_settings

logger = logging.getLogger(__name__)

GENERIC_MESSAGE = "An error occurred while processing your request"
MAX_MESSAGE_LENGTH = 500
MAX_DETAIL_ITEMS = 10

# Any match replaces the whole message
_LEAK_MARKERS = re.compile(
    r"api[_-]?key|secret|password|private key|bearer|cookie"
    r"|SAMLResponse|RelayState|token\s*[=:]|BEGIN [A-Z ]+-----"
    r"|postgres(?:ql)?://|redis://"
    r"|/home/|/Users/|/var/|/etc/|\$\{?\w+\}?",
    re.IGNORECASE,
)
_FILE_PATH = re.compile(r"[/\\][\w./\\-]+\.\w+")
_IPV4 = re.compile(r"\b\d{1,3}(?:\.\d{1,3}){3}\b")

SAFE_DETAIL_KEYS = frozenset({
    "reason",
    "provider_id",
    "user_id",
    "operation",
    "field",
    "errors",
    "available_attributes",
    "attempts",
    "timeout_seconds",
    "rollback_failed",
    "error_reference",
    "sentry_event_id",
})

_HTTP_ERROR_CODES = {
    400: "VALIDATION_ERROR",
    401: "AUTHENTICATION_REQUIRED",
    403: "PERMISSION_DENIED",
    404: "RESOURCE_NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "RESOURCE_CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

_FORWARDED_HEADERS = ("Retry-After", "WWW-Authenticate")


def sanitize_error_message(message: Optional[str]) -> Optional[str]:
    """Return ``message`` safe for a client, or a generic message."""
    if not message:
        return message
    if _LEAK_MARKERS.search(message):
        return GENERIC_MESSAGE

    message = _IPV4.sub("[ip]", _FILE_PATH.sub("[path]", message))
    if len(message) > MAX_MESSAGE_LENGTH:
        message = message[:MAX_MESSAGE_LENGTH] + "..."
    return message


def _clean(value: Any, depth: int = 0) -> Any:
    """Primitives pass; containers are kept two levels deep."""
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return sanitize_error_message(value)
    if depth >= 2:
        return None
    if isinstance(value, dict):
        return {
            str(key): _clean(item, depth + 1)
            for key, item in value.items()
            if not isinstance(item, (dict, list, tuple))
        }
    if isinstance(value, (list, tuple)):
        items = [_clean(item, depth + 1) for item in value]
        return [item for item in items if item is not None][:MAX_DETAIL_ITEMS]
    return None


def sanitize_details(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keep allow-listed keys whose values survive cleaning."""
    cleaned = {
        key: _clean(value)
        for key, value in (details or {}).items()
        if key in SAFE_DETAIL_KEYS
    }
    return {key: value for key, value in cleaned.items() if value is not None}


def error_response(
    status_code: int,
    message: str,
    error_code: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    content: Dict[str, Any] = {
        "success": False,
        "error": sanitize_error_message(message),
        "error_code": error_code,
    }
    safe_details = sanitize_details(details)
    if safe_details:
        content["details"] = safe_details
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def report_to_sentry(
    exc: Exception,
    request: Optional[Request] = None,
    extra_context: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """
    Send ``exc`` to Sentry when a client is active and return the event ID.

    Only the method and path of the request are attached; query strings and
    bodies may carry SAML messages or sign-in tokens.
    """
    if not sentry_sdk.get_client().is_active():
        return None

    try:
        with sentry_sdk.new_scope() as scope:
            if request is not None:
                scope.set_context("request", {"method": request.method, "path": request.url.path})
                request_id = getattr(request.state, "request_id", None)
                if request_id:
                    scope.set_tag("request_id", request_id)
            if isinstance(exc, SSOError):
                scope.set_tag("sso_error_code", exc.error_code.value)
                if exc.details.get("reason"):
                    scope.set_tag("sso_reason", exc.details["reason"])
            if extra_context:
                scope.set_context("extra", extra_context)
            return sentry_sdk.capture_exception(exc)
    except Exception as e:
        logger.warning(f"Failed to report exception to Sentry: {e}")
        return None


def _validation_messages(errors: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    messages = []
    for error in errors[:MAX_DETAIL_ITEMS]:
        field = ".".join(str(part) for part in error.get("loc", ()) if part != "body") or "request"
        error_type = error.get("type", "")
        if error_type == "missing":
            text = f"Field '{field}' is required"
        elif "enum" in error_type:
            text = f"Field '{field}' has an invalid value"
        else:
            text = sanitize_error_message(error.get("msg") or "Invalid value")
        messages.append({"field": field, "message": text})
    return messages


async def sso_exception_handler(request: Request, exc: SSOError) -> JSONResponse:
    reportable = exc.status_code >= 500 or isinstance(exc, TrustError)
    logger.log(
        logging.ERROR if reportable else logging.WARNING,
        f"{type(exc).__name__}: {exc.message}",
        extra={"error_code": exc.error_code.value, "reason": exc.details.get("reason")},
    )
    if reportable:
        report_to_sentry(exc, request)

    return error_response(
        exc.status_code,
        exc.message,
        exc.error_code.value,
        details=exc.details,
        headers={"Retry-After": "1"} if exc.retryable else None,
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    errors = _validation_messages(exc.errors())
    logger.warning(
        f"Rejected {request.method} {request.url.path}: {len(errors)} invalid field(s)"
    )
    message = (
        errors[0]["message"] if len(errors) == 1
        else f"Validation failed with {len(errors)} error(s)"
    )
    return error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        message,
        "VALIDATION_ERROR",
        details={"errors": errors},
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else HTTPStatus(exc.status_code).phrase
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        f"HTTP {exc.status_code} on {request.method} {request.url.path}: {detail}",
    )
    headers = {
        name: value
        for name, value in (exc.headers or {}).items()
        if name in _FORWARDED_HEADERS
    }
    return error_response(
        exc.status_code,
        detail,
        _HTTP_ERROR_CODES.get(exc.status_code, "UNKNOWN_ERROR"),
        headers=headers or None,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log and report the traceback; the client only gets a short reference."""
    error_reference = uuid.uuid4().hex[:8]
    logger.error(
        f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}",
        extra={"error_reference": error_reference},
        exc_info=True,
    )
    event_id = report_to_sentry(exc, request, extra_context={"error_reference": error_reference})

    details: Dict[str, Any] = {"error_reference": error_reference}
    if event_id and not get_settings().is_production:
        details["sentry_event_id"] = event_id

    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An unexpected error occurred. Please try again later.",
        "INTERNAL_ERROR",
        details=details,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SSOError, sso_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
