from __future__ import annotations

import logging
import os
import re
import secrets
import time
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request ID for the outbound call currently being processed
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def generate_request_id() -> str:
    """Build a unique request ID of the form ``req_<epoch ms>_<random>``."""
    return f"req_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


def get_request_id() -> Optional[str]:
    """Get the request ID bound to the current context."""
    return request_id_var.get()


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set or generate a request ID for the current context."""
    rid = request_id or generate_request_id()
    request_id_var.set(rid)
    return rid


def _add_request_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add request_id to all log entries."""
    rid = get_request_id()
    if rid and "request_id" not in event_dict:
        event_dict["request_id"] = rid
    return event_dict


_PII_KEYS = {"password", "secret", "token", "authorization", "email", "identifier"}


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact credentials and identifiers from log entries."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if any(pii in lower_key for pii in _PII_KEYS):
            if isinstance(event_dict[key], str) and len(event_dict[key]) > 4:
                # Keep first/last 2 chars for debugging
                event_dict[key] = event_dict[key][:2] + "***" + event_dict[key][-2:]
    return event_dict


def configure_logging(log_level: str = "INFO") -> None:
    """Route structlog events through the redaction processors to JSON lines on stdout."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_request_id,
            _redact_pii,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(os.getenv("LOG_LEVEL", "INFO"))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with request ID support."""
    return structlog.get_logger(name)


def log_auth_event(event: str, logger: Optional[Any] = None, **data: Any) -> None:
    """Log an auth lifecycle event (login, refresh, logout, request retries)."""
    log = logger or get_logger("authpipe.events")
    log.info(event, **data)


_SENSITIVE_ERROR_PATTERNS = [
    r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+",
    r"(?i)bearer\s+[A-Za-z0-9\-_\.=]+",
    r"(?i)traceback\s*\(most recent call last\)",
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub credentials from an error message before it is logged.

    Args:
        error: Original error message
        replacement: String to replace sensitive content with

    Returns:
        Sanitized message, truncated to 500 characters
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."

    return result
