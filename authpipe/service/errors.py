from __future__ import annotations

import math
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Stable tags for every failure the pipeline can surface.

    Retry decisions and caller-side rendering dispatch on this tag rather
    than on the exception class.
    """

    VALIDATION = "validation_error"
    RATE_LIMITED = "rate_limited"
    LOGIN_LOCKOUT = "login_lockout"
    TOKEN_EXPIRED = "token_expired"
    NETWORK = "network_error"
    AUTH = "auth_error"


class ServiceError(Exception):
    """Base class for all pipeline errors.

    Each subclass pins a ``kind`` and a stable wire ``error_code`` and may
    carry a kind-specific payload in ``detail``.
    """

    kind: ErrorKind = ErrorKind.AUTH
    error_code: str = "AUTH_ERROR"
    status_code: Optional[int] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def requires_reauth(self) -> bool:
        """True when the caller must prompt the user to sign in again."""
        return self.kind == ErrorKind.TOKEN_EXPIRED

    @property
    def wait_seconds(self) -> Optional[int]:
        """Countdown the caller should render, if the error carries one."""
        return None

    def to_dict(self) -> dict[str, Any]:
        details = dict(self.detail)
        if self.status_code is not None:
            details.setdefault("status_code", self.status_code)
        return {
            "code": self.kind.value,
            "error_code": self.error_code,
            "message": self.message,
            "details": details,
        }


class ValidationError(ServiceError):
    """Caller input rejected before any request was made."""

    kind = ErrorKind.VALIDATION
    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any) -> None:
        detail = {"field": field, **(kwargs.pop("detail", None) or {})}
        super().__init__(message, detail=detail, **kwargs)
        self.field = field


class RateLimitExceededError(ServiceError):
    """Request quota exhausted; the caller must wait ``retry_after`` seconds."""

    kind = ErrorKind.RATE_LIMITED
    error_code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(
        self, message: str = "Too many requests", retry_after: int = 60, **kwargs: Any
    ) -> None:
        detail = {"retry_after": retry_after, **(kwargs.pop("detail", None) or {})}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after

    @property
    def wait_seconds(self) -> Optional[int]:
        return self.retry_after


class LoginLockoutError(ServiceError):
    """Too many failed logins for an identifier within the lockout window."""

    kind = ErrorKind.LOGIN_LOCKOUT
    error_code = "LOGIN_LOCKOUT"

    def __init__(self, remaining_minutes: int, message: Optional[str] = None) -> None:
        message = message or (
            "Too many failed login attempts. "
            f"Please try again in {remaining_minutes} minutes."
        )
        super().__init__(message, detail={"remaining_minutes": remaining_minutes})
        self.remaining_minutes = remaining_minutes

    @property
    def wait_seconds(self) -> Optional[int]:
        return self.remaining_minutes * 60


class TokenExpiredError(ServiceError):
    """Stored credentials are no longer usable; they have been cleared."""

    kind = ErrorKind.TOKEN_EXPIRED
    error_code = "TOKEN_EXPIRED"
    status_code = 401

    def __init__(self, message: str = "Token has expired", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class NetworkError(ServiceError):
    """Transport failure, timeout, server error or unreadable response."""

    kind = ErrorKind.NETWORK
    error_code = "NETWORK_ERROR"


class AuthError(ServiceError):
    """Non-2xx response from the service carrying its own error message."""

    kind = ErrorKind.AUTH
    error_code = "AUTH_ERROR"


def retry_after_from_header(value: Optional[str], default: int) -> int:
    """Parse a ``Retry-After`` header given in seconds, else ``default``."""
    if value is None:
        return default
    try:
        seconds = float(value.strip())
    except (TypeError, ValueError):
        return default
    if not math.isfinite(seconds) or seconds <= 0:
        return default
    return int(math.ceil(seconds))


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "RateLimitExceededError",
    "LoginLockoutError",
    "TokenExpiredError",
    "NetworkError",
    "AuthError",
    "retry_after_from_header",
]
