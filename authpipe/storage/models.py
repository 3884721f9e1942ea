from __future__ import annotations

import base64
import binascii
import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _decode_segment(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def decode_token_payload(value: str) -> Optional[dict[str, Any]]:
    """Return the unverified claims of a JWT, or None if it is not one.

    The client never holds the signing key, so only the payload is read.
    """
    if not value or not isinstance(value, str):
        return None
    parts = value.split(".")
    if len(parts) != 3:
        return None
    try:
        payload = json.loads(_decode_segment(parts[1]))
    except (binascii.Error, ValueError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


@dataclass(frozen=True)
class Token:
    value: str
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def from_value(cls, value: str) -> Optional["Token"]:
        """Build a Token from its ``exp``/``iat`` claims.

        Returns None when the value is not a JWT or carries no usable ``exp``.
        """
        payload = decode_token_payload(value)
        if payload is None:
            return None
        try:
            expires_at = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            return None
        issued_raw = payload.get("iat")
        try:
            issued_at = (
                datetime.fromtimestamp(float(issued_raw), tz=timezone.utc)
                if issued_raw is not None
                else _now()
            )
        except (TypeError, ValueError, OverflowError, OSError):
            issued_at = _now()
        return cls(value=value, issued_at=issued_at, expires_at=expires_at)

    def __str__(self) -> str:
        return self.value


@dataclass
class AuthStateSnapshot:
    is_logged_in: bool
    user: Optional[Dict[str, Any]] = None
    last_update: int = 0  # epoch milliseconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "isLoggedIn": self.is_logged_in,
            "user": self.user,
            "lastUpdate": self.last_update,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["AuthStateSnapshot"]:
        if not isinstance(data, dict):
            return None
        return cls(
            is_logged_in=bool(data.get("isLoggedIn", False)),
            user=data.get("user"),
            last_update=int(data.get("lastUpdate") or 0),
        )


@dataclass
class LockoutRecord:
    identifier_hash: str
    count: int = 0
    first_attempt_at: int = 0  # epoch milliseconds
    last_attempt_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["LockoutRecord"]:
        if not isinstance(data, dict) or "identifier_hash" not in data:
            return None
        return cls(
            identifier_hash=str(data["identifier_hash"]),
            count=int(data.get("count", 0)),
            first_attempt_at=int(data.get("first_attempt_at", 0)),
            last_attempt_at=int(data.get("last_attempt_at", 0)),
        )


@dataclass
class StoredUserData:
    user: Optional[Dict[str, Any]] = None
    auth_state: Optional[AuthStateSnapshot] = None
    token: Optional[Token] = None
