from __future__ import annotations

import re
from typing import Any

from authpipe.config import Settings
from authpipe.service.errors import ValidationError

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
# Characters stripped from free-text input before it is sent
_UNSAFE_CHARS_RE = re.compile(r"[<>\"'&]")
_HAS_LETTER_RE = re.compile(r"[A-Za-z]")
_HAS_DIGIT_RE = re.compile(r"\d")


def sanitize_input(value: Any, max_length: int = 255) -> str:
    """Trim, drop markup characters and truncate; non-strings become ``""``."""
    if not isinstance(value, str):
        return ""
    return _UNSAFE_CHARS_RE.sub("", value.strip())[:max_length]


def is_valid_email(email: str, max_length: int = 254) -> bool:
    return bool(_EMAIL_RE.match(email or "")) and len(email) <= max_length


def validate_password(password: Any, settings: Settings) -> None:
    """Raise ValidationError unless the password meets the length and mix rules."""
    if not isinstance(password, str) or len(password) < settings.min_password_length:
        raise ValidationError(
            f"Password must be at least {settings.min_password_length} characters",
            "password",
        )
    if len(password) > settings.max_password_length:
        raise ValidationError(
            f"Password must be less than {settings.max_password_length} characters",
            "password",
        )
    if not (_HAS_LETTER_RE.search(password) and _HAS_DIGIT_RE.search(password)):
        raise ValidationError(
            "Password must contain at least one letter and one number", "password"
        )


def validate_email(email: Any, settings: Settings) -> str:
    """Sanitize ``email`` and return it, or raise ValidationError."""
    sanitized = sanitize_input(email, settings.max_email_length)
    if not is_valid_email(sanitized, settings.max_email_length):
        raise ValidationError("Please enter a valid email address", "email")
    return sanitized


def validate_username(username: Any, settings: Settings) -> str:
    sanitized = sanitize_input(username, settings.max_username_length)
    if len(sanitized) < 2:
        raise ValidationError("Username must be at least 2 characters long", "username")
    return sanitized
