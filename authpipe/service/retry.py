from __future__ import annotations

import random
from typing import Callable, FrozenSet, Optional

from authpipe.service.errors import ErrorKind

DEFAULT_MAX_RETRY_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_MS = 1000
DEFAULT_BACKOFF_MAX_MS = 10000
JITTER_RATIO = 0.3

# Kinds that carry their own remedy (fix input, wait, re-authenticate)
NON_RETRYABLE_KINDS: FrozenSet[ErrorKind] = frozenset(
    {
        ErrorKind.VALIDATION,
        ErrorKind.TOKEN_EXPIRED,
        ErrorKind.RATE_LIMITED,
        ErrorKind.LOGIN_LOCKOUT,
        ErrorKind.AUTH,
    }
)


class RetryPolicy:
    """Decides whether a failed request is retried and how long to wait.

    Backoff doubles per attempt, ``min(base * 2**attempt, max_delay)``, plus up
    to 30% uniform jitter so clients that failed together do not retry
    together.
    """

    def __init__(
        self,
        max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS,
        base_delay_ms: int = DEFAULT_BACKOFF_BASE_MS,
        max_delay_ms: int = DEFAULT_BACKOFF_MAX_MS,
        *,
        rng: Optional[Callable[[float, float], float]] = None,
    ) -> None:
        self.max_retry_attempts = max_retry_attempts
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max(max_delay_ms, base_delay_ms)
        self._uniform = rng or random.uniform

    def is_retryable(self, error: BaseException) -> bool:
        kind = getattr(error, "kind", None)
        if not isinstance(kind, ErrorKind):
            return False
        return kind not in NON_RETRYABLE_KINDS

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """True when ``error`` on zero-based ``attempt`` warrants another try."""
        return self.is_retryable(error) and attempt < self.max_retry_attempts

    def base_delay(self, attempt: int) -> float:
        """Backoff before jitter, capped at ``max_delay_ms``."""
        # Cap the exponent so huge attempt numbers cannot overflow
        exponent = min(max(attempt, 0), 32)
        return float(min(self.base_delay_ms * (2 ** exponent), self.max_delay_ms))

    def backoff_delay(self, attempt: int) -> float:
        """Milliseconds to wait before retrying ``attempt``."""
        delay = self.base_delay(attempt)
        return delay + self._uniform(0.0, JITTER_RATIO * delay)
