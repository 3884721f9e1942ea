from __future__ import annotations

import math
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from authpipe.logging import get_logger
from authpipe.service.errors import RateLimitExceededError

logger = get_logger(__name__)


class RateLimiter:
    """Sliding-window request quota per logical endpoint.

    Each endpoint keeps the timestamps of its admitted requests within the
    last ``window_ms``. Old entries are pruned lazily on every check; a
    timestamp is only appended when the request is admitted.
    """

    def __init__(
        self,
        max_requests: int,
        window_ms: int,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if window_ms <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                window_ms=window_ms,
                message="Invalid rate limit window; defaulting to 60 seconds",
            )
            window_ms = 60 * 1000
        self.max_requests = max_requests
        self.window_ms = window_ms
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = {}

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _prune(self, endpoint: str, now_ms: float) -> Deque[float]:
        window = self._windows.setdefault(endpoint, deque())
        cutoff = now_ms - self.window_ms
        while window and window[0] <= cutoff:
            window.popleft()
        return window

    def admit(self, endpoint: str) -> None:
        """Admit one request for ``endpoint`` or raise RateLimitExceededError."""
        if self.max_requests <= 0:
            return
        now_ms = self._now_ms()
        window = self._prune(endpoint, now_ms)
        if len(window) >= self.max_requests:
            oldest = window[0]
            retry_after = max(1, math.ceil((oldest + self.window_ms - now_ms) / 1000))
            logger.warning(
                "rate_limit_exceeded",
                endpoint=endpoint,
                retry_after=retry_after,
                window_size=len(window),
            )
            raise RateLimitExceededError(
                f"Rate limit exceeded for {endpoint}. "
                f"Try again in {retry_after} seconds.",
                retry_after=retry_after,
                detail={"endpoint": endpoint},
            )
        window.append(now_ms)

    def remaining(self, endpoint: str) -> int:
        """Admissions still available for ``endpoint`` in the current window."""
        if self.max_requests <= 0:
            return 0
        window = self._prune(endpoint, self._now_ms())
        return max(0, self.max_requests - len(window))

    def reset(self, endpoint: Optional[str] = None) -> None:
        if endpoint is None:
            self._windows.clear()
        else:
            self._windows.pop(endpoint, None)
