from __future__ import annotations

import hashlib
import math
import time
from typing import Callable, Optional

from authpipe.logging import get_logger
from authpipe.service.errors import LoginLockoutError
from authpipe.storage.common import AuthStorage
from authpipe.storage.models import LockoutRecord

logger = get_logger(__name__)


def hash_identifier(identifier: str) -> str:
    """Non-reversible digest of a login identifier.

    The identifier is normalised (trimmed, lower-cased) so that spelling
    variants of the same account share one record.
    """
    normalized = (identifier or "").strip().lower()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class LockoutGuard:
    """Cool-down after repeated failed logins for one identifier.

    Records are stored under ``login_attempts:<sha256>``; the raw identifier
    is never persisted.
    """

    KEY_PREFIX = "login_attempts:"

    def __init__(
        self,
        storage: AuthStorage,
        *,
        max_attempts: int = 5,
        lockout_window_ms: int = 15 * 60 * 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.max_attempts = max_attempts
        self.lockout_window_ms = lockout_window_ms
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _key(self, identifier_hash: str) -> str:
        return f"{self.KEY_PREFIX}{identifier_hash}"

    async def _load(self, identifier_hash: str) -> Optional[LockoutRecord]:
        return LockoutRecord.from_dict(await self.storage.get(self._key(identifier_hash)))

    async def check_lockout(self, identifier: str) -> None:
        """Raise LoginLockoutError while the identifier is locked out."""
        identifier_hash = hash_identifier(identifier)
        record = await self._load(identifier_hash)
        if record is None:
            return
        elapsed = self._now_ms() - record.first_attempt_at
        if elapsed > self.lockout_window_ms:
            await self.storage.remove([self._key(identifier_hash)])
            logger.info("login_lockout_expired", digest=identifier_hash[:12])
            return
        if record.count >= self.max_attempts:
            remaining_minutes = max(
                1, math.ceil((self.lockout_window_ms - elapsed) / 60000)
            )
            logger.warning(
                "login_locked_out",
                digest=identifier_hash[:12],
                attempts=record.count,
                remaining_minutes=remaining_minutes,
            )
            raise LoginLockoutError(remaining_minutes)

    async def record_failure(self, identifier: str) -> LockoutRecord:
        identifier_hash = hash_identifier(identifier)
        now = self._now_ms()
        record = await self._load(identifier_hash)
        if record is not None and now - record.first_attempt_at > self.lockout_window_ms:
            # Stale window: start counting again
            record = None
        if record is None:
            record = LockoutRecord(
                identifier_hash=identifier_hash,
                count=1,
                first_attempt_at=now,
                last_attempt_at=now,
            )
        else:
            record.count += 1
            record.last_attempt_at = now
        await self.storage.set_many({self._key(identifier_hash): record.to_dict()})
        if record.count >= self.max_attempts:
            logger.warning(
                "login_lockout_triggered",
                digest=identifier_hash[:12],
                attempts=record.count,
            )
        return record

    async def clear(self, identifier: str) -> None:
        await self.storage.remove([self._key(hash_identifier(identifier))])
