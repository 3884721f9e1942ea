from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authpipe.config import Settings, StorageBackend, get_settings, reset_settings_cache
from authpipe.logging import get_logger
from authpipe.service.auth import AuthClient
from authpipe.service.transport import HttpxTransport, Transport
from authpipe.storage.common import AuthStorage
from authpipe.storage.memory import MemoryStore
from authpipe.storage.redis_cache import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the process-wide storage backend, transport and AuthClient."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        storage: Optional[AuthStorage] = None,
        transport: Optional[Transport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            storage_backend=self.settings.storage_backend.value,
            api_base_url=self.settings.api_base_url,
        )
        self.storage: Union[AuthStorage, MemoryStore, RedisStore] = (
            storage or self._build_storage()
        )
        self.transport = transport or HttpxTransport(
            timeout=self.settings.request_timeout_seconds
        )
        self.auth = AuthClient.build(self.settings, self.storage, self.transport)
        logger.info(
            "runtime_initialized",
            storage=type(self.storage).__name__,
            transport=type(self.transport).__name__,
            max_requests_per_window=self.settings.max_requests_per_window,
            max_retry_attempts=self.settings.max_retry_attempts,
        )

    def _build_storage(self) -> Union[MemoryStore, RedisStore]:
        if self.settings.storage_backend == StorageBackend.REDIS:
            logger.info(
                "storage_redis_selected",
                redis_url=_mask_url_password(self.settings.redis_url),
            )
            return RedisStore(self.settings.redis_url)
        return MemoryStore(self.settings.state_dir or None)

    async def close(self) -> None:
        close_transport = getattr(self.transport, "close", None)
        if close_transport is not None:
            await close_transport()
        if isinstance(self.storage, RedisStore):
            await self.storage.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent races during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
