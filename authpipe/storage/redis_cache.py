from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from authpipe.logging import get_logger
from authpipe.storage.common import decode_value, encode_value
from authpipe.storage.errors import StorageError

logger = get_logger(__name__)


class RedisStore:
    """Redis-backed key/value store for credentials and lockout records.

    Values are JSON-encoded and keys are namespaced with ``prefix``. Multi-key
    writes run inside a MULTI/EXEC pipeline so the token and the auth snapshot
    are replaced together.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: str = "authpipe:",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Any] = None,
    ) -> None:
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def verify_connection(self) -> None:
        """Assert Redis connectivity before the store is used."""
        try:
            await self.client.ping()
        except RedisError as exc:
            raise StorageError(f"redis unavailable: {exc}") from exc

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(self._key(key))
        except RedisError as exc:
            logger.error("redis_get_failed", key=key, error=str(exc))
            raise StorageError(f"failed to read {key!r}", {"key": key}) from exc
        return decode_value(key, raw)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        keys = list(keys)
        if not keys:
            return {}
        try:
            raw_values = await self.client.mget([self._key(k) for k in keys])
        except RedisError as exc:
            logger.error("redis_mget_failed", keys=keys, error=str(exc))
            raise StorageError("failed to read keys", {"keys": keys}) from exc
        return {
            key: decode_value(key, raw)
            for key, raw in zip(keys, raw_values)
            if raw is not None
        }

    async def set_many(self, items: Mapping[str, Any]) -> None:
        if not items:
            return
        encoded = {self._key(k): encode_value(k, v) for k, v in items.items()}
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                for key, value in encoded.items():
                    pipe.set(key, value)
                await pipe.execute()
        except RedisError as exc:
            logger.error("redis_set_failed", keys=list(items), error=str(exc))
            raise StorageError("failed to write keys", {"keys": list(items)}) from exc

    async def set(self, key: str, value: Any) -> None:
        await self.set_many({key: value})

    async def remove(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        try:
            await self.client.delete(*[self._key(k) for k in keys])
        except RedisError as exc:
            logger.error("redis_delete_failed", keys=keys, error=str(exc))
            raise StorageError("failed to delete keys", {"keys": keys}) from exc

    async def close(self) -> None:
        await self.client.aclose()
