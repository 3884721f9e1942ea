"""Storage contract shared by the memory and Redis backends.

Every component that persists state (credentials, auth snapshot, lockout
records) goes through this interface, so both backends must behave the same
way for the operations below.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol

from authpipe.storage.errors import StorageError


class AuthStorage(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]: ...

    async def set_many(self, items: Mapping[str, Any]) -> None:
        """Write all items or none of them."""
        ...

    async def remove(self, keys: Iterable[str]) -> None: ...


def encode_value(key: str, value: Any) -> str:
    """Serialize a stored value to JSON text."""
    try:
        return json.dumps(value, separators=(",", ":"), sort_keys=True)
    except (TypeError, ValueError) as exc:
        raise StorageError(f"value for {key!r} is not JSON serializable", {"key": key}) from exc


def decode_value(key: str, raw: Optional[str]) -> Optional[Any]:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise StorageError(f"stored value for {key!r} is corrupt", {"key": key}) from exc


__all__ = ["AuthStorage", "encode_value", "decode_value"]
