from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

from authpipe.logging import get_logger
from authpipe.storage.common import encode_value
from authpipe.storage.errors import StorageError


class MemoryStore:
    """Key/value store kept in process memory.

    When ``state_dir`` is given, every write is flushed to
    ``<state_dir>/state/auth_state.json`` so credentials survive restarts.
    """

    def __init__(self, state_dir: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.data: Dict[str, Any] = {}
        # RLock so set_many can persist while holding the lock
        self._data_lock = threading.RLock()
        self.state_dir = Path(state_dir) if state_dir else None
        if self.state_dir is not None:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.state_dir is not None
        state_dir = self.state_dir / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_state.json"

    async def get(self, key: str) -> Optional[Any]:
        with self._data_lock:
            return copy.deepcopy(self.data.get(key))

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        with self._data_lock:
            return {
                key: copy.deepcopy(self.data[key]) for key in keys if key in self.data
            }

    async def set_many(self, items: Mapping[str, Any]) -> None:
        # Serialize everything first so a bad value leaves the store untouched
        for key, value in items.items():
            encode_value(key, value)
        with self._data_lock:
            previous = dict(self.data)
            self.data.update({key: copy.deepcopy(value) for key, value in items.items()})
            try:
                self._persist_state()
            except StorageError:
                self.data = previous
                raise

    async def set(self, key: str, value: Any) -> None:
        await self.set_many({key: value})

    async def remove(self, keys: Iterable[str]) -> None:
        with self._data_lock:
            removed = False
            for key in list(keys):
                if key in self.data:
                    self.data.pop(key)
                    removed = True
            if removed:
                self._persist_state()

    def clear(self) -> None:
        with self._data_lock:
            self.data = {}
            self._persist_state()

    def _persist_state(self) -> None:
        if self.state_dir is None:
            return
        path = self._state_path()
        payload = json.dumps(self.data, indent=2, sort_keys=True)
        tmp_path: Optional[str] = None
        try:
            # Write to a temp file then rename so readers never see a partial file
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix=".auth_state_", suffix=".tmp"
            )
            try:
                os.write(fd, payload.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            self.logger.error("memory_store_persist_failed", error=str(exc), path=str(path))
            raise StorageError(f"failed to persist auth state: {exc}", {"path": str(path)}) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except ValueError as exc:
            self.logger.warning("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        if not isinstance(data, dict):
            self.logger.warning("memory_store_state_invalid", path=str(path))
            return False
        self.data = data
        return True
