import json
import os
import stat

import pytest

from authpipe.storage.errors import StorageError
from authpipe.storage.memory import MemoryStore


class TestMemoryStoreBasics:
    @pytest.mark.asyncio
    async def test_set_many_and_read_back(self):
        store = MemoryStore()
        await store.set_many({"a": {"n": 1}, "b": "token"})

        assert await store.get("a") == {"n": 1}
        assert await store.get_many(["a", "b", "missing"]) == {"a": {"n": 1}, "b": "token"}
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_values_are_copied(self):
        store = MemoryStore()
        user = {"id": "u-1"}
        await store.set("user", user)
        user["id"] = "changed"

        fetched = await store.get("user")
        fetched["id"] = "also-changed"

        assert await store.get("user") == {"id": "u-1"}

    @pytest.mark.asyncio
    async def test_remove(self):
        store = MemoryStore()
        await store.set_many({"a": 1, "b": 2})

        await store.remove(["a", "missing"])

        assert store.data == {"b": 2}

    @pytest.mark.asyncio
    async def test_unserializable_value_leaves_store_untouched(self):
        store = MemoryStore()
        await store.set("a", 1)

        with pytest.raises(StorageError):
            await store.set_many({"a": 2, "b": object()})

        assert store.data == {"a": 1}


class TestMemoryStorePersistence:
    @pytest.mark.asyncio
    async def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(str(tmp_path))
        await store.set_many({"token": "abc", "user": {"id": "u-1"}})

        reloaded = MemoryStore(str(tmp_path))

        assert await reloaded.get("token") == "abc"
        assert await reloaded.get("user") == {"id": "u-1"}

    @pytest.mark.asyncio
    async def test_state_file_is_private(self, tmp_path):
        store = MemoryStore(str(tmp_path))
        await store.set("token", "abc")

        path = tmp_path / "state" / "auth_state.json"
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert json.loads(path.read_text()) == {"token": "abc"}

    @pytest.mark.asyncio
    async def test_remove_is_persisted(self, tmp_path):
        store = MemoryStore(str(tmp_path))
        await store.set_many({"a": 1, "b": 2})
        await store.remove(["a"])

        assert MemoryStore(str(tmp_path)).data == {"b": 2}

    def test_corrupt_state_file_is_ignored(self, tmp_path):
        state = tmp_path / "state"
        state.mkdir()
        (state / "auth_state.json").write_text("{not json")

        assert MemoryStore(str(tmp_path)).data == {}

    def test_non_object_state_file_is_ignored(self, tmp_path):
        state = tmp_path / "state"
        state.mkdir()
        (state / "auth_state.json").write_text("[1, 2, 3]")

        assert MemoryStore(str(tmp_path)).data == {}

    @pytest.mark.asyncio
    async def test_failed_persist_rolls_back(self, tmp_path, monkeypatch):
        store = MemoryStore(str(tmp_path))
        await store.set("a", 1)

        def broken_replace(src, dst):
            raise OSError("read-only file system")

        monkeypatch.setattr(os, "replace", broken_replace)

        with pytest.raises(StorageError):
            await store.set_many({"a": 2, "b": 3})

        assert store.data == {"a": 1}
        leftovers = [p.name for p in (tmp_path / "state").iterdir()]
        assert leftovers == ["auth_state.json"]
