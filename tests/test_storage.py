"""
Tests for the persistence backends.
"""

import json
import os
import stat
import sys

import pytest

from token_relay.credential_store import CredentialStore
from token_relay.storage import JsonFileStorage, KeyValueStorage, MemoryStorage


class RecordingStorage(KeyValueStorage):
    """Minimal backend that relies on the default set_many."""

    def __init__(self):
        self.data = {}
        self.ops = []

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        self.ops.append(("set", key))
        self.data[key] = value

    async def remove(self, key):
        self.ops.append(("remove", key))
        self.data.pop(key, None)

    async def keys(self):
        return list(self.data)

    async def clear(self):
        self.data.clear()


class TestMemoryStorage:
    @pytest.mark.asyncio
    async def test_basic_operations(self):
        storage = MemoryStorage()

        await storage.set("a", "1")
        await storage.set("b", "2")
        await storage.remove("a")
        await storage.remove("missing")

        assert await storage.get("a") is None
        assert await storage.get("b") == "2"
        assert await storage.keys() == ["b"]

        await storage.clear()
        assert await storage.keys() == []

    @pytest.mark.asyncio
    async def test_set_many_removes_none_values(self):
        storage = MemoryStorage({"a": "1", "b": "2"})

        await storage.set_many({"a": None, "c": "3"})

        assert storage.snapshot() == {"b": "2", "c": "3"}


class TestDefaultSetMany:
    @pytest.mark.asyncio
    async def test_writes_key_by_key(self):
        storage = RecordingStorage()

        await storage.set_many({"a": "1", "b": None})

        assert storage.ops == [("set", "a"), ("remove", "b")]


class TestJsonFileStorage:
    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "credentials.json"
        first = JsonFileStorage(path)
        await first.set_many({"accessToken": "a", "refreshToken": "r"})

        second = JsonFileStorage(path)

        assert await second.get("accessToken") == "a"
        assert sorted(await second.keys()) == ["accessToken", "refreshToken"]
        assert json.loads(path.read_text()) == {"accessToken": "a", "refreshToken": "r"}

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path):
        storage = JsonFileStorage(tmp_path / "nested" / "credentials.json")

        assert await storage.get("accessToken") is None
        assert await storage.keys() == []

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    async def test_file_is_private(self, tmp_path):
        path = tmp_path / "credentials.json"
        await JsonFileStorage(path).set("accessToken", "a")

        mode = stat.S_IMODE(os.stat(path).st_mode)
        assert mode == 0o600

    @pytest.mark.asyncio
    async def test_remove_and_clear(self, tmp_path):
        path = tmp_path / "credentials.json"
        storage = JsonFileStorage(path)
        await storage.set_many({"a": "1", "b": "2"})

        await storage.remove("a")
        assert json.loads(path.read_text()) == {"b": "2"}

        await storage.clear()
        assert json.loads(path.read_text()) == {}

    @pytest.mark.asyncio
    async def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "credentials.json"
        path.write_text("{not json")

        with pytest.raises(IOError):
            await JsonFileStorage(path).get("accessToken")

    @pytest.mark.asyncio
    async def test_failed_write_keeps_previous_contents(self, tmp_path, monkeypatch):
        path = tmp_path / "credentials.json"
        storage = JsonFileStorage(path)
        await storage.set("accessToken", "old")

        monkeypatch.setattr(
            "token_relay.storage.json_file.safe_write_json", lambda *a, **k: False
        )
        with pytest.raises(IOError):
            await storage.set("accessToken", "new")

        assert await storage.get("accessToken") == "old"
        assert json.loads(path.read_text()) == {"accessToken": "old"}

    @pytest.mark.asyncio
    async def test_credential_store_round_trip(self, tmp_path, clock, valid_pair):
        path = tmp_path / "credentials.json"
        await CredentialStore(JsonFileStorage(path), clock=clock).set(valid_pair)

        reloaded = CredentialStore(JsonFileStorage(path), clock=clock)
        result = await reloaded.initialize()

        assert result.is_ok
        assert reloaded.get() == valid_pair
