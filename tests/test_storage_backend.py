"""Tests for storage_backend.py: InMemoryBackend, SQLiteBackend and RedisBackend."""

from __future__ import annotations

import pytest


class TestInMemoryBackend:
    def test_set_and_get(self):
        from storage_backend import InMemoryBackend
        backend = InMemoryBackend()
        backend.set("key1", '{"data": "value"}')
        assert backend.get("key1") == '{"data": "value"}'

    def test_get_missing_key(self):
        from storage_backend import InMemoryBackend
        assert InMemoryBackend().get("nonexistent") is None

    def test_delete(self):
        from storage_backend import InMemoryBackend
        backend = InMemoryBackend()
        backend.set("to_delete", "value")
        backend.delete("to_delete")
        assert backend.get("to_delete") is None

    def test_delete_missing_is_noop(self):
        from storage_backend import InMemoryBackend
        InMemoryBackend().delete("never-set")

    def test_set_many_writes_and_deletes(self):
        from storage_backend import InMemoryBackend
        backend = InMemoryBackend()
        backend.set("old", "1")
        backend.set_many({"a": "x", "b": "y", "old": None})
        assert backend.get("a") == "x"
        assert backend.get("b") == "y"
        assert backend.get("old") is None


class TestSQLiteBackend:
    def test_set_and_get(self, tmp_path):
        from storage_backend import SQLiteBackend
        backend = SQLiteBackend(str(tmp_path / "local.db"))
        backend.set("k", "v")
        assert backend.get("k") == "v"
        backend.close()

    def test_overwrite(self, tmp_path):
        from storage_backend import SQLiteBackend
        backend = SQLiteBackend(str(tmp_path / "local.db"))
        backend.set("k", "v1")
        backend.set("k", "v2")
        assert backend.get("k") == "v2"
        backend.close()

    def test_persists_across_connections(self, tmp_path):
        from storage_backend import SQLiteBackend
        path = str(tmp_path / "local.db")
        first = SQLiteBackend(path)
        first.set_many({"marks": '{"p1-1": 5}', "last_sync": "2026-01-15T10:00:00.000Z"})
        first.close()

        second = SQLiteBackend(path)
        assert second.get("marks") == '{"p1-1": 5}'
        assert second.get("last_sync") == "2026-01-15T10:00:00.000Z"
        second.close()

    def test_delete(self, tmp_path):
        from storage_backend import SQLiteBackend
        backend = SQLiteBackend(str(tmp_path / "local.db"))
        backend.set("k", "v")
        backend.delete("k")
        assert backend.get("k") is None
        backend.close()


class TestRedisBackend:
    @pytest.fixture
    def fake_redis(self):
        import fakeredis
        return fakeredis.FakeRedis()

    def test_set_and_get(self, fake_redis):
        from storage_backend import RedisBackend
        backend = RedisBackend(fake_redis)
        backend.set("key1", '{"a": 1}')
        assert backend.get("key1") == '{"a": 1}'

    def test_get_missing_key(self, fake_redis):
        from storage_backend import RedisBackend
        assert RedisBackend(fake_redis).get("nonexistent") is None

    def test_set_many(self, fake_redis):
        from storage_backend import RedisBackend
        backend = RedisBackend(fake_redis)
        backend.set("gone", "1")
        backend.set_many({"a": "1", "gone": None})
        assert backend.get("a") == "1"
        assert backend.get("gone") is None

    def test_get_error_degrades_to_miss(self):
        from unittest.mock import MagicMock
        from storage_backend import RedisBackend
        broken = MagicMock()
        broken.get.side_effect = ConnectionError("redis down")
        assert RedisBackend(broken).get("k") is None


class TestCreateBackend:
    def test_memory_default(self):
        from storage_backend import create_backend, InMemoryBackend
        assert isinstance(create_backend(), InMemoryBackend)

    def test_sqlite(self, tmp_path):
        from storage_backend import create_backend, SQLiteBackend
        backend = create_backend("sqlite", path=str(tmp_path / "x.db"))
        assert isinstance(backend, SQLiteBackend)
        backend.close()

    def test_sqlite_requires_path(self):
        from storage_backend import create_backend
        with pytest.raises(ValueError):
            create_backend("sqlite")

    def test_redis_requires_url(self):
        from storage_backend import create_backend
        with pytest.raises(ValueError):
            create_backend("redis")

    def test_unknown_kind(self):
        from storage_backend import create_backend
        with pytest.raises(ValueError):
            create_backend("dynamo")
