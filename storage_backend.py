"""Key-value persistence behind the local store, with memory / SQLite / Redis swap.

Values are JSON strings; interpretation belongs to local_store.py. Every
backend supports set_many(), which applies several writes (None deletes)
as a single unit.

Usage:
    from storage_backend import create_backend
    backend = create_backend("sqlite", path="scores_local.db")
    backend.set("examtracker_user_id", "user-1")
    value = backend.get("examtracker_user_id")
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

# ── Protocol ───────────────────────────────────────────────

class KeyValueBackend(Protocol):
    def get(self, key: str) -> Optional[str]: ...
    def set(self, key: str, value: str) -> None: ...
    def delete(self, key: str) -> None: ...
    def set_many(self, items: dict[str, Optional[str]]) -> None: ...


# ── In-Memory Implementation ──────────────────────────────

class InMemoryBackend:
    """Process-local dict. Used in tests and as the default backend."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._store.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._store[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def set_many(self, items: dict[str, Optional[str]]) -> None:
        with self._lock:
            for key, value in items.items():
                if value is None:
                    self._store.pop(key, None)
                else:
                    self._store[key] = value


# ── SQLite Implementation ─────────────────────────────────

class SQLiteBackend:
    """Durable single-file store: one ``kv`` table, WAL journal."""

    SCHEMA = "CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL)"

    def __init__(self, path: str) -> None:
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(self.SCHEMA)
        self._conn.commit()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        self.set_many({key: value})

    def delete(self, key: str) -> None:
        self.set_many({key: None})

    def set_many(self, items: dict[str, Optional[str]]) -> None:
        with self._lock:
            # connection as context manager commits or rolls back the whole batch
            with self._conn:
                for key, value in items.items():
                    if value is None:
                        self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
                    else:
                        self._conn.execute(
                            "INSERT INTO kv (key, value) VALUES (?, ?) "
                            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                            (key, value),
                        )

    def close(self) -> None:
        with self._lock:
            self._conn.close()


# ── Redis Implementation ──────────────────────────────────

class RedisBackend:
    """Wraps redis.Redis. Read errors degrade to a miss; write errors propagate."""

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    def get(self, key: str) -> Optional[str]:
        try:
            raw = self._redis.get(key)
        except Exception as e:
            logger.warning("Redis GET error (key=%s): %s", key, e)
            return None
        if raw is None:
            return None
        return raw.decode() if isinstance(raw, bytes) else raw

    def set(self, key: str, value: str) -> None:
        self._redis.set(key, value)

    def delete(self, key: str) -> None:
        self._redis.delete(key)

    def set_many(self, items: dict[str, Optional[str]]) -> None:
        pipe = self._redis.pipeline(transaction=True)
        for key, value in items.items():
            if value is None:
                pipe.delete(key)
            else:
                pipe.set(key, value)
        pipe.execute()


# ── Factory ───────────────────────────────────────────────

def create_backend(kind: str = "memory", *, path: str = "", redis_url: str = "") -> KeyValueBackend:
    """Build the backend named by SCORES_STORE_BACKEND."""
    kind = (kind or "memory").lower()
    if kind == "memory":
        return InMemoryBackend()
    if kind == "sqlite":
        if not path:
            raise ValueError("SQLite backend requires a path")
        logger.info("Local store backend: SQLite (%s)", path)
        return SQLiteBackend(path)
    if kind == "redis":
        if not redis_url:
            raise ValueError("Redis backend requires REDIS_URL")
        import redis
        client = redis.Redis.from_url(redis_url, decode_responses=False)
        logger.info("Local store backend: Redis (%s)", redis_url)
        return RedisBackend(client)
    raise ValueError(f"Unknown store backend: {kind}")
