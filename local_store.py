"""
Local store: the client-side working copy of a user's marks, settings,
response cache, last-sync instant and pending offline operations.

All state lives as JSON strings under namespaced keys of a KeyValueBackend.
Corrupt values are never fatal: they are logged at WARNING and read back
as the empty default.

Read-modify-write helpers (update_user_mark, set_setting, the cache and
queue mutators) are not guarded against interleaving callers. Two saves
racing on the same key may lose one update; the store assumes a single
user session driving it.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from errors import ParseError
from models import CacheEntry, QueuedOperation, isoformat, parse_instant, utcnow
from storage_backend import InMemoryBackend, KeyValueBackend

DEFAULT_PREFIX = "examtracker_"
STORAGE_QUOTA_BYTES = 5 * 1024 * 1024


class LocalStore:
    """Schema layer over a synchronous key-value backend."""

    def __init__(
        self,
        backend: Optional[KeyValueBackend] = None,
        *,
        prefix: str = DEFAULT_PREFIX,
        clock: Callable[[], datetime] = utcnow,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.backend = backend if backend is not None else InMemoryBackend()
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self.keys = {
            "user_id": f"{prefix}user_id",
            "user_marks": f"{prefix}user_marks",
            "settings": f"{prefix}settings",
            "cache": f"{prefix}cache",
            "last_sync": f"{prefix}last_sync",
            "offline_queue": f"{prefix}offline_queue",
        }

    # ── JSON helpers ──────────────────────────────────────

    def _decode(self, name: str, raw: str) -> Any:
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            raise ParseError(f"Failed to parse {name} from local store", details=str(e)) from e

    def _load(self, name: str, expected: type, default: Any) -> Any:
        raw = self.backend.get(self.keys[name])
        if raw is None:
            return default
        try:
            value = self._decode(name, raw)
        except ParseError as e:
            self.logger.warning("%s: %s", e.message, e.details)
            return default
        if not isinstance(value, expected):
            self.logger.warning("Ignoring %s in local store: expected %s", name, expected.__name__)
            return default
        return value

    def _dump(self, value: Any) -> str:
        return json.dumps(value)

    # ── User id ───────────────────────────────────────────

    def get_user_id(self) -> Optional[str]:
        return self.backend.get(self.keys["user_id"])

    def set_user_id(self, user_id: str) -> None:
        self.backend.set(self.keys["user_id"], user_id)

    def remove_user_id(self) -> None:
        self.backend.delete(self.keys["user_id"])

    # ── Marks ─────────────────────────────────────────────

    def get_user_marks(self) -> dict[str, int]:
        return self._load("user_marks", dict, {})

    def set_user_marks(self, marks: dict[str, int]) -> None:
        self.backend.set(self.keys["user_marks"], self._dump(marks))

    def update_user_mark(self, key: str, score: int) -> None:
        marks = self.get_user_marks()
        marks[key] = score
        self.set_user_marks(marks)

    def remove_user_marks(self) -> None:
        self.backend.delete(self.keys["user_marks"])

    # ── Settings ──────────────────────────────────────────

    def get_settings(self) -> dict[str, Any]:
        return self._load("settings", dict, {})

    def set_setting(self, key: str, value: Any) -> None:
        settings = self.get_settings()
        settings[key] = value
        self.backend.set(self.keys["settings"], self._dump(settings))

    # ── Last sync ─────────────────────────────────────────

    def get_last_sync_time(self) -> Optional[datetime]:
        raw = self.backend.get(self.keys["last_sync"])
        if not raw:
            return None
        try:
            return parse_instant(raw)
        except ValueError:
            self.logger.warning("Failed to parse last_sync from local store: %r", raw)
            return None

    def set_last_sync_time(self, when: Optional[datetime] = None) -> None:
        self.backend.set(self.keys["last_sync"], isoformat(when or self.clock()))

    def apply_sync(self, marks: dict[str, int], when: datetime) -> None:
        """Write merged marks and the last-sync instant as one unit."""
        self.backend.set_many({
            self.keys["user_marks"]: self._dump(marks),
            self.keys["last_sync"]: isoformat(when),
        })

    # ── Cache ─────────────────────────────────────────────

    def _cache_map(self) -> dict[str, Any]:
        return self._load("cache", dict, {})

    def get_cache(self, key: str) -> Any:
        """Return cached data, or None when absent or expired.

        Expired entries are evicted here; there is no background sweep.
        """
        item = self._cache_map().get(key)
        if not isinstance(item, dict):
            return None
        entry = CacheEntry.from_dict(item)
        try:
            expired = entry.is_expired(self.clock())
        except ValueError:
            expired = True
        if expired:
            self.remove_from_cache(key)
            return None
        return entry.data

    def set_cache(self, key: str, data: Any, ttl_ms: Optional[int] = None) -> None:
        now = self.clock()
        expires = isoformat(now + timedelta(milliseconds=ttl_ms)) if ttl_ms is not None else None
        cache = self._cache_map()
        cache[key] = CacheEntry(data=data, timestamp=isoformat(now), expires=expires).to_dict()
        self.backend.set(self.keys["cache"], self._dump(cache))

    def remove_from_cache(self, *keys: str) -> None:
        cache = self._cache_map()
        removed = [k for k in keys if cache.pop(k, None) is not None]
        if removed:
            self.backend.set(self.keys["cache"], self._dump(cache))

    def cache_keys(self) -> list[str]:
        return list(self._cache_map())

    def clear_cache(self) -> None:
        self.backend.delete(self.keys["cache"])

    # ── Offline queue ─────────────────────────────────────

    def get_offline_queue(self) -> list[QueuedOperation]:
        queue: list[QueuedOperation] = []
        for raw in self._load("offline_queue", list, []):
            try:
                queue.append(QueuedOperation.from_dict(raw))
            except (ValueError, TypeError, AttributeError):
                self.logger.warning("Dropping malformed offline queue entry: %r", raw)
        return queue

    def set_offline_queue(self, queue: list[QueuedOperation]) -> None:
        self.backend.set(self.keys["offline_queue"], self._dump([op.to_dict() for op in queue]))

    def record_offline_operation(self, mark_updates: dict[str, int], operation: QueuedOperation) -> None:
        """Apply optimistic mark updates and append to the queue in one write."""
        marks = self.get_user_marks()
        marks.update(mark_updates)
        queue = self.get_offline_queue()
        queue.append(operation)
        self.backend.set_many({
            self.keys["user_marks"]: self._dump(marks),
            self.keys["offline_queue"]: self._dump([op.to_dict() for op in queue]),
        })

    # ── Whole-store operations ────────────────────────────

    def clear_all_data(self) -> None:
        """Remove every managed key. Irreversible."""
        self.backend.set_many({key: None for key in self.keys.values()})

    def export_data(self) -> str:
        last_sync = self.get_last_sync_time()
        data = {
            "userId": self.get_user_id(),
            "userMarks": self.get_user_marks(),
            "settings": self.get_settings(),
            "lastSync": isoformat(last_sync) if last_sync else None,
        }
        return json.dumps(data, indent=2)

    def import_data(self, serialized: str) -> bool:
        """Restore a snapshot produced by export_data().

        The snapshot is validated in full before anything is written, so a
        malformed snapshot leaves the store untouched.
        """
        try:
            data = json.loads(serialized)
        except (json.JSONDecodeError, TypeError):
            self.logger.warning("Import rejected: snapshot is not valid JSON")
            return False
        if not isinstance(data, dict):
            self.logger.warning("Import rejected: snapshot is not an object")
            return False

        writes: dict[str, Optional[str]] = {}
        try:
            user_id = data.get("userId")
            if user_id is not None:
                if not isinstance(user_id, str):
                    raise ValueError("userId must be a string")
                writes[self.keys["user_id"]] = user_id

            marks = data.get("userMarks")
            if marks is not None:
                if not isinstance(marks, dict) or not all(
                    isinstance(k, str) and isinstance(v, int) and not isinstance(v, bool)
                    for k, v in marks.items()
                ):
                    raise ValueError("userMarks must map keys to integer scores")
                writes[self.keys["user_marks"]] = self._dump(marks)

            settings = data.get("settings")
            if settings is not None:
                if not isinstance(settings, dict):
                    raise ValueError("settings must be an object")
                merged = self.get_settings()
                merged.update(settings)
                writes[self.keys["settings"]] = self._dump(merged)

            last_sync = data.get("lastSync")
            if last_sync is not None:
                if not isinstance(last_sync, str):
                    raise ValueError("lastSync must be a string")
                writes[self.keys["last_sync"]] = isoformat(parse_instant(last_sync))
        except ValueError as e:
            self.logger.warning("Import rejected: %s", e)
            return False

        self.backend.set_many(writes)
        return True

    def get_storage_usage(self) -> dict[str, float]:
        used = 0
        for key in self.keys.values():
            value = self.backend.get(key)
            if value is not None:
                used += len(key) + len(value)
        return {
            "used": used,
            "available": STORAGE_QUOTA_BYTES,
            "percentage": used / STORAGE_QUOTA_BYTES * 100,
        }


def create_local_store(**kwargs: Any) -> LocalStore:
    """LocalStore on the backend selected by SCORES_STORE_BACKEND."""
    from config import REDIS_URL, STORE_BACKEND, STORE_KEY_PREFIX, STORE_PATH
    from storage_backend import create_backend

    backend = create_backend(STORE_BACKEND, path=STORE_PATH, redis_url=REDIS_URL)
    kwargs.setdefault("prefix", STORE_KEY_PREFIX)
    return LocalStore(backend, **kwargs)
