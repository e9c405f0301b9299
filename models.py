"""
Score sync data model: score entries, cache entries, queued operations,
sync summaries and the typed result returned across component boundaries.

Wire payloads keep the camelCase keys of the scores API; the dataclasses
use snake_case and convert with to_dict()/from_dict().
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

OP_SAVE_SCORE = "save_score"
OP_BULK_SAVE = "bulk_save"
OPERATION_TYPES = (OP_SAVE_SCORE, OP_BULK_SAVE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(when: datetime) -> str:
    """ISO-8601 with millisecond precision and a trailing Z."""
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    when = when.astimezone(timezone.utc)
    return when.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_instant(value: str) -> datetime:
    """Parse an ISO-8601 instant; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def mark_key(paper_id: str, question_id: str | int) -> str:
    """Canonical lookup key of a mark within one user's mark set."""
    return f"{paper_id}-{question_id}"


def parse_mark_key(key: str) -> Optional[tuple[str, str]]:
    """Split a mark key into (paper_id, question_id).

    Paper ids may themselves contain dashes, so the split is on the last one.
    """
    paper_id, sep, question_id = key.rpartition("-")
    if not sep or not paper_id or not question_id:
        return None
    return paper_id, question_id


@dataclass
class ScoreEntry:
    user_id: str
    paper_id: str
    question_id: str | int
    score: int
    max_score: int
    timestamp: str = field(default_factory=lambda: isoformat(utcnow()))
    last_modified: Optional[str] = None
    id: Optional[str] = None

    @property
    def key(self) -> str:
        return mark_key(self.paper_id, self.question_id)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "userId": self.user_id,
            "paperId": self.paper_id,
            "questionId": self.question_id,
            "score": self.score,
            "maxScore": self.max_score,
            "timestamp": self.timestamp,
        }
        if self.last_modified:
            data["lastModified"] = self.last_modified
        if self.id is not None:
            data["id"] = self.id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScoreEntry:
        return cls(
            user_id=data["userId"],
            paper_id=data["paperId"],
            question_id=data["questionId"],
            score=data["score"],
            max_score=data["maxScore"],
            timestamp=data.get("timestamp") or isoformat(utcnow()),
            last_modified=data.get("lastModified"),
            id=data.get("id"),
        )


@dataclass
class CacheEntry:
    data: Any
    timestamp: str
    expires: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        if not self.expires:
            return False
        return now > parse_instant(self.expires)

    def to_dict(self) -> dict[str, Any]:
        return {"data": self.data, "timestamp": self.timestamp, "expires": self.expires}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        return cls(
            data=data.get("data"),
            timestamp=data.get("timestamp", ""),
            expires=data.get("expires"),
        )


@dataclass
class QueuedOperation:
    """A mutation recorded locally and not yet confirmed by the server.

    ``payload`` holds userId/paperId/questionId/score/maxScore for
    ``save_score`` and userId/scores for ``bulk_save``.
    """

    type: str
    payload: dict[str, Any]
    timestamp: str = field(default_factory=lambda: isoformat(utcnow()))
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def user_id(self) -> Optional[str]:
        return self.payload.get("userId")

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "type": self.type, "payload": self.payload, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueuedOperation:
        if data.get("type") not in OPERATION_TYPES or not isinstance(data.get("payload"), dict):
            raise ValueError(f"Not a queued operation: {data!r}")
        return cls(
            type=data["type"],
            payload=data["payload"],
            timestamp=data.get("timestamp", ""),
            id=data.get("id") or uuid.uuid4().hex,
        )


@dataclass
class SyncResult:
    synced: int
    conflicts: int
    errors: int
    last_sync: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "synced": self.synced,
            "conflicts": self.conflicts,
            "errors": self.errors,
            "lastSync": self.last_sync,
        }


@dataclass
class DrainReport:
    """Outcome of one pass over the offline queue."""

    attempted: int = 0
    delivered: int = 0
    remaining: int = 0
    failures: list[tuple[str, str]] = field(default_factory=list)  # (operation id, reason)

    @property
    def complete(self) -> bool:
        return self.remaining == 0


@dataclass
class ApiError:
    message: str
    code: Optional[str] = None
    status: Optional[int] = None
    details: Any = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"message": self.message}
        if self.code is not None:
            data["code"] = self.code
        if self.status is not None:
            data["status"] = self.status
        if self.details is not None:
            data["details"] = self.details
        return data


@dataclass
class ApiResponse:
    """Typed result of every remote operation.

    ``from_cache`` marks data served from the local cache; ``queued`` marks
    a write recorded in the offline queue instead of reaching the server.
    """

    success: bool
    data: Any = None
    error: Optional[ApiError] = None
    from_cache: bool = False
    queued: bool = False

    @classmethod
    def ok(cls, data: Any = None, **flags: bool) -> ApiResponse:
        return cls(success=True, data=data, **flags)

    @classmethod
    def fail(cls, error: ApiError) -> ApiResponse:
        return cls(success=False, error=error)

    @property
    def code(self) -> Optional[str]:
        return self.error.code if self.error else None
