"""
DB-backed score store for the reference scores API.

Scores are keyed on (user_id, paper_id, question_id) and upserted, so a
replayed write leaves the same final row as a single one. Records leave
this module as camelCase dicts matching the wire format.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from database import get_db
from errors import ValidationError
from models import isoformat, mark_key, parse_mark_key
from validation import validate_paper_id, validate_question_id, validate_score

RECENT_ACTIVITY_LIMIT = 10


def _now() -> str:
    return isoformat(datetime.now(timezone.utc))


def _question_out(row) -> str | int:
    value = row["question_id"]
    return int(value) if row["question_is_int"] else value


def _row_to_dict(row) -> dict[str, Any]:
    data = {
        "id": str(row["id"]),
        "userId": row["user_id"],
        "paperId": row["paper_id"],
        "questionId": _question_out(row),
        "score": row["score"],
        "maxScore": row["max_score"],
        "timestamp": row["timestamp"],
    }
    if row["last_modified"]:
        data["lastModified"] = row["last_modified"]
    return data


class ScoreStoreDB:
    """All persisted scores of one user."""

    def __init__(self, user_id: str):
        self.user_id = user_id

    # ── Reads ─────────────────────────────────────────────

    def _get(self, paper_id: str, question_id: str) -> Optional[dict[str, Any]]:
        row = get_db().execute(
            "SELECT * FROM scores WHERE user_id = ? AND paper_id = ? AND question_id = ?",
            (self.user_id, paper_id, question_id),
        ).fetchone()
        return _row_to_dict(row) if row else None

    def all_scores(self) -> list[dict[str, Any]]:
        rows = get_db().execute(
            "SELECT * FROM scores WHERE user_id = ? ORDER BY paper_id, id",
            (self.user_id,),
        ).fetchall()
        return [_row_to_dict(r) for r in rows]

    def paper_scores(self, paper_id: str) -> list[dict[str, Any]]:
        rows = get_db().execute(
            "SELECT * FROM scores WHERE user_id = ? AND paper_id = ? ORDER BY id",
            (self.user_id, paper_id),
        ).fetchall()
        return [_row_to_dict(r) for r in rows]

    def marks(self) -> dict[str, int]:
        rows = get_db().execute(
            "SELECT paper_id, question_id, score FROM scores WHERE user_id = ?",
            (self.user_id,),
        ).fetchall()
        return {mark_key(r["paper_id"], r["question_id"]): r["score"] for r in rows}

    # ── Writes ────────────────────────────────────────────

    def _upsert(self, paper_id: str, question_id: str | int, score: int,
                max_score: Optional[int], timestamp: str) -> None:
        # Ints and digit strings share a row; the latest writer decides the type
        get_db().execute(
            "INSERT INTO scores (user_id, paper_id, question_id, question_is_int, score, max_score, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT (user_id, paper_id, question_id) DO UPDATE SET "
            "question_is_int = excluded.question_is_int, "
            "score = excluded.score, "
            "max_score = COALESCE(excluded.max_score, scores.max_score), "
            "last_modified = ?",
            (self.user_id, paper_id, str(question_id), int(isinstance(question_id, int)),
             score, max_score, timestamp, _now()),
        )

    def save(self, paper_id: str, question_id: str | int, score: int,
             max_score: int, timestamp: Optional[str] = None) -> dict[str, Any]:
        validate_paper_id(paper_id)
        validate_question_id(question_id)
        validate_score(score, max_score)
        self._upsert(paper_id, question_id, score, max_score, timestamp or _now())
        get_db().commit()
        return self._get(paper_id, str(question_id))

    def save_bulk(self, scores: list[dict[str, Any]]) -> dict[str, Any]:
        """Save every valid item; invalid ones are reported, not fatal."""
        saved = 0
        errors: list[dict[str, Any]] = []
        for i, item in enumerate(scores):
            try:
                if not isinstance(item, dict):
                    raise ValidationError("score must be an object")
                validate_paper_id(item.get("paperId"))
                validate_question_id(item.get("questionId"))
                validate_score(item.get("score"), item.get("maxScore"))
            except ValidationError as e:
                errors.append({"index": i, "message": e.message})
                continue
            self._upsert(item["paperId"], item["questionId"], item["score"],
                         item["maxScore"], item.get("timestamp") or _now())
            saved += 1
        get_db().commit()
        return {"saved": saved, "errors": errors}

    def sync(self, local_marks: dict[str, Any], timestamp: Optional[str] = None) -> dict[str, Any]:
        """Merge a client's mark map into the server copy.

        Keys unknown to the server are inserted; keys present on both sides
        with different values are reported as conflicts and keep the server
        value. Returns the full server map after the merge.
        """
        server = self.marks()
        conflicts: list[dict[str, Any]] = []
        synced = 0
        stamp = timestamp or _now()

        for key, value in local_marks.items():
            parsed = parse_mark_key(key)
            if parsed is None or isinstance(value, bool) or not isinstance(value, int) or value < 0:
                continue
            if key not in server:
                paper_id, question_id = parsed
                self._upsert(paper_id, question_id, value, None, stamp)
                synced += 1
            elif server[key] != value:
                conflicts.append({
                    "key": key,
                    "localValue": value,
                    "serverValue": server[key],
                    "timestamp": _now(),
                })
        get_db().commit()
        return {"serverMarks": self.marks(), "conflicts": conflicts, "synced": synced}

    def delete_all(self) -> int:
        cur = get_db().execute("DELETE FROM scores WHERE user_id = ?", (self.user_id,))
        get_db().commit()
        return cur.rowcount

    # ── Export / import ───────────────────────────────────

    def export(self) -> dict[str, Any]:
        scores = self.all_scores()
        return {
            "scores": scores,
            "metadata": {
                "exportDate": _now(),
                "totalScores": len(scores),
                "papers": sorted({s["paperId"] for s in scores}),
            },
        }

    def import_scores(self, scores: list[Any]) -> dict[str, Any]:
        """Upsert exported records. Rows already holding the same score are skipped."""
        imported = 0
        skipped = 0
        errors: list[dict[str, Any]] = []
        for i, item in enumerate(scores):
            try:
                if not isinstance(item, dict):
                    raise ValidationError("score must be an object")
                paper_id = validate_paper_id(item.get("paperId"))
                question_id = validate_question_id(item.get("questionId"))
                validate_score(item.get("score"), item.get("maxScore"))
            except ValidationError as e:
                errors.append({"index": i, "message": e.message})
                continue
            existing = self._get(paper_id, str(question_id))
            if existing and existing["score"] == item["score"]:
                skipped += 1
                continue
            self._upsert(paper_id, question_id, item["score"], item["maxScore"],
                         item.get("timestamp") or _now())
            imported += 1
        get_db().commit()
        return {"imported": imported, "skipped": skipped, "errors": errors}

    # ── Stats ─────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        scores = self.all_scores()
        breakdown: dict[str, dict[str, int]] = {}
        for s in scores:
            paper = breakdown.setdefault(s["paperId"], {"questions": 0, "score": 0, "maxScore": 0})
            paper["questions"] += 1
            paper["score"] += s["score"]
            paper["maxScore"] += s["maxScore"] or 0

        total_score = sum(p["score"] for p in breakdown.values())
        total_max = sum(p["maxScore"] for p in breakdown.values())
        recent = sorted(scores, key=lambda s: s.get("lastModified") or s["timestamp"], reverse=True)
        return {
            "totalPapers": len(breakdown),
            "totalQuestions": len(scores),
            "totalScore": total_score,
            "totalMaxScore": total_max,
            "averageScore": round(total_score / total_max * 100, 1) if total_max else 0.0,
            "paperBreakdown": breakdown,
            "recentActivity": [
                {"date": s.get("lastModified") or s["timestamp"], "paperId": s["paperId"], "score": s["score"]}
                for s in recent[:RECENT_ACTIVITY_LIMIT]
            ],
        }
