"""Scores API routes: score writes and reads, sync, export/import, stats, health."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import Blueprint, jsonify, request

from errors import ValidationError
from models import isoformat
from score_store import ScoreStoreDB
from validation import validate_user_id

logger = logging.getLogger(__name__)

bp = Blueprint("api", __name__)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


@bp.errorhandler(ValidationError)
def _validation_error(e: ValidationError):
    body = {"message": e.message, "code": e.code}
    if e.details is not None:
        body["details"] = e.details
    return jsonify(body), 400


@bp.route("/api/health")
def api_health():
    return jsonify({"status": "ok", "timestamp": isoformat(datetime.now(timezone.utc))})


@bp.route("/api/scores", methods=["POST"])
def api_save_score():
    """Create or overwrite one score."""
    data = _json_body()
    user_id = validate_user_id(data.get("userId"))
    record = ScoreStoreDB(user_id).save(
        data.get("paperId"),
        data.get("questionId"),
        data.get("score"),
        data.get("maxScore"),
        data.get("timestamp"),
    )
    return jsonify(record), 201


@bp.route("/api/scores/bulk", methods=["POST"])
def api_save_bulk():
    data = _json_body()
    user_id = validate_user_id(data.get("userId"))
    scores = data.get("scores")
    if not isinstance(scores, list):
        raise ValidationError("scores must be a list")
    result = ScoreStoreDB(user_id).save_bulk(scores)
    if result["errors"]:
        logger.info("Bulk save for %s: %d saved, %d rejected", user_id, result["saved"], len(result["errors"]))
    return jsonify(result)


@bp.route("/api/sync", methods=["POST"])
def api_sync():
    """Merge the client's marks and return the server's full map."""
    data = _json_body()
    user_id = validate_user_id(data.get("userId"))
    local_marks = data.get("localMarks") or {}
    if not isinstance(local_marks, dict):
        raise ValidationError("localMarks must be an object")
    result = ScoreStoreDB(user_id).sync(local_marks, data.get("timestamp"))
    logger.info(
        "Sync for %s: %d synced, %d conflicts (lastSync=%s)",
        user_id, result["synced"], len(result["conflicts"]), data.get("lastSync"),
    )
    return jsonify(result)


@bp.route("/api/users/<user_id>/scores")
def api_user_scores(user_id):
    return jsonify(ScoreStoreDB(user_id).all_scores())


@bp.route("/api/users/<user_id>/papers/<paper_id>/scores")
def api_paper_scores(user_id, paper_id):
    return jsonify(ScoreStoreDB(user_id).paper_scores(paper_id))


@bp.route("/api/users/<user_id>", methods=["DELETE"])
def api_delete_user(user_id):
    deleted = ScoreStoreDB(user_id).delete_all()
    logger.info("Deleted %d scores for %s", deleted, user_id)
    return jsonify({"deleted": deleted})


@bp.route("/api/users/<user_id>/export")
def api_export(user_id):
    return jsonify(ScoreStoreDB(user_id).export())


@bp.route("/api/users/<user_id>/import", methods=["POST"])
def api_import(user_id):
    data = _json_body()
    scores = data.get("scores")
    if not isinstance(scores, list):
        raise ValidationError("scores must be a list")
    return jsonify(ScoreStoreDB(user_id).import_scores(scores))


@bp.route("/api/users/<user_id>/stats")
def api_stats(user_id):
    return jsonify(ScoreStoreDB(user_id).stats())
