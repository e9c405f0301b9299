"""Shape checks for caller-supplied identifiers and scores."""

from __future__ import annotations

from typing import Any

from errors import ValidationError


def validate_user_id(user_id: Any) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("userId is required")
    return user_id


def validate_paper_id(paper_id: Any) -> str:
    if not isinstance(paper_id, str) or not paper_id.strip():
        raise ValidationError("paperId is required")
    return paper_id


def validate_question_id(question_id: Any) -> str | int:
    # bool is an int subclass and never a valid question id
    if isinstance(question_id, bool):
        raise ValidationError("questionId must be a string or integer")
    if isinstance(question_id, int):
        return question_id
    if isinstance(question_id, str) and question_id.strip():
        return question_id
    raise ValidationError("questionId must be a string or integer")


def validate_score(score: Any, max_score: Any) -> tuple[int, int]:
    """Score must be a non-negative int no greater than a positive max_score."""
    for name, value in (("score", score), ("maxScore", max_score)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{name} must be an integer", details={name: value})
    if max_score <= 0:
        raise ValidationError("maxScore must be positive", details={"maxScore": max_score})
    if score < 0 or score > max_score:
        raise ValidationError(
            f"score must be between 0 and {max_score}",
            details={"score": score, "maxScore": max_score},
        )
    return score, max_score


def validate_score_entry(user_id: Any, paper_id: Any, question_id: Any, score: Any, max_score: Any) -> None:
    validate_user_id(user_id)
    validate_paper_id(paper_id)
    validate_question_id(question_id)
    validate_score(score, max_score)


def validate_bulk_scores(scores: Any) -> list[dict]:
    """Each item needs paperId, questionId, score and maxScore."""
    if not isinstance(scores, list):
        raise ValidationError("scores must be a list")
    for i, item in enumerate(scores):
        if not isinstance(item, dict):
            raise ValidationError(f"scores[{i}] must be an object")
        try:
            validate_paper_id(item.get("paperId"))
            validate_question_id(item.get("questionId"))
            validate_score(item.get("score"), item.get("maxScore"))
        except ValidationError as e:
            raise ValidationError(f"scores[{i}]: {e.message}", details=e.details) from e
    return scores
