from __future__ import annotations
import logging
import math
import re
from sqlalchemy import select, func, delete as sql_delete
from sqlalchemy.orm import Session

from db import utcnow
from exceptions import InvalidStateError, NotFoundError, ValidationError
from models import AnalyticsCache, Answer, Distribution, Question, SurveyResponse
from schemas import CHOICE_TYPES, SCALE_TYPES

logger = logging.getLogger(__name__)

SUBMISSION_TYPES = ("ONLINE", "MANUAL_ENTRY")


def is_empty(value) -> bool:
    """True for values that do not count as an answer."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def as_number(value):
    """Return ``value`` as a finite float, or None if it is not numeric."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        num = float(value.strip() if isinstance(value, str) else value)
    except (ValueError, OverflowError):
        return None
    # nan/inf pass every range comparison and cannot be rendered as JSON
    return num if math.isfinite(num) else None


def as_selection(value) -> list | None:
    """Normalize a multiple-choice value to a list of strings."""
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return list(value)
    return None


def check_answer(question: Question, value) -> tuple[object, str | None]:
    """Check a non-empty value against its question.

    Returns the value to store and an error message (None when valid).
    """
    rules = question.validation or {}
    options = question.options or []

    if question.type == "OPEN_ENDED":
        if not isinstance(value, str):
            return value, "must be text"
        text = value.strip()
        if rules.get("min_length") is not None and len(text) < rules["min_length"]:
            return value, f"must be at least {rules['min_length']} characters"
        if rules.get("max_length") is not None and len(text) > rules["max_length"]:
            return value, f"must be at most {rules['max_length']} characters"
        if rules.get("pattern") and not re.fullmatch(rules["pattern"], text):
            return value, "does not match the required format"
        return text, None

    if question.type == "MULTIPLE_CHOICE":
        picked = as_selection(value)
        if picked is None:
            return value, "must be a list of options"
        unknown = [p for p in picked if p not in options]
        if unknown:
            return value, f"not in options: {unknown}"
        if len(set(picked)) != len(picked):
            return value, "options selected more than once"
        if rules.get("min_selections") is not None and len(picked) < rules["min_selections"]:
            return value, f"select at least {rules['min_selections']}"
        if rules.get("max_selections") is not None and len(picked) > rules["max_selections"]:
            return value, f"select at most {rules['max_selections']}"
        return picked, None

    if question.type in CHOICE_TYPES:
        if not isinstance(value, str) or value not in options:
            return value, f"not in options: {value!r}"
        return value, None

    if question.type in SCALE_TYPES:
        num = as_number(value)
        if num is None:
            return value, "must be a number"
        if rules.get("min_value") is not None and num < rules["min_value"]:
            return value, f"must be >= {rules['min_value']}"
        if rules.get("max_value") is not None and num > rules["max_value"]:
            return value, f"must be <= {rules['max_value']}"
        return int(num) if num.is_integer() else num, None

    return value, f"unsupported question type {question.type}"


def validate_answers(questions: list[Question], answers: list[dict]) -> list[tuple[int, object]]:
    """Validate a full answer set for a template's questions.

    Every problem is collected before raising, so the caller learns about all
    offending question ids at once. Returns (question_id, value) pairs in
    submission order with empty answers dropped.
    """
    by_id = {q.id: q for q in questions}
    errors = []
    seen = set()
    accepted = []

    for a in answers:
        qid = a.get("question_id")
        value = a.get("value")
        q = by_id.get(qid)
        if q is None:
            errors.append({"question_id": qid, "message": "question does not belong to this survey"})
            continue
        if qid in seen:
            errors.append({"question_id": qid, "message": "answered more than once"})
            continue
        seen.add(qid)
        if is_empty(value):
            continue
        stored, problem = check_answer(q, value)
        if problem:
            errors.append({"question_id": qid, "message": problem})
            continue
        accepted.append((qid, stored))

    answered = {qid for qid, _ in accepted}
    missing = [q.id for q in questions if q.required and q.id not in answered]
    for qid in missing:
        # a required question whose value was rejected above is already reported
        if not any(e.get("question_id") == qid for e in errors):
            errors.append({"question_id": qid, "message": "required"})

    if errors:
        raise ValidationError("Response rejected", errors)
    return accepted


class ResponseCollector:
    """Records answers against a distribution, one atomic response at a time."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, response_id: int) -> SurveyResponse:
        row = self.db.get(SurveyResponse, response_id)
        if not row:
            raise NotFoundError("Response not found", [{"field": "response_id", "message": str(response_id)}])
        return row

    def list(self, distribution_id: int | None = None, student_id: str | None = None) -> list[SurveyResponse]:
        q = select(SurveyResponse).order_by(SurveyResponse.submitted_at.desc(), SurveyResponse.id.desc())
        if distribution_id is not None:
            q = q.where(SurveyResponse.distribution_id == distribution_id)
        if student_id is not None:
            q = q.where(SurveyResponse.student_id == student_id)
        return self.db.execute(q).scalars().all()

    def count(self, distribution_id: int) -> int:
        return self.db.execute(
            select(func.count()).select_from(SurveyResponse).where(SurveyResponse.distribution_id == distribution_id)
        ).scalar_one()

    def _distribution(self, distribution_id: int) -> Distribution:
        d = self.db.get(Distribution, distribution_id)
        if not d:
            raise NotFoundError("Distribution not found", [{"field": "distribution_id", "message": str(distribution_id)}])
        return d

    def _questions(self, template_id: int) -> list[Question]:
        return self.db.execute(
            select(Question).where(Question.template_id == template_id).order_by(Question.order_index)
        ).scalars().all()

    def _assert_open(self, d: Distribution) -> None:
        if not d.accepts_responses(utcnow()):
            reason = "distribution closed" if d.status == "closed" else "distribution is outside its response window"
            raise InvalidStateError(reason, [{"field": "distribution_id", "message": str(d.id)}])

    def _check_respondent(self, d: Distribution, student_id: str | None) -> None:
        if not student_id and not d.allow_anonymous:
            raise ValidationError("A student id is required for this survey",
                                  [{"field": "student_id", "message": "required"}])
        if student_id and d.target_students and student_id not in d.target_students:
            raise ValidationError("Student is not a target of this survey",
                                  [{"field": "student_id", "message": student_id}])

    def _drop_cache(self, distribution_id: int) -> None:
        self.db.execute(sql_delete(AnalyticsCache).where(AnalyticsCache.distribution_id == distribution_id))

    def submit(self, distribution_id: int, answers: list[dict], student_id: str | None = None,
               submission_type: str = "ONLINE") -> SurveyResponse:
        """Validate and persist one response with all of its answers.

        Nothing is written unless every answer passes validation.
        """
        d = self._distribution(distribution_id)
        self._assert_open(d)
        if d.max_responses is not None and self.count(d.id) >= d.max_responses:
            raise InvalidStateError("distribution is full", [{"field": "max_responses", "message": str(d.max_responses)}])
        if submission_type not in SUBMISSION_TYPES:
            raise ValidationError("Unknown submission type", [{"field": "submission_type", "message": submission_type}])

        student_id = str(student_id).strip() if student_id is not None else None
        student_id = student_id or None
        self._check_respondent(d, student_id)
        accepted = validate_answers(self._questions(d.template_id), answers)

        row = SurveyResponse(distribution_id=d.id, student_id=student_id, submission_type=submission_type)
        row.answers = [Answer(question_id=qid, value=v, position=i) for i, (qid, v) in enumerate(accepted)]
        try:
            self.db.add(row)
            self._drop_cache(d.id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info("Recorded response %s for distribution %s (%d answers)", row.id, d.id, len(accepted))
        return row

    def update(self, response_id: int, answers: list[dict]) -> SurveyResponse:
        """Replace a response's answers; only while its distribution accepts responses."""
        row = self.get(response_id)
        d = self._distribution(row.distribution_id)
        self._assert_open(d)
        accepted = validate_answers(self._questions(d.template_id), answers)

        try:
            row.answers = [Answer(question_id=qid, value=v, position=i) for i, (qid, v) in enumerate(accepted)]
            row.updated_at = utcnow()
            self._drop_cache(d.id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info("Updated response %s", response_id)
        return row

    def delete(self, response_id: int) -> None:
        """Retract a response. Allowed whether or not the distribution is open."""
        row = self.get(response_id)
        distribution_id = row.distribution_id
        self.db.delete(row)
        self._drop_cache(distribution_id)
        self.db.commit()
        logger.info("Deleted response %s from distribution %s", response_id, distribution_id)
