from __future__ import annotations
import logging
from collections import Counter
from datetime import timedelta
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config import ANALYTICS_CACHE_TTL_SECONDS
from db import utcnow
from exceptions import NotFoundError
from models import AnalyticsCache, Distribution, Question, SurveyResponse
from response_collector import as_number, as_selection, is_empty
from schemas import CHOICE_TYPES, SCALE_TYPES

logger = logging.getLogger(__name__)


def _rate(part: int, whole: int) -> float:
    return round(part / whole, 4) if whole else 0.0


class _QuestionTally:
    """Accumulates stats for one question across responses."""

    def __init__(self, question: Question):
        self.question = question
        self.answered = 0
        self.option_counts = Counter()
        self.values = []

    def add(self, value) -> bool:
        """Record one stored value. Returns False if it was malformed and skipped."""
        q = self.question
        if q.type in CHOICE_TYPES:
            picked = as_selection(value) if q.type == "MULTIPLE_CHOICE" else ([value] if isinstance(value, str) else None)
            if picked is None or any(p not in (q.options or []) for p in picked):
                return False
            self.option_counts.update(picked)
        elif q.type in SCALE_TYPES:
            num = as_number(value)
            if num is None:
                return False
            self.values.append(num)
        elif not isinstance(value, str):
            return False
        self.answered += 1
        return True

    def result(self, total: int) -> dict:
        q = self.question
        out = {
            "question_id": q.id,
            "text": q.text,
            "type": q.type,
            "required": q.required,
            "answered_count": self.answered,
            "skipped_count": total - self.answered,
        }
        if q.type in CHOICE_TYPES:
            out["option_counts"] = [
                {"option": o, "count": self.option_counts.get(o, 0)} for o in (q.options or [])
            ]
        elif q.type in SCALE_TYPES:
            if self.values:
                out["min"] = min(self.values)
                out["max"] = max(self.values)
                out["mean"] = round(sum(self.values) / len(self.values), 4)
            else:
                out["min"] = out["max"] = out["mean"] = None
            counts = Counter(int(v) if v.is_integer() else v for v in self.values)
            out["value_counts"] = {str(k): counts[k] for k in sorted(counts)}
        return out


class AnalyticsAggregator:
    """Read-only summaries over a distribution's stored responses.

    Results may be served from the ``analytics_cache`` table while fresh;
    the cache is only ever a copy of what ``compute`` returns.
    """

    def __init__(self, db: Session, ttl_seconds: int = ANALYTICS_CACHE_TTL_SECONDS):
        self.db = db
        self.ttl = timedelta(seconds=ttl_seconds)

    def _distribution(self, distribution_id: int) -> Distribution:
        d = self.db.get(Distribution, distribution_id)
        if not d:
            raise NotFoundError("Distribution not found", [{"field": "distribution_id", "message": str(distribution_id)}])
        return d

    def summarize(self, distribution_id: int, use_cache: bool = True) -> dict:
        d = self._distribution(distribution_id)
        now = utcnow()
        cached = self.db.get(AnalyticsCache, d.id) if use_cache else None
        if cached and cached.expires_at > now:
            return cached.payload

        payload = self.compute(d)
        if self.ttl.total_seconds() > 0:
            if cached:
                cached.payload = payload
                cached.expires_at = now + self.ttl
            else:
                self.db.add(AnalyticsCache(distribution_id=d.id, payload=payload, expires_at=now + self.ttl))
            try:
                self.db.commit()
            except (IntegrityError, StaleDataError):
                # another request wrote or dropped the row meanwhile
                self.db.rollback()
                logger.info("Analytics cache for distribution %s changed concurrently; not stored", distribution_id)
        return payload

    def compute(self, d: Distribution) -> dict:
        questions = self.db.execute(
            select(Question).where(Question.template_id == d.template_id).order_by(Question.order_index)
        ).scalars().all()
        responses = self.db.execute(
            select(SurveyResponse).where(SurveyResponse.distribution_id == d.id).order_by(SurveyResponse.id)
        ).scalars().all()

        tallies = {q.id: _QuestionTally(q) for q in questions}
        required = {q.id for q in questions if q.required}
        complete = 0
        by_day = Counter()
        skipped = 0

        for r in responses:
            answered = set()
            for a in r.answers:
                tally = tallies.get(a.question_id)
                if tally is None or is_empty(a.value):
                    continue
                if tally.add(a.value):
                    answered.add(a.question_id)
                else:
                    skipped += 1
            if required <= answered:
                complete += 1
            if r.submitted_at:
                by_day[r.submitted_at.date().isoformat()] += 1

        if skipped:
            logger.warning("Skipped %d malformed answers while summarizing distribution %s", skipped, d.id)

        total = len(responses)
        question_stats = [tallies[q.id].result(total) for q in questions]
        most_skipped = None
        if total:
            worst = max(question_stats, key=lambda s: s["skipped_count"], default=None)
            if worst and worst["skipped_count"] > 0:
                most_skipped = worst["question_id"]
        targets = len(d.target_students or [])

        return {
            "distribution_id": d.id,
            "template_id": d.template_id,
            "status": d.status,
            "total_responses": total,
            "complete_responses": complete,
            "completion_rate": _rate(complete, total),
            "target_count": targets,
            "response_rate": _rate(total, targets) if targets else None,
            "responses_by_day": dict(sorted(by_day.items())),
            "most_skipped_question_id": most_skipped,
            "questions": question_stats,
            "generated_at": utcnow().isoformat(),
        }

    def open_ended_answers(self, distribution_id: int) -> list[dict]:
        """Free-text answers grouped by open-ended question, in question order."""
        d = self._distribution(distribution_id)
        questions = self.db.execute(
            select(Question)
            .where(Question.template_id == d.template_id, Question.type == "OPEN_ENDED")
            .order_by(Question.order_index)
        ).scalars().all()
        grouped = {q.id: [] for q in questions}
        for r in self.db.execute(select(SurveyResponse).where(SurveyResponse.distribution_id == d.id)).scalars():
            for a in r.answers:
                if a.question_id in grouped and isinstance(a.value, str) and a.value.strip():
                    grouped[a.question_id].append(a.value.strip())
        return [{"question_id": q.id, "text": q.text, "answers": grouped[q.id]} for q in questions]
