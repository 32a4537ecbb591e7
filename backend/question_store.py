from __future__ import annotations
import logging
import re
from sqlalchemy import select, func
from sqlalchemy.orm import Session

from exceptions import InvalidStateError, NotFoundError, ValidationError
from models import Question, SurveyTemplate
from schemas import (
    CHOICE_TYPES, QUESTION_TYPES, ChoiceQuestion, OpenEndedQuestion, ScaleQuestion,
    question_spec_adapter,
)

logger = logging.getLogger(__name__)


def create_empty_question(question_type: str):
    """Return the default-shaped question for ``question_type``.

    Choice and dropdown questions are seeded with a single blank option so an
    editor has a row to fill in; every other type carries no options.
    """
    if question_type not in QUESTION_TYPES:
        raise ValidationError(
            f"Unknown question type: {question_type}",
            [{"field": "type", "message": f"must be one of {', '.join(QUESTION_TYPES)}"}],
        )
    if question_type in CHOICE_TYPES:
        return ChoiceQuestion(type=question_type, text="", required=False, options=[""])
    if question_type == "OPEN_ENDED":
        return OpenEndedQuestion(text="", required=False)
    return ScaleQuestion(type=question_type, text="", required=False)


def _check_spec(spec) -> dict:
    """Validate a question spec against store rules and return column values."""
    errors = []
    text = (spec.text or "").strip()
    if not text:
        errors.append({"field": "text", "message": "Question text is required"})

    options = None
    if spec.type in CHOICE_TYPES:
        options = [o.strip() for o in spec.options if o and o.strip()]
        if not options:
            errors.append({"field": "options", "message": "At least one option is required"})
        elif len(set(options)) != len(options):
            errors.append({"field": "options", "message": "Options must be unique"})

    rules = spec.validation.model_dump(exclude_none=True)
    for low, high in (("min_length", "max_length"), ("min_value", "max_value"), ("min_selections", "max_selections")):
        if low in rules and high in rules and rules[low] > rules[high]:
            errors.append({"field": f"validation.{low}", "message": f"{low} must not exceed {high}"})
    if rules.get("pattern"):
        try:
            re.compile(rules["pattern"])
        except re.error as e:
            errors.append({"field": "validation.pattern", "message": f"invalid pattern: {e}"})

    if errors:
        raise ValidationError("Invalid question", errors)
    return {"text": text, "type": spec.type, "required": spec.required, "options": options, "validation": rules}


class QuestionStore:
    """Ordered questions belonging to a template; structural edits only in draft."""

    def __init__(self, db: Session):
        self.db = db

    def _draft_template(self, template_id: int) -> SurveyTemplate:
        t = self.db.get(SurveyTemplate, template_id)
        if not t:
            raise NotFoundError("Template not found", [{"field": "template_id", "message": str(template_id)}])
        if t.status != "draft":
            raise InvalidStateError(
                f"Template is {t.status}; questions can only change while draft",
                [{"field": "template_id", "message": str(template_id)}],
            )
        return t

    def get(self, question_id: int) -> Question:
        q = self.db.get(Question, question_id)
        if not q:
            raise NotFoundError("Question not found", [{"question_id": question_id, "message": "not found"}])
        return q

    def list(self, template_id: int) -> list[Question]:
        if not self.db.get(SurveyTemplate, template_id):
            raise NotFoundError("Template not found", [{"field": "template_id", "message": str(template_id)}])
        return self.db.execute(
            select(Question).where(Question.template_id == template_id).order_by(Question.order_index)
        ).scalars().all()

    def create(self, template_id: int, spec) -> Question:
        """Append a question to a draft template.

        The canonical empty question for ``spec.type`` is the starting point;
        fields the caller set explicitly override it.
        """
        self._draft_template(template_id)
        base = create_empty_question(spec.type).model_dump()
        base.update(spec.model_dump(exclude_unset=True))
        values = _check_spec(question_spec_adapter.validate_python(base))

        last = self.db.execute(
            select(func.max(Question.order_index)).where(Question.template_id == template_id)
        ).scalar_one()
        row = Question(template_id=template_id, order_index=0 if last is None else last + 1, **values)
        self.db.add(row)
        self.db.commit()
        logger.info("Added question %s to template %s", row.id, template_id)
        return row

    def update(self, question_id: int, spec) -> Question:
        row = self.get(question_id)
        self._draft_template(row.template_id)
        for k, v in _check_spec(spec).items():
            setattr(row, k, v)
        self.db.commit()
        return row

    def reorder(self, template_id: int, ordered_ids: list[int]) -> list[Question]:
        self._draft_template(template_id)
        qs = self.list(template_id)
        current = {q.id: q for q in qs}
        if len(ordered_ids) != len(current) or set(ordered_ids) != set(current):
            raise ValidationError(
                "Order must list every question of the template exactly once",
                [{"field": "question_ids", "message": f"expected {sorted(current)}"}],
            )
        for idx, qid in enumerate(ordered_ids):
            current[qid].order_index = idx
        self.db.commit()
        return [current[qid] for qid in ordered_ids]

    def delete(self, question_id: int) -> None:
        row = self.get(question_id)
        template_id = row.template_id
        self._draft_template(template_id)
        self.db.delete(row)
        self.db.flush()
        # compact order_index so the remaining order stays contiguous
        remaining = self.db.execute(
            select(Question).where(Question.template_id == template_id).order_by(Question.order_index)
        ).scalars().all()
        for idx, q in enumerate(remaining):
            q.order_index = idx
        self.db.commit()
        logger.info("Deleted question %s from template %s", question_id, template_id)
