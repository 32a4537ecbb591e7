from __future__ import annotations
import logging
from sqlalchemy import select, delete as sql_delete
from sqlalchemy.orm import Session

from db import utcnow
from exceptions import ConflictError, InvalidStateError, NotFoundError, ValidationError
from models import AnalyticsCache, Distribution, SurveyTemplate, TEMPLATE_STATUSES
from question_store import QuestionStore

logger = logging.getLogger(__name__)

# fields that change the question set; locked once a template leaves draft
STRUCTURAL_FIELDS = ("question_order",)


class TemplateStore:
    """Survey templates and their draft -> active -> closed lifecycle."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, title: str, description: str | None = None) -> SurveyTemplate:
        title = (title or "").strip()
        if not title:
            raise ValidationError("Title is required", [{"field": "title", "message": "must not be blank"}])
        row = SurveyTemplate(title=title, description=(description or "").strip() or None, status="draft")
        self.db.add(row)
        self.db.commit()
        logger.info("Created template %s (%s)", row.id, title)
        return row

    def get(self, template_id: int) -> SurveyTemplate:
        row = self.db.get(SurveyTemplate, template_id)
        if not row:
            raise NotFoundError("Template not found", [{"field": "template_id", "message": str(template_id)}])
        return row

    def list(self, status: str | None = None) -> list[SurveyTemplate]:
        if status is not None and status not in TEMPLATE_STATUSES:
            raise ValidationError("Unknown status", [{"field": "status", "message": f"must be one of {TEMPLATE_STATUSES}"}])
        q = select(SurveyTemplate).order_by(SurveyTemplate.id)
        if status:
            q = q.where(SurveyTemplate.status == status)
        return self.db.execute(q).scalars().all()

    def update(self, template_id: int, fields: dict) -> SurveyTemplate:
        """Apply ``fields`` to a template.

        Title and description may change in any state. Structural fields
        (the question order) are only accepted while the template is draft.
        """
        row = self.get(template_id)
        touched = [f for f in STRUCTURAL_FIELDS if fields.get(f) is not None]
        if touched and row.status != "draft":
            raise InvalidStateError(
                f"Template is {row.status}; structural fields are locked",
                [{"field": f, "message": "locked outside draft"} for f in touched],
            )

        if "title" in fields and fields["title"] is not None:
            title = fields["title"].strip()
            if not title:
                raise ValidationError("Title is required", [{"field": "title", "message": "must not be blank"}])
            row.title = title
        if "description" in fields:
            row.description = (fields["description"] or "").strip() or None

        if fields.get("question_order") is not None:
            QuestionStore(self.db).reorder(template_id, fields["question_order"])
        self.db.commit()
        return row

    def activate(self, template_id: int) -> SurveyTemplate:
        row = self.get(template_id)
        if row.status == "active":
            return row
        if row.status != "draft":
            raise InvalidStateError(f"Template is {row.status}; only drafts can be activated")
        if not row.questions:
            raise InvalidStateError("Template has no questions", [{"field": "questions", "message": "empty"}])
        row.status = "active"
        self.db.commit()
        logger.info("Template %s activated", template_id)
        return row

    def close(self, template_id: int) -> SurveyTemplate:
        """Close an active template together with its open distributions."""
        row = self.get(template_id)
        if row.status == "closed":
            return row
        if row.status != "active":
            raise InvalidStateError(f"Template is {row.status}; only active templates can be closed")
        now = utcnow()
        closed_ids = []
        for d in row.distributions:
            if d.status != "closed":
                d.status = "closed"
                d.closed_at = now
                closed_ids.append(d.id)
        if closed_ids:
            self.db.execute(sql_delete(AnalyticsCache).where(AnalyticsCache.distribution_id.in_(closed_ids)))
        row.status = "closed"
        self.db.commit()
        logger.info("Template %s closed (%d distributions closed with it)", template_id, len(closed_ids))
        return row

    def delete(self, template_id: int) -> None:
        """Hard-delete a template with its questions (via FKs).

        Refused while any distribution of the template is still open.
        """
        row = self.get(template_id)
        blocking = self.db.execute(
            select(Distribution.id).where(Distribution.template_id == template_id, Distribution.status != "closed")
        ).scalars().all()
        if blocking:
            raise ConflictError(
                "Template has distributions that are not closed",
                [{"field": "distribution_id", "message": str(d)} for d in blocking],
            )
        self.db.delete(row)
        self.db.commit()
        logger.info("Deleted template %s", template_id)
