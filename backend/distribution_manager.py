from __future__ import annotations
import logging
import secrets
from sqlalchemy import select, delete as sql_delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import TOKEN_BYTES
from db import utcnow, as_utc
from exceptions import InvalidStateError, NotFoundError, ValidationError
from models import AnalyticsCache, Distribution, SurveyTemplate, DISTRIBUTION_STATUSES

logger = logging.getLogger(__name__)

MAX_TOKEN_ATTEMPTS = 5


def new_link_token() -> str:
    """Opaque URL-safe token for a public distribution link."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def _check_window(opens_at, closes_at):
    if opens_at and closes_at and closes_at <= opens_at:
        raise ValidationError("closes_at must be after opens_at", [{"field": "closes_at", "message": "before opens_at"}])


class DistributionManager:
    """Link-addressable, time-bounded instances of an active template."""

    def __init__(self, db: Session, token_factory=new_link_token):
        self.db = db
        self.token_factory = token_factory

    def get(self, distribution_id: int) -> Distribution:
        row = self.db.get(Distribution, distribution_id)
        if not row:
            raise NotFoundError("Distribution not found", [{"field": "distribution_id", "message": str(distribution_id)}])
        return row

    def list(self, template_id: int | None = None, status: str | None = None) -> list[Distribution]:
        if status is not None and status not in DISTRIBUTION_STATUSES:
            raise ValidationError("Unknown status", [{"field": "status", "message": f"must be one of {DISTRIBUTION_STATUSES}"}])
        q = select(Distribution).order_by(Distribution.created_at.desc(), Distribution.id.desc())
        if template_id is not None:
            q = q.where(Distribution.template_id == template_id)
        if status:
            q = q.where(Distribution.status == status)
        return self.db.execute(q).scalars().all()

    def resolve_by_link(self, token: str) -> Distribution:
        row = self.db.execute(select(Distribution).where(Distribution.token == token)).scalar_one_or_none()
        if not row:
            raise NotFoundError("Link invalid", [{"field": "token", "message": "unknown link"}])
        return row

    def create(self, template_id: int, scope: dict | None = None, window: dict | None = None,
               title: str | None = None, description: str | None = None) -> Distribution:
        """Issue a new distribution for an active template.

        ``scope`` may carry target_classes, target_students, allow_anonymous
        and max_responses; ``window`` carries opens_at / closes_at. A token
        that collides with an existing link is regenerated.
        """
        scope = scope or {}
        window = window or {}
        template = self.db.get(SurveyTemplate, template_id)
        if not template:
            raise NotFoundError("Template not found", [{"field": "template_id", "message": str(template_id)}])
        if template.status != "active":
            raise InvalidStateError(
                f"Template is {template.status}; distributions need an active template",
                [{"field": "template_id", "message": str(template_id)}],
            )

        opens_at = as_utc(window.get("opens_at")) or utcnow()
        closes_at = as_utc(window.get("closes_at"))
        _check_window(opens_at, closes_at)

        for attempt in range(MAX_TOKEN_ATTEMPTS):
            token = self.token_factory()
            row = Distribution(
                template_id=template_id,
                title=(title or "").strip() or template.title,
                description=description,
                token=token,
                target_classes=list(scope.get("target_classes") or []),
                target_students=[str(s) for s in scope.get("target_students") or []],
                allow_anonymous=scope.get("allow_anonymous", True),
                max_responses=scope.get("max_responses"),
                opens_at=opens_at,
                closes_at=closes_at,
                status="open",
            )
            self.db.add(row)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                if not self._token_taken(token):
                    raise
                logger.warning("Link token collision on attempt %d; regenerating", attempt + 1)
                continue
            logger.info("Created distribution %s for template %s", row.id, template_id)
            return row

        raise RuntimeError("Failed to generate a unique link token")

    def update(self, distribution_id: int, fields: dict) -> Distribution:
        row = self.get(distribution_id)
        if row.status == "closed":
            raise InvalidStateError("Distribution closed", [{"field": "distribution_id", "message": str(distribution_id)}])
        opens_at = as_utc(fields.get("opens_at")) or row.opens_at
        # an explicit null removes the end date
        closes_at = as_utc(fields["closes_at"]) if "closes_at" in fields else row.closes_at
        _check_window(opens_at, closes_at)
        row.opens_at, row.closes_at = opens_at, closes_at
        if fields.get("title"):
            row.title = fields["title"].strip() or row.title
        if "description" in fields:
            row.description = fields["description"]
        if "max_responses" in fields:
            row.max_responses = fields["max_responses"]
        self._drop_cache(row.id)
        self.db.commit()
        return row

    def close(self, distribution_id: int) -> Distribution:
        """Stop accepting responses. Closing a closed distribution is a no-op."""
        row = self.get(distribution_id)
        if row.status == "closed":
            return row
        row.status = "closed"
        row.closed_at = utcnow()
        self._drop_cache(row.id)
        self.db.commit()
        logger.info("Closed distribution %s", distribution_id)
        return row

    def delete(self, distribution_id: int) -> None:
        row = self.get(distribution_id)
        if row.status != "closed":
            raise InvalidStateError(
                "Close the distribution before deleting it",
                [{"field": "distribution_id", "message": str(distribution_id)}],
            )
        self.db.delete(row)
        self.db.commit()
        logger.info("Deleted distribution %s", distribution_id)

    def _token_taken(self, token) -> bool:
        if token is None:
            return False
        return self.db.execute(select(Distribution.id).where(Distribution.token == token)).first() is not None

    def _drop_cache(self, distribution_id: int) -> None:
        self.db.execute(sql_delete(AnalyticsCache).where(AnalyticsCache.distribution_id == distribution_id))
