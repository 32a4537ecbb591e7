import logging
from typing import Optional
from fastapi import FastAPI, Depends, Request, Response, UploadFile, File
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

import pandas as pd

from config import ORIGINS, setup_logging
from db import Base, engine, get_db, utcnow
from exceptions import SurveyError, NotFoundError, InvalidStateError, ValidationError, ConflictError
from models import Question
from schemas import *
from security import verify_admin
from template_store import TemplateStore
from question_store import QuestionStore, create_empty_question
from distribution_manager import DistributionManager
from response_collector import ResponseCollector
from analytics_aggregator import AnalyticsAggregator
from response_import import read_sheet, import_responses
from text_insights import analyze_open_answers

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Survey Service API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Base.metadata.create_all(bind=engine)

# ------------------------
# Error mapping
# ------------------------
_STATUS_BY_ERROR = {
    NotFoundError: 404,
    InvalidStateError: 409,
    ConflictError: 409,
    ValidationError: 400,
}

@app.exception_handler(SurveyError)
async def survey_error_handler(request: Request, exc: SurveyError):
    status = _STATUS_BY_ERROR.get(type(exc), 400)
    logger.info("%s %s -> %s %s", request.method, request.url.path, status, exc.message)
    return JSONResponse(
        status_code=status,
        content={"error_code": exc.error_code, "message": exc.message, "details": exc.details},
    )

# ------------------------
# Store providers (one per request, sharing the request's session)
# ------------------------
def get_templates(db: Session = Depends(get_db)) -> TemplateStore:
    return TemplateStore(db)

def get_questions(db: Session = Depends(get_db)) -> QuestionStore:
    return QuestionStore(db)

def get_distributions(db: Session = Depends(get_db)) -> DistributionManager:
    return DistributionManager(db)

def get_responses(db: Session = Depends(get_db)) -> ResponseCollector:
    return ResponseCollector(db)

def get_analytics(db: Session = Depends(get_db)) -> AnalyticsAggregator:
    return AnalyticsAggregator(db)


@app.get("/health")
def health():
    """Basic readiness probe.

    Returns:
        dict: {"ok": True}
    """
    return {"ok": True}

# ------------------------
# Admin: templates
# ------------------------
@app.post("/admin/templates", dependencies=[Depends(verify_admin)])
def create_template(payload: TemplateCreate, store: TemplateStore = Depends(get_templates)):
    """Create a new draft template.

    Args:
        payload (TemplateCreate): Title (required) and description.

    Returns:
        TemplateOut: The stored template in draft state.
    """
    row = store.create(payload.title, payload.description)
    return TemplateOut.model_validate(row)

@app.get("/admin/templates", dependencies=[Depends(verify_admin)])
def list_templates(status: Optional[str] = None, store: TemplateStore = Depends(get_templates)):
    """List templates, optionally filtered by status (draft/active/closed)."""
    return [TemplateOut.model_validate(t) for t in store.list(status)]

@app.get("/admin/templates/{template_id}", dependencies=[Depends(verify_admin)])
def get_template(template_id: int, store: TemplateStore = Depends(get_templates)):
    """Get a template with its ordered questions.

    Raises:
        NotFoundError: 404 if template not found.
    """
    return TemplateDetail.model_validate(store.get(template_id))

@app.patch("/admin/templates/{template_id}", dependencies=[Depends(verify_admin)])
def update_template(template_id: int, payload: TemplateUpdate, store: TemplateStore = Depends(get_templates)):
    """Update title/description, or the question order while draft.

    Args:
        template_id (int): Template ID.
        payload (TemplateUpdate): Fields to change; unset fields are untouched.

    Returns:
        TemplateDetail: Updated template with questions.

    Raises:
        NotFoundError: 404 if template not found.
        InvalidStateError: 409 if the question order is touched outside draft.
    """
    row = store.update(template_id, payload.model_dump(exclude_unset=True))
    return TemplateDetail.model_validate(row)

@app.post("/admin/templates/{template_id}/activate", dependencies=[Depends(verify_admin)])
def activate_template(template_id: int, store: TemplateStore = Depends(get_templates)):
    return TemplateOut.model_validate(store.activate(template_id))

@app.post("/admin/templates/{template_id}/close", dependencies=[Depends(verify_admin)])
def close_template(template_id: int, store: TemplateStore = Depends(get_templates)):
    return TemplateOut.model_validate(store.close(template_id))

@app.delete("/admin/templates/{template_id}", dependencies=[Depends(verify_admin)])
def delete_template(template_id: int, store: TemplateStore = Depends(get_templates)):
    """Hard-delete a template and its questions (via FKs).

    Returns:
        dict: {"ok": True}

    Raises:
        NotFoundError: 404 if template not found.
        ConflictError: 409 while any of its distributions is not closed.
    """
    store.delete(template_id)
    return {"ok": True}

# ------------------------
# Admin: questions
# ------------------------
@app.get("/admin/question-types/{question_type}/empty", dependencies=[Depends(verify_admin)])
def empty_question(question_type: str):
    """Default-shaped question for the editor's "add question" action."""
    return create_empty_question(question_type).model_dump()

@app.get("/admin/templates/{template_id}/questions", dependencies=[Depends(verify_admin)])
def list_questions(template_id: int, store: QuestionStore = Depends(get_questions)):
    return [QuestionOut.model_validate(q) for q in store.list(template_id)]

@app.post("/admin/templates/{template_id}/questions", dependencies=[Depends(verify_admin)])
def add_question(template_id: int, spec: QuestionPayload, store: QuestionStore = Depends(get_questions)):
    """Append a question to a draft template.

    Args:
        template_id (int): Template ID.
        spec (QuestionPayload): Question variant chosen by its ``type``.

    Returns:
        QuestionOut: The stored question.

    Raises:
        NotFoundError: 404 if template not found.
        InvalidStateError: 409 if template is not draft.
        ValidationError: 400 for blank text or unusable options.
    """
    return QuestionOut.model_validate(store.create(template_id, spec))

@app.put("/admin/templates/{template_id}/questions/order", dependencies=[Depends(verify_admin)])
def reorder_questions(template_id: int, body: QuestionOrder, store: QuestionStore = Depends(get_questions)):
    """Reorder all questions of a draft template.

    Returns:
        list[QuestionOut]: Questions in their new order.
    """
    return [QuestionOut.model_validate(q) for q in store.reorder(template_id, body.question_ids)]

@app.put("/admin/questions/{question_id}", dependencies=[Depends(verify_admin)])
def update_question(question_id: int, spec: QuestionPayload, store: QuestionStore = Depends(get_questions)):
    return QuestionOut.model_validate(store.update(question_id, spec))

@app.delete("/admin/questions/{question_id}", dependencies=[Depends(verify_admin)])
def delete_question(question_id: int, store: QuestionStore = Depends(get_questions)):
    """Delete a question from a draft template.

    Returns:
        dict: {"ok": True}
    """
    store.delete(question_id)
    return {"ok": True}

# ------------------------
# Admin: distributions
# ------------------------
@app.post("/admin/distributions", dependencies=[Depends(verify_admin)])
def create_distribution(payload: DistributionCreate, manager: DistributionManager = Depends(get_distributions)):
    """Issue a shareable distribution link for an active template.

    Args:
        payload (DistributionCreate): Template, target scope and response window.

    Returns:
        dict: Distribution fields plus "url" for the public form.

    Raises:
        NotFoundError: 404 if template not found.
        InvalidStateError: 409 if template is not active.
    """
    row = manager.create(
        payload.template_id,
        scope={
            "target_classes": payload.target_classes,
            "target_students": payload.target_students,
            "allow_anonymous": payload.allow_anonymous,
            "max_responses": payload.max_responses,
        },
        window={"opens_at": payload.opens_at, "closes_at": payload.closes_at},
        title=payload.title,
        description=payload.description,
    )
    out = DistributionOut.model_validate(row).model_dump()
    out["url"] = f"/take/{row.token}"
    return out

@app.get("/admin/distributions", dependencies=[Depends(verify_admin)])
def list_distributions(template_id: Optional[int] = None, status: Optional[str] = None,
                       manager: DistributionManager = Depends(get_distributions)):
    return [DistributionOut.model_validate(d) for d in manager.list(template_id, status)]

@app.get("/admin/distributions/{distribution_id}", dependencies=[Depends(verify_admin)])
def get_distribution(distribution_id: int, manager: DistributionManager = Depends(get_distributions),
                     collector: ResponseCollector = Depends(get_responses)):
    """Distribution detail with its current response count."""
    row = manager.get(distribution_id)
    out = DistributionOut.model_validate(row).model_dump()
    out["response_count"] = collector.count(row.id)
    out["accepting_responses"] = row.accepts_responses(utcnow())
    return out

@app.patch("/admin/distributions/{distribution_id}", dependencies=[Depends(verify_admin)])
def update_distribution(distribution_id: int, payload: DistributionUpdate,
                        manager: DistributionManager = Depends(get_distributions)):
    return DistributionOut.model_validate(manager.update(distribution_id, payload.model_dump(exclude_unset=True)))

@app.post("/admin/distributions/{distribution_id}/close", dependencies=[Depends(verify_admin)])
def close_distribution(distribution_id: int, manager: DistributionManager = Depends(get_distributions)):
    """Stop accepting responses (idempotent).

    Returns:
        DistributionOut: The closed distribution.
    """
    return DistributionOut.model_validate(manager.close(distribution_id))

@app.delete("/admin/distributions/{distribution_id}", dependencies=[Depends(verify_admin)])
def delete_distribution(distribution_id: int, manager: DistributionManager = Depends(get_distributions)):
    manager.delete(distribution_id)
    return {"ok": True}

# ------------------------
# Admin: responses
# ------------------------
@app.get("/admin/distributions/{distribution_id}/responses", dependencies=[Depends(verify_admin)])
def list_distribution_responses(distribution_id: int, student_id: Optional[str] = None,
                                manager: DistributionManager = Depends(get_distributions),
                                collector: ResponseCollector = Depends(get_responses)):
    manager.get(distribution_id)
    return [ResponseOut.model_validate(r) for r in collector.list(distribution_id, student_id)]

@app.post("/admin/distributions/{distribution_id}/responses", dependencies=[Depends(verify_admin)])
def enter_response(distribution_id: int, payload: ResponseSubmit, collector: ResponseCollector = Depends(get_responses)):
    """Record a response on a student's behalf (e.g. from a paper form).

    Same validation as the public submission; stored as MANUAL_ENTRY.
    """
    row = collector.submit(distribution_id, [a.model_dump() for a in payload.answers],
                           student_id=payload.student_id, submission_type="MANUAL_ENTRY")
    return ResponseOut.model_validate(row)

@app.post("/admin/distributions/{distribution_id}/responses/import", dependencies=[Depends(verify_admin)])
def import_distribution_responses(distribution_id: int, file: UploadFile = File(...),
                                  manager: DistributionManager = Depends(get_distributions),
                                  collector: ResponseCollector = Depends(get_responses)):
    """Import paper responses from a spreadsheet (.xlsx/.xls/.csv).

    The header row starts with the student number column; question columns are
    matched by number ("1. ...") or by question text. Multiple-choice cells
    separate selections with ";".

    Args:
        distribution_id (int): Distribution PK.
        file (UploadFile): Spreadsheet upload.

    Returns:
        dict: {total_rows, success_count, error_count, errors[{row, student_id, error}], response_ids}

    Raises:
        NotFoundError: 404 if distribution not found.
        InvalidStateError: 409 if the distribution no longer accepts responses.
        ValidationError: 400 if the file cannot be read or has no header row.
    """
    d = manager.get(distribution_id)
    frame = read_sheet(file.file.read(), file.filename)
    return import_responses(collector, d, frame)

@app.get("/admin/responses/{response_id}", dependencies=[Depends(verify_admin)])
def get_response(response_id: int, collector: ResponseCollector = Depends(get_responses)):
    return ResponseOut.model_validate(collector.get(response_id))

@app.put("/admin/responses/{response_id}", dependencies=[Depends(verify_admin)])
def update_response(response_id: int, payload: ResponseUpdate, collector: ResponseCollector = Depends(get_responses)):
    """Replace a response's answers while its distribution is still open.

    Raises:
        NotFoundError: 404 if response not found.
        InvalidStateError: 409 if the distribution no longer accepts responses.
        ValidationError: 400 if the new answers are rejected.
    """
    row = collector.update(response_id, [a.model_dump() for a in payload.answers])
    return ResponseOut.model_validate(row)

@app.delete("/admin/responses/{response_id}", dependencies=[Depends(verify_admin)])
def delete_response(response_id: int, collector: ResponseCollector = Depends(get_responses)):
    """Retract a response; allowed even after the distribution is closed.

    Returns:
        dict: {"ok": True}
    """
    collector.delete(response_id)
    return {"ok": True}

# ------------------------
# Admin: analytics / export
# ------------------------
@app.get("/admin/distributions/{distribution_id}/summary", dependencies=[Depends(verify_admin)])
def distribution_summary(distribution_id: int, fresh: bool = False,
                         aggregator: AnalyticsAggregator = Depends(get_analytics)):
    """Aggregated statistics for a distribution.

    Args:
        distribution_id (int): Distribution ID.
        fresh (bool): Bypass the analytics cache.

    Returns:
        dict: Counts, completion rate and per-question stats.

    Raises:
        NotFoundError: 404 if distribution not found.
    """
    return aggregator.summarize(distribution_id, use_cache=not fresh)

@app.get("/admin/distributions/{distribution_id}/insights", dependencies=[Depends(verify_admin)])
def distribution_insights(distribution_id: int, aggregator: AnalyticsAggregator = Depends(get_analytics)):
    """Sentiment overview of the free-text answers, per open-ended question.

    Returns:
        list[dict]: [{question_id, text, answer_count, analysis{...}}]
    """
    out = []
    for group in aggregator.open_ended_answers(distribution_id):
        out.append({
            "question_id": group["question_id"],
            "text": group["text"],
            "answer_count": len(group["answers"]),
            "analysis": analyze_open_answers(group["text"], group["answers"]),
        })
    return out

EXPORT_COLUMNS = ["response_id", "student_id", "submission_type", "submitted_at",
                  "order_index", "question_id", "question", "type", "value"]

def _export_value(value) -> str:
    if isinstance(value, list):
        return "; ".join(str(v) for v in value)
    return "" if value is None else str(value)

@app.get("/admin/distributions/{distribution_id}/export.csv", dependencies=[Depends(verify_admin)])
def export_csv(distribution_id: int, db: Session = Depends(get_db),
               collector: ResponseCollector = Depends(get_responses),
               manager: DistributionManager = Depends(get_distributions)):
    """Export a distribution's answers as CSV (sorted by response, then question order).

    Args:
        distribution_id (int): Distribution PK.

    Returns:
        Response: text/csv attachment `distribution_<id>_responses.csv`.
    """
    d = manager.get(distribution_id)
    questions = {
        q.id: q for q in db.execute(select(Question).where(Question.template_id == d.template_id)).scalars()
    }
    rows = []
    for r in sorted(collector.list(distribution_id), key=lambda r: r.id):
        for a in r.answers:
            q = questions.get(a.question_id)
            rows.append({
                "response_id": r.id,
                "student_id": r.student_id,
                "submission_type": r.submission_type,
                "submitted_at": r.submitted_at,
                "order_index": q.order_index if q else None,
                "question_id": a.question_id,
                "question": q.text if q else None,
                "type": q.type if q else None,
                "value": _export_value(a.value),
            })
    df = pd.DataFrame(rows, columns=EXPORT_COLUMNS)
    df = df.sort_values(["response_id", "order_index"], kind="stable")
    csv_bytes = df.to_csv(index=False).encode("utf-8")
    return Response(content=csv_bytes, media_type="text/csv",
                    headers={"Content-Disposition": f"attachment; filename=distribution_{distribution_id}_responses.csv"})

# ------------------------
# Public: resolve link and submit
# ------------------------
@app.get("/public/distributions/{token}", response_model=PublicDistribution)
def load_public_distribution(token: str, manager: DistributionManager = Depends(get_distributions)):
    """Resolve a link token to the survey content for respondents.

    Includes whether the distribution currently accepts responses so the UI
    can render a read-only view.

    Args:
        token (str): Shareable token.

    Returns:
        PublicDistribution: {distribution, template, questions}

    Raises:
        NotFoundError: 404 if token unknown.
    """
    d = manager.resolve_by_link(token)
    t = d.template
    return {
        "distribution": {
            "id": d.id,
            "title": d.title,
            "description": d.description,
            "status": d.status,
            "allow_anonymous": d.allow_anonymous,
            "closes_at": d.closes_at,
            "accepting_responses": d.accepts_responses(utcnow()),
        },
        "template": {"id": t.id, "title": t.title, "description": t.description},
        "questions": [PublicQuestionOut.model_validate(q) for q in t.questions],
    }

@app.post("/public/distributions/{token}/responses")
def submit_public_response(token: str, payload: ResponseSubmit,
                           manager: DistributionManager = Depends(get_distributions),
                           collector: ResponseCollector = Depends(get_responses)):
    """Submit a complete response through a public link.

    Args:
        token (str): Shareable token.
        payload (ResponseSubmit): {student_id?, answers[{question_id, value}]}

    Returns:
        dict: {"id": int, "submitted_at": datetime}

    Raises:
        NotFoundError: 404 if token unknown.
        InvalidStateError: 409 if the distribution is closed or full.
        ValidationError: 400 listing every rejected question.
    """
    d = manager.resolve_by_link(token)
    row = collector.submit(d.id, [a.model_dump() for a in payload.answers], student_id=payload.student_id)
    return {"id": row.id, "submitted_at": row.submitted_at}
