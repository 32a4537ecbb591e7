# Bulk entry of paper survey answers from a spreadsheet
from __future__ import annotations
import io
import logging
import re
from pathlib import Path

import pandas as pd

from db import utcnow
from exceptions import InvalidStateError, ValidationError
from models import Distribution, Question
from response_collector import ResponseCollector

logger = logging.getLogger(__name__)

# first cell of the header row; rows above it are instructions
STUDENT_ID_HEADERS = ("Öğrenci No", "Student No", "student_id")

# "3. How do you feel?" maps to the third question
_NUMBERED_HEADER = re.compile(r"^\s*(\d+)\s*[.)]")

# multiple-choice cells list their selections like the CSV export does
SELECTION_SEPARATOR = ";"

SHEET_EXTENSIONS = (".xlsx", ".xls")


def read_sheet(content: bytes, filename: str | None) -> pd.DataFrame:
    """Load the first sheet (or a CSV file) as a frame of raw string cells."""
    ext = Path(filename or "").suffix.lower()
    if ext not in SHEET_EXTENSIONS + (".csv",):
        raise ValidationError(
            f"Unsupported file type: {ext or 'none'}",
            [{"field": "file", "message": "expected .xlsx, .xls or .csv"}],
        )
    buffer = io.BytesIO(content)
    try:
        if ext == ".csv":
            frame = pd.read_csv(buffer, header=None, dtype=str, encoding="utf-8-sig", skip_blank_lines=False)
        else:
            frame = pd.read_excel(buffer, header=None, dtype=str)
    except (ValueError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise ValidationError("Could not read the uploaded file", [{"field": "file", "message": str(e)}])
    return frame.fillna("")


def _find_header(rows: list[list[str]]) -> int:
    for idx, row in enumerate(rows):
        first = row[0].strip() if row else ""
        if any(h in first for h in STUDENT_ID_HEADERS):
            return idx
    raise ValidationError(
        "Header row not found",
        [{"field": "file", "message": f"a row starting with '{STUDENT_ID_HEADERS[0]}' is required"}],
    )


def map_columns(headers: list[str], questions: list[Question]) -> dict[int, Question]:
    """Match header cells to questions by number ("2. ...") or by exact text."""
    by_text = {q.text.strip().casefold(): q for q in questions}
    mapping = {}
    for col, header in enumerate(headers):
        header = header.strip()
        m = _NUMBERED_HEADER.match(header)
        if m and 1 <= int(m.group(1)) <= len(questions):
            mapping[col] = questions[int(m.group(1)) - 1]
        elif header.casefold() in by_text:
            mapping[col] = by_text[header.casefold()]
    return mapping


def cell_value(question: Question, cell: str):
    cell = cell.strip()
    if not cell:
        return None
    if question.type == "MULTIPLE_CHOICE":
        return [part.strip() for part in cell.split(SELECTION_SEPARATOR) if part.strip()]
    return cell


def _describe(exc: ValidationError, questions: list[Question]) -> str:
    number = {q.id: i for i, q in enumerate(questions, 1)}
    parts = []
    for d in exc.details:
        if d.get("question_id") in number:
            parts.append(f"question {number[d['question_id']]}: {d['message']}")
        else:
            parts.append(f"{d.get('field', 'row')}: {d['message']}")
    return "; ".join(parts) or exc.message


def import_responses(collector: ResponseCollector, distribution: Distribution, frame: pd.DataFrame) -> dict:
    """Submit one MANUAL_ENTRY response per data row of ``frame``.

    Each row goes through the same validation as an online submission and is
    committed on its own; rejected rows are reported with their spreadsheet
    row number and do not stop the import.
    """
    if not distribution.accepts_responses(utcnow()):
        reason = "distribution closed" if distribution.status == "closed" else "distribution is outside its response window"
        raise InvalidStateError(reason, [{"field": "distribution_id", "message": str(distribution.id)}])

    questions = sorted(distribution.template.questions, key=lambda q: q.order_index)
    rows = [[str(c) for c in r] for r in frame.itertuples(index=False, name=None)]
    header_idx = _find_header(rows)
    columns = map_columns(rows[header_idx], questions)
    if not columns:
        raise ValidationError("No question columns found", [{"field": "file", "message": "headers match no question"}])

    total = 0
    errors = []
    imported = []
    for offset, row in enumerate(rows[header_idx + 1:]):
        line = header_idx + offset + 2
        if not any(c.strip() for c in row):
            continue
        total += 1
        student_id = row[0].strip()
        if not student_id:
            errors.append({"row": line, "student_id": None, "error": "student id missing"})
            continue
        answers = [
            {"question_id": q.id, "value": cell_value(q, row[col])}
            for col, q in columns.items() if col < len(row)
        ]
        try:
            response = collector.submit(distribution.id, answers, student_id=student_id,
                                        submission_type="MANUAL_ENTRY")
        except ValidationError as e:
            errors.append({"row": line, "student_id": student_id, "error": _describe(e, questions)})
            continue
        except InvalidStateError as e:
            errors.append({"row": line, "student_id": student_id, "error": e.message})
            continue
        imported.append(response.id)

    logger.info("Imported %d of %d rows into distribution %s", len(imported), total, distribution.id)
    return {
        "total_rows": total,
        "success_count": len(imported),
        "error_count": len(errors),
        "errors": errors,
        "response_ids": imported,
    }
