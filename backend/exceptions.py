class SurveyError(Exception):
    """Base class for domain errors raised by the survey stores.

    ``details`` is a list of dicts, each naming the offending entity or
    field (``question_id``, ``field``) together with a ``message``.
    """

    error_code = "survey_error"

    def __init__(self, message: str, details: list[dict] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or []


class NotFoundError(SurveyError):
    error_code = "not_found"


class InvalidStateError(SurveyError):
    error_code = "invalid_state"


class ValidationError(SurveyError):
    error_code = "validation_error"

    @property
    def question_ids(self) -> list[int]:
        return [d["question_id"] for d in self.details if d.get("question_id") is not None]


class ConflictError(SurveyError):
    error_code = "conflict"
