# schemas.py
from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter, field_validator

CHOICE_TYPES = ("SINGLE_CHOICE", "MULTIPLE_CHOICE", "DROPDOWN")
SCALE_TYPES = ("LIKERT", "RATING")
QUESTION_TYPES = ("OPEN_ENDED",) + CHOICE_TYPES + SCALE_TYPES

# ------------------------
# Question variants, dispatched on `type`
# ------------------------
class TextValidation(BaseModel):
    min_length: Optional[int] = Field(default=None, ge=0)
    max_length: Optional[int] = Field(default=None, ge=0)
    pattern: Optional[str] = None

class ChoiceValidation(BaseModel):
    min_selections: Optional[int] = Field(default=None, ge=0)
    max_selections: Optional[int] = Field(default=None, ge=1)

class ScaleValidation(BaseModel):
    min_value: Optional[float] = None
    max_value: Optional[float] = None

class _QuestionBase(BaseModel):
    text: str = ""
    required: bool = False
    options: Optional[List[str]] = None

    @field_validator("options")
    @classmethod
    def options_only_for_choices(cls, v):
        # non-choice variants never carry options
        return None

class OpenEndedQuestion(_QuestionBase):
    type: Literal["OPEN_ENDED"] = "OPEN_ENDED"
    validation: TextValidation = Field(default_factory=TextValidation)

class ChoiceQuestion(_QuestionBase):
    type: Literal["SINGLE_CHOICE", "MULTIPLE_CHOICE", "DROPDOWN"]
    options: List[str] = Field(default_factory=lambda: [""])
    validation: ChoiceValidation = Field(default_factory=ChoiceValidation)

    @field_validator("options")
    @classmethod
    def options_only_for_choices(cls, v):
        return v

class ScaleQuestion(_QuestionBase):
    type: Literal["LIKERT", "RATING"]
    validation: ScaleValidation = Field(default_factory=ScaleValidation)

QuestionPayload = Union[OpenEndedQuestion, ChoiceQuestion, ScaleQuestion]
QuestionSpec = Annotated[QuestionPayload, Field(discriminator="type")]
question_spec_adapter = TypeAdapter(QuestionSpec)

# ------------------------
# Templates
# ------------------------
class TemplateCreate(BaseModel):
    title: str
    description: Optional[str] = None

class TemplateUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    question_order: Optional[List[int]] = None   # structural, draft only

class QuestionOut(BaseModel):
    id: int
    template_id: int
    order_index: int
    text: str
    type: str
    required: bool
    options: Optional[List[str]] = None
    validation: dict = {}
    class Config:
        from_attributes = True

class TemplateOut(BaseModel):
    id: int
    title: str
    description: Optional[str]
    status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    class Config:
        from_attributes = True

class TemplateDetail(TemplateOut):
    questions: List[QuestionOut] = []

class QuestionOrder(BaseModel):
    question_ids: List[int]

# ------------------------
# Distributions
# ------------------------
class DistributionCreate(BaseModel):
    template_id: int
    title: Optional[str] = None
    description: Optional[str] = None
    target_classes: List[str] = []
    target_students: List[str] = []
    allow_anonymous: bool = True
    max_responses: Optional[int] = Field(default=None, ge=1)
    opens_at: Optional[datetime] = None
    closes_at: Optional[datetime] = None

class DistributionUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    max_responses: Optional[int] = Field(default=None, ge=1)
    opens_at: Optional[datetime] = None
    closes_at: Optional[datetime] = None

class DistributionOut(BaseModel):
    id: int
    template_id: int
    title: str
    description: Optional[str]
    token: str
    target_classes: List[str] = []
    target_students: List[str] = []
    allow_anonymous: bool
    max_responses: Optional[int]
    opens_at: Optional[datetime]
    closes_at: Optional[datetime]
    status: str
    created_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    class Config:
        from_attributes = True

class PublicQuestionOut(BaseModel):
    id: int
    order_index: int
    text: str
    type: str
    required: bool
    options: Optional[List[str]] = None
    validation: dict = {}
    class Config:
        from_attributes = True

class PublicDistribution(BaseModel):
    distribution: dict
    template: dict
    questions: List[PublicQuestionOut]

# ------------------------
# Responses
# ------------------------
class AnswerIn(BaseModel):
    question_id: int
    value: Any = None

class ResponseSubmit(BaseModel):
    student_id: Optional[str] = None
    answers: List[AnswerIn]

class ResponseUpdate(BaseModel):
    answers: List[AnswerIn]

class AnswerOut(BaseModel):
    question_id: int
    value: Any = None
    class Config:
        from_attributes = True

class ResponseOut(BaseModel):
    id: int
    distribution_id: int
    student_id: Optional[str]
    submission_type: str
    submitted_at: Optional[datetime]
    updated_at: Optional[datetime] = None
    answers: List[AnswerOut] = []
    class Config:
        from_attributes = True
