from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Boolean, JSON
from sqlalchemy.orm import relationship
from db import Base, utcnow

TEMPLATE_STATUSES = ("draft", "active", "closed")
DISTRIBUTION_STATUSES = ("open", "closed")


class SurveyTemplate(Base):
    __tablename__ = "survey_templates"
    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="draft", index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    questions = relationship(
        "Question", back_populates="template", cascade="all, delete-orphan",
        passive_deletes=True, order_by="Question.order_index",
    )
    distributions = relationship(
        "Distribution", back_populates="template", cascade="all, delete-orphan", passive_deletes=True,
    )


class Question(Base):
    __tablename__ = "survey_questions"
    id = Column(Integer, primary_key=True, index=True)
    template_id = Column(Integer, ForeignKey("survey_templates.id", ondelete="CASCADE"), index=True, nullable=False)
    order_index = Column(Integer, nullable=False, default=0)
    text = Column(Text, nullable=False)
    type = Column(String(50), nullable=False, default="OPEN_ENDED")
    required = Column(Boolean, nullable=False, default=False)
    options = Column(JSON, nullable=True)
    validation = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow)
    template = relationship("SurveyTemplate", back_populates="questions")


class Distribution(Base):
    __tablename__ = "survey_distributions"
    id = Column(Integer, primary_key=True, index=True)
    template_id = Column(Integer, ForeignKey("survey_templates.id", ondelete="CASCADE"), index=True, nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    token = Column(String(64), unique=True, index=True, nullable=False)
    target_classes = Column(JSON, nullable=False, default=list)
    target_students = Column(JSON, nullable=False, default=list)
    allow_anonymous = Column(Boolean, nullable=False, default=True)
    max_responses = Column(Integer, nullable=True)
    opens_at = Column(DateTime, nullable=False, default=utcnow)
    closes_at = Column(DateTime, nullable=True)
    status = Column(String(20), nullable=False, default="open", index=True)
    created_at = Column(DateTime, default=utcnow)
    closed_at = Column(DateTime, nullable=True)
    template = relationship("SurveyTemplate", back_populates="distributions")
    responses = relationship(
        "SurveyResponse", back_populates="distribution", cascade="all, delete-orphan", passive_deletes=True,
    )

    def accepts_responses(self, now) -> bool:
        if self.status != "open":
            return False
        if self.opens_at and now < self.opens_at:
            return False
        if self.closes_at and now >= self.closes_at:
            return False
        return True


class SurveyResponse(Base):
    __tablename__ = "survey_responses"
    id = Column(Integer, primary_key=True, index=True)
    distribution_id = Column(Integer, ForeignKey("survey_distributions.id", ondelete="CASCADE"), index=True, nullable=False)
    student_id = Column(String(64), nullable=True, index=True)
    submission_type = Column(String(20), nullable=False, default="ONLINE")
    submitted_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    distribution = relationship("Distribution", back_populates="responses")
    answers = relationship(
        "Answer", back_populates="response", cascade="all, delete-orphan",
        passive_deletes=True, order_by="Answer.position",
    )


class Answer(Base):
    __tablename__ = "survey_answers"
    id = Column(Integer, primary_key=True, index=True)
    response_id = Column(Integer, ForeignKey("survey_responses.id", ondelete="CASCADE"), index=True, nullable=False)
    question_id = Column(Integer, ForeignKey("survey_questions.id", ondelete="CASCADE"), index=True, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    value = Column(JSON, nullable=True)
    response = relationship("SurveyResponse", back_populates="answers")


class AnalyticsCache(Base):
    __tablename__ = "analytics_cache"
    distribution_id = Column(Integer, ForeignKey("survey_distributions.id", ondelete="CASCADE"), primary_key=True)
    payload = Column(JSON, nullable=False)
    expires_at = Column(DateTime, nullable=False)
