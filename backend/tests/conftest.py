import os, tempfile

# keep the app's import-time create_all away from the working directory
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(tempfile.gettempdir(), 'survey_test_boot.db')}")
os.environ["OPENAI_API_KEY"] = ""

import pytest
from types import SimpleNamespace
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from db import Base, get_db
from security import verify_admin
from schemas import ChoiceQuestion, OpenEndedQuestion, ScaleQuestion, ScaleValidation, TextValidation
from template_store import TemplateStore
from question_store import QuestionStore
from distribution_manager import DistributionManager


def _enable_fk(engine):
    # SQLite force foreign key constraints
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@pytest.fixture(scope="session")
def tmp_db_path():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    return path

@pytest.fixture(scope="session")
def test_engine(tmp_db_path):
    url = f"sqlite:///{tmp_db_path}"
    engine = create_engine(url, connect_args={"check_same_thread": False})
    _enable_fk(engine)
    Base.metadata.create_all(bind=engine)
    return engine

@pytest.fixture(scope="session")
def TestingSessionLocal(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

@pytest.fixture(scope="session", autouse=True)
def override_di(TestingSessionLocal):
    def _get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()
    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[verify_admin] = lambda: None

@pytest.fixture
def client():
    return TestClient(app)

@pytest.fixture
def db():
    """Fresh in-memory database per test, for store-level tests."""
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    _enable_fk(engine)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()

@pytest.fixture
def active_survey(db):
    """Active template with one question of each kind and an open distribution."""
    templates = TemplateStore(db)
    t = templates.create("Wellbeing check", "Term 1")
    qs = QuestionStore(db)
    mood = qs.create(t.id, ChoiceQuestion(type="SINGLE_CHOICE", text="How do you feel?", required=True,
                                          options=["Good", "Okay", "Bad"]))
    topics = qs.create(t.id, ChoiceQuestion(type="MULTIPLE_CHOICE", text="What worries you?",
                                            options=["Exams", "Friends", "Family"]))
    sleep = qs.create(t.id, ScaleQuestion(type="RATING", text="Sleep quality", required=True,
                                          validation=ScaleValidation(min_value=1, max_value=5)))
    notes = qs.create(t.id, OpenEndedQuestion(text="Anything else?", validation=TextValidation(max_length=200)))
    templates.activate(t.id)
    d = DistributionManager(db).create(t.id)
    return SimpleNamespace(template=t, distribution=d, mood=mood, topics=topics, sleep=sleep, notes=notes)
