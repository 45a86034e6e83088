import asyncio
import os
from collections import defaultdict
from types import SimpleNamespace

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["APP_SECRET"] = "test-secret"
os.environ["BACKGROUND_JOBS_ENABLED"] = "false"
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("SENTRY_DSN", None)

import pytest
from fastapi.testclient import TestClient

from examprep.core.auth import create_token
from examprep.core.database import Base, SessionLocal, engine, get_db
from examprep.core.errors import UpstreamUnavailable
from examprep.core.storage import SqlStorage
from examprep.models import orm
from examprep.services.attempts import AttemptService
from examprep.services.exams import ExamService
from examprep.services.text_generation import (
    EssayEvaluation, GeneratedQuestion, SuggestedRecommendation, TextGenerator, get_text_generator,
)


def options(*texts):
    return [{"letter": chr(ord("A") + i), "text": t} for i, t in enumerate(texts)]


class FakeTextGenerator(TextGenerator):
    """Scripted stand-in for the LLM boundary."""

    def __init__(self):
        super().__init__(model="fake")
        self.essay_scores = []
        self.default_essay_score = 8.0
        self.fail_essays = False
        self.fail_recommendations = False
        self.recommendations = [
            SuggestedRecommendation(type="study_focus", title="Review Mathematics fundamentals",
                                    description="Redo the fractions chapter.", priority=1),
            SuggestedRecommendation(type="exam", title="Take a timed mock exam", priority=3),
        ]
        self.questions = [
            GeneratedQuestion(content="What is 3 x 3?", type="objective", options=[
                {"letter": "A", "text": "6"}, {"letter": "B", "text": "9"}], correct_answer="B"),
            GeneratedQuestion(content="Explain how to simplify fractions.", type="essay"),
        ]
        self.calls = defaultdict(int)
        self.last_target_exam = None
        self.last_performance = None
        self.in_flight = 0
        self.max_in_flight = 0

    async def evaluate_essay(self, question, answer, subject_name):
        self.calls["evaluate_essay"] += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if self.fail_essays:
                raise UpstreamUnavailable("essay grader down")
            score = self.essay_scores.pop(0) if self.essay_scores else self.default_essay_score
            return EssayEvaluation(score=score, evaluation=f"Scored {score}")
        finally:
            self.in_flight -= 1

    async def generate_questions(self, content, subject_name, count=5, difficulty="medium"):
        self.calls["generate_questions"] += 1
        return list(self.questions)[:count]

    async def synthesize_recommendations(self, performance, target_exam, count=5):
        self.calls["synthesize_recommendations"] += 1
        self.last_target_exam = target_exam
        self.last_performance = list(performance)
        if self.fail_recommendations:
            raise UpstreamUnavailable("recommendations down")
        return list(self.recommendations)[:count]

    async def explain_question(self, content, options, correct_answer):
        self.calls["explain_question"] += 1
        return f"The answer is {correct_answer}."


@pytest.fixture
def db():
    Base.metadata.create_all(engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)


@pytest.fixture
def storage(db):
    return SqlStorage(db)


@pytest.fixture
def generator():
    return FakeTextGenerator()


@pytest.fixture
def attempts(storage, generator):
    return AttemptService(storage, generator)


@pytest.fixture
def bank(storage):
    """Two subjects: two objective maths questions (answers A and C) and one law essay."""
    math = storage.add_subject(orm.Subject(name="Mathematics"))
    law = storage.add_subject(orm.Subject(name="Constitutional Law"))
    q1 = orm.Question(subject_id=math.id, content="2 + 2 = ?", type="objective",
                      options=options("4", "5", "6"), correct_answer="A")
    q2 = orm.Question(subject_id=math.id, content="10 / 2 = ?", type="objective",
                      options=options("2", "3", "5"), correct_answer="C")
    essay = orm.Question(subject_id=law.id, content="Explain the separation of powers.", type="essay")
    storage.add_questions([q1, q2, essay])
    storage.commit()
    return SimpleNamespace(math=math, law=law, q1=q1, q2=q2, essay=essay)


@pytest.fixture
def make_exam(storage):
    def _make(user_id, questions, time_limit=None, title="Practice exam"):
        service = ExamService(storage)
        exam = service.create(user_id, title, time_limit=time_limit)
        service.attach_questions(exam.id, user_id, [q.id for q in questions])
        return exam
    return _make


@pytest.fixture
def client(db, generator):
    from examprep.main import app
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_text_generator] = lambda: generator
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    def _headers(user_id="student-1", *roles):
        token = create_token(user_id, list(roles or ("student",)))
        return {"Authorization": f"Bearer {token}"}
    return _headers
