from sqlalchemy import String, Text, Boolean, Integer, Float, ForeignKey, JSON, DateTime, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime, timezone
from typing import Optional, List, Dict
import uuid
import enum
from examprep.core.database import Base


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class QuestionType(str, enum.Enum):
    OBJECTIVE = "objective"
    ESSAY = "essay"

class Difficulty(str, enum.Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"

class ExamStatus(str, enum.Enum):
    DRAFT = "draft"
    READY = "ready"
    COMPLETED = "completed"

class AttemptStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

class StrengthLevel(str, enum.Enum):
    WEAK = "weak"
    MEDIUM = "medium"
    STRONG = "strong"
    UNKNOWN = "unknown"

class RecommendationType(str, enum.Enum):
    STUDY_FOCUS = "study_focus"
    MATERIAL = "material"
    EXAM = "exam"

# ========== Question bank ==========

class Subject(Base):
    __tablename__ = "subjects"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (
        Index("idx_questions_subject", "subject_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    subject_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("subjects.id"))
    content: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    difficulty: Mapped[str] = mapped_column(String(20), nullable=False, default=Difficulty.MEDIUM.value)
    # objective only: [{"letter": "A", "text": "..."}]
    options: Mapped[Optional[List[Dict]]] = mapped_column(JSON)
    correct_answer: Mapped[Optional[str]] = mapped_column(String(8))
    explanation: Mapped[Optional[str]] = mapped_column(Text)
    source: Mapped[Optional[str]] = mapped_column(String(255))
    created_by: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    subject: Mapped[Optional["Subject"]] = relationship()

    @property
    def is_essay(self) -> bool:
        return self.type == QuestionType.ESSAY.value

# ========== Exams ==========

class Exam(Base):
    __tablename__ = "exams"
    __table_args__ = (
        Index("idx_exams_user", "user_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    time_limit: Mapped[Optional[int]] = mapped_column(Integer)  # minutes, None = unlimited
    difficulty: Mapped[Optional[str]] = mapped_column(String(20))
    question_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=ExamStatus.DRAFT.value, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    items: Mapped[List["ExamQuestion"]] = relationship(
        back_populates="exam", cascade="all, delete-orphan", order_by="ExamQuestion.order_index"
    )

class ExamQuestion(Base):
    __tablename__ = "exam_questions"
    __table_args__ = (
        UniqueConstraint("exam_id", "order_index", name="uq_exam_question_order"),
        UniqueConstraint("exam_id", "question_id", name="uq_exam_question"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    exam_id: Mapped[str] = mapped_column(String(36), ForeignKey("exams.id", ondelete="CASCADE"), nullable=False)
    question_id: Mapped[str] = mapped_column(String(36), ForeignKey("questions.id"), nullable=False)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)

    exam: Mapped["Exam"] = relationship(back_populates="items")
    question: Mapped["Question"] = relationship()

# ========== Delivery ==========

class ExamAttempt(Base):
    __tablename__ = "exam_attempts"
    __table_args__ = (
        Index("idx_attempts_user", "user_id"),
        Index("idx_attempts_exam", "exam_id"),
        Index("idx_attempts_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    exam_id: Mapped[str] = mapped_column(String(36), ForeignKey("exams.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=AttemptStatus.IN_PROGRESS.value, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    score: Mapped[Optional[float]] = mapped_column(Float)
    correct_count: Mapped[Optional[int]] = mapped_column(Integer)
    incorrect_count: Mapped[Optional[int]] = mapped_column(Integer)
    time_spent: Mapped[Optional[int]] = mapped_column(Integer)  # seconds

    exam: Mapped["Exam"] = relationship()

class QuestionAnswer(Base):
    __tablename__ = "question_answers"
    __table_args__ = (
        UniqueConstraint("attempt_id", "question_id", name="uq_attempt_question"),
        Index("idx_answers_attempt", "attempt_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    attempt_id: Mapped[str] = mapped_column(String(36), ForeignKey("exam_attempts.id", ondelete="CASCADE"), nullable=False)
    question_id: Mapped[str] = mapped_column(String(36), ForeignKey("questions.id"), nullable=False)
    user_answer: Mapped[Optional[str]] = mapped_column(Text)
    # None = not graded yet, or essay grading failed and awaits a regrade
    is_correct: Mapped[Optional[bool]] = mapped_column(Boolean)
    ai_evaluation: Mapped[Optional[str]] = mapped_column(Text)
    ai_score: Mapped[Optional[float]] = mapped_column(Float)
    time_spent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    question: Mapped["Question"] = relationship()

# ========== Analytics ==========

class SubjectPerformance(Base):
    __tablename__ = "subject_performance"
    __table_args__ = (
        UniqueConstraint("user_id", "subject_id", name="uq_performance_user_subject"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(36), ForeignKey("subjects.id"), nullable=False)
    total_questions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    correct_answers: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    average_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    last_studied: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    strength_level: Mapped[str] = mapped_column(String(20), default=StrengthLevel.UNKNOWN.value, nullable=False)

    subject: Mapped["Subject"] = relationship()

class Recommendation(Base):
    __tablename__ = "recommendations"
    __table_args__ = (
        Index("idx_recommendations_user", "user_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    subject_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("subjects.id"))
    priority: Mapped[int] = mapped_column(Integer, default=1, nullable=False)  # 1 = most urgent
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class UserProfile(Base):
    __tablename__ = "user_profiles"
    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    target_exam: Mapped[Optional[str]] = mapped_column(String(255))
    study_area: Mapped[Optional[str]] = mapped_column(String(255))
    study_goal: Mapped[Optional[str]] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
