"""
Persistence boundary.

Services talk to ``Storage`` only. ``SqlStorage`` implements it on a SQLAlchemy
session, so any SQLAlchemy backend (PostgreSQL in production, SQLite in tests)
can be plugged in through ``DATABASE_URL``.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from fastapi import Depends
from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from examprep.core.database import get_db
from examprep.models.orm import (
    Subject, Question, Exam, ExamQuestion, ExamAttempt, QuestionAnswer,
    SubjectPerformance, Recommendation, UserProfile, AttemptStatus,
)


class Storage(ABC):
    # ----- subjects / questions -----
    @abstractmethod
    def list_subjects(self) -> List[Subject]: ...
    @abstractmethod
    def get_subject(self, subject_id: str) -> Optional[Subject]: ...
    @abstractmethod
    def get_subjects(self, subject_ids: Iterable[str]) -> Dict[str, Subject]: ...
    @abstractmethod
    def add_subject(self, subject: Subject) -> Subject: ...
    @abstractmethod
    def get_question(self, question_id: str) -> Optional[Question]: ...
    @abstractmethod
    def get_questions(self, question_ids: Iterable[str]) -> Dict[str, Question]: ...
    @abstractmethod
    def list_questions(self, subject_id: Optional[str] = None) -> List[Question]: ...
    @abstractmethod
    def add_questions(self, questions: Sequence[Question]) -> List[Question]: ...

    # ----- exams -----
    @abstractmethod
    def get_exam(self, exam_id: str) -> Optional[Exam]: ...
    @abstractmethod
    def list_exams(self, user_id: str) -> List[Exam]: ...
    @abstractmethod
    def add_exam(self, exam: Exam) -> Exam: ...
    @abstractmethod
    def delete_exam(self, exam: Exam) -> None: ...
    @abstractmethod
    def list_exam_questions(self, exam_id: str) -> List[Tuple[ExamQuestion, Question]]: ...
    @abstractmethod
    def add_exam_questions(self, items: Sequence[ExamQuestion]) -> List[ExamQuestion]: ...

    # ----- attempts / answers -----
    @abstractmethod
    def get_attempt(self, attempt_id: str) -> Optional[ExamAttempt]: ...
    @abstractmethod
    def list_attempts(self, user_id: str, status: Optional[str] = None) -> List[ExamAttempt]: ...
    @abstractmethod
    def count_attempts_for_exam(self, exam_id: str) -> int: ...
    @abstractmethod
    def add_attempt(self, attempt: ExamAttempt) -> ExamAttempt: ...
    @abstractmethod
    def transition_attempt(self, attempt_id: str, expected_status: str, **values) -> bool:
        """Compare-and-set: apply ``values`` only if the stored status is still ``expected_status``."""
    @abstractmethod
    def update_attempt(self, attempt_id: str, **values) -> None: ...
    @abstractmethod
    def list_open_timed_attempts(self) -> List[ExamAttempt]: ...
    @abstractmethod
    def get_answer(self, attempt_id: str, question_id: str) -> Optional[QuestionAnswer]: ...
    @abstractmethod
    def list_answers(self, attempt_id: str) -> List[QuestionAnswer]: ...
    @abstractmethod
    def add_answer(self, answer: QuestionAnswer) -> QuestionAnswer: ...
    @abstractmethod
    def grade_answer_if_pending(self, answer_id: str, **values) -> bool:
        """Write a grade only while the stored answer is still ungraded."""

    # ----- performance -----
    @abstractmethod
    def graded_answers_for_subject(self, user_id: str, subject_id: str) -> List[Tuple[bool, Optional[datetime]]]: ...
    @abstractmethod
    def subjects_studied_by(self, user_id: str) -> List[str]: ...
    @abstractmethod
    def get_performance(self, user_id: str, subject_id: str) -> Optional[SubjectPerformance]: ...
    @abstractmethod
    def list_performance(self, user_id: str) -> List[SubjectPerformance]: ...
    @abstractmethod
    def save_performance(self, row: SubjectPerformance) -> SubjectPerformance: ...

    # ----- recommendations / profile -----
    @abstractmethod
    def list_recommendations(self, user_id: str, unread_only: bool = False) -> List[Recommendation]: ...
    @abstractmethod
    def get_recommendation(self, recommendation_id: str) -> Optional[Recommendation]: ...
    @abstractmethod
    def add_recommendations(self, rows: Sequence[Recommendation]) -> List[Recommendation]: ...
    @abstractmethod
    def get_profile(self, user_id: str) -> Optional[UserProfile]: ...
    @abstractmethod
    def save_profile(self, profile: UserProfile) -> UserProfile: ...

    # ----- unit of work -----
    @abstractmethod
    def commit(self) -> None: ...
    @abstractmethod
    def rollback(self) -> None: ...


class SqlStorage(Storage):
    def __init__(self, db: Session):
        self.db = db

    def list_subjects(self):
        return list(self.db.scalars(select(Subject).order_by(Subject.name)))

    def get_subject(self, subject_id):
        return self.db.get(Subject, subject_id)

    def get_subjects(self, subject_ids):
        ids = {s for s in subject_ids if s}
        if not ids:
            return {}
        return {s.id: s for s in self.db.scalars(select(Subject).where(Subject.id.in_(ids)))}

    def add_subject(self, subject):
        self.db.add(subject); self.db.flush()
        return subject

    def get_question(self, question_id):
        return self.db.get(Question, question_id)

    def get_questions(self, question_ids):
        ids = set(question_ids)
        if not ids:
            return {}
        return {q.id: q for q in self.db.scalars(select(Question).where(Question.id.in_(ids)))}

    def list_questions(self, subject_id=None):
        stmt = select(Question).order_by(Question.created_at)
        if subject_id:
            stmt = stmt.where(Question.subject_id == subject_id)
        return list(self.db.scalars(stmt))

    def add_questions(self, questions):
        self.db.add_all(questions); self.db.flush()
        return list(questions)

    def get_exam(self, exam_id):
        return self.db.get(Exam, exam_id)

    def list_exams(self, user_id):
        return list(self.db.scalars(select(Exam).where(Exam.user_id == user_id).order_by(Exam.created_at.desc())))

    def add_exam(self, exam):
        self.db.add(exam); self.db.flush()
        return exam

    def delete_exam(self, exam):
        self.db.delete(exam); self.db.flush()

    def list_exam_questions(self, exam_id):
        stmt = (select(ExamQuestion, Question)
                .join(Question, Question.id == ExamQuestion.question_id)
                .where(ExamQuestion.exam_id == exam_id)
                .order_by(ExamQuestion.order_index))
        return [(r[0], r[1]) for r in self.db.execute(stmt).all()]

    def add_exam_questions(self, items):
        self.db.add_all(items); self.db.flush()
        return list(items)

    def get_attempt(self, attempt_id):
        return self.db.get(ExamAttempt, attempt_id)

    def list_attempts(self, user_id, status=None):
        stmt = select(ExamAttempt).where(ExamAttempt.user_id == user_id)
        if status:
            stmt = stmt.where(ExamAttempt.status == status)
        return list(self.db.scalars(stmt.order_by(ExamAttempt.started_at.desc())))

    def count_attempts_for_exam(self, exam_id):
        return self.db.scalar(select(func.count()).select_from(ExamAttempt).where(ExamAttempt.exam_id == exam_id)) or 0

    def add_attempt(self, attempt):
        self.db.add(attempt); self.db.flush()
        return attempt

    def transition_attempt(self, attempt_id, expected_status, **values):
        self.db.flush()
        res = self.db.execute(
            update(ExamAttempt)
            .where(ExamAttempt.id == attempt_id, ExamAttempt.status == expected_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self._expire(ExamAttempt, attempt_id)
        return res.rowcount == 1

    def update_attempt(self, attempt_id, **values):
        self.db.flush()
        self.db.execute(
            update(ExamAttempt).where(ExamAttempt.id == attempt_id).values(**values)
            .execution_options(synchronize_session=False)
        )
        self._expire(ExamAttempt, attempt_id)

    def list_open_timed_attempts(self):
        stmt = (select(ExamAttempt).join(Exam, Exam.id == ExamAttempt.exam_id)
                .where(ExamAttempt.status == AttemptStatus.IN_PROGRESS.value, Exam.time_limit.is_not(None)))
        return list(self.db.scalars(stmt))

    def get_answer(self, attempt_id, question_id):
        return self.db.scalar(select(QuestionAnswer).where(
            QuestionAnswer.attempt_id == attempt_id, QuestionAnswer.question_id == question_id))

    def list_answers(self, attempt_id):
        return list(self.db.scalars(select(QuestionAnswer).where(QuestionAnswer.attempt_id == attempt_id)))

    def add_answer(self, answer):
        self.db.add(answer); self.db.flush()
        return answer

    def grade_answer_if_pending(self, answer_id, **values):
        self.db.flush()
        res = self.db.execute(
            update(QuestionAnswer)
            .where(QuestionAnswer.id == answer_id, QuestionAnswer.is_correct.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self._expire(QuestionAnswer, answer_id)
        return res.rowcount == 1

    def graded_answers_for_subject(self, user_id, subject_id):
        stmt = (select(QuestionAnswer.is_correct, ExamAttempt.completed_at)
                .join(ExamAttempt, ExamAttempt.id == QuestionAnswer.attempt_id)
                .join(Question, Question.id == QuestionAnswer.question_id)
                .where(ExamAttempt.user_id == user_id,
                       ExamAttempt.status == AttemptStatus.COMPLETED.value,
                       Question.subject_id == subject_id,
                       QuestionAnswer.is_correct.is_not(None)))
        return [(bool(r[0]), r[1]) for r in self.db.execute(stmt).all()]

    def subjects_studied_by(self, user_id):
        stmt = (select(Question.subject_id).distinct()
                .join(QuestionAnswer, QuestionAnswer.question_id == Question.id)
                .join(ExamAttempt, ExamAttempt.id == QuestionAnswer.attempt_id)
                .where(ExamAttempt.user_id == user_id,
                       ExamAttempt.status == AttemptStatus.COMPLETED.value,
                       Question.subject_id.is_not(None)))
        return sorted(self.db.scalars(stmt))

    def get_performance(self, user_id, subject_id):
        return self.db.scalar(select(SubjectPerformance).where(
            SubjectPerformance.user_id == user_id, SubjectPerformance.subject_id == subject_id))

    def list_performance(self, user_id):
        return list(self.db.scalars(select(SubjectPerformance).where(SubjectPerformance.user_id == user_id)
                                    .order_by(SubjectPerformance.average_score)))

    def save_performance(self, row):
        self.db.add(row); self.db.flush()
        return row

    def list_recommendations(self, user_id, unread_only=False):
        stmt = select(Recommendation).where(Recommendation.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Recommendation.is_read.is_(False))
        return list(self.db.scalars(stmt.order_by(Recommendation.created_at.desc(), Recommendation.priority)))

    def get_recommendation(self, recommendation_id):
        return self.db.get(Recommendation, recommendation_id)

    def add_recommendations(self, rows):
        self.db.add_all(rows); self.db.flush()
        return list(rows)

    def get_profile(self, user_id):
        return self.db.get(UserProfile, user_id)

    def save_profile(self, profile):
        self.db.add(profile); self.db.flush()
        return profile

    def _expire(self, cls, pk):
        # bulk UPDATEs bypass the identity map; reload the row on next access
        obj = self.db.identity_map.get(self.db.identity_key(cls, pk))
        if obj is not None:
            self.db.expire(obj)

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()


def get_storage(db: Session = Depends(get_db)) -> Storage:
    return SqlStorage(db)
