"""
Exam attempt lifecycle.

An attempt moves ``in_progress -> completed`` (submit or expire) or
``in_progress -> abandoned``; both are terminal. The move is a compare-and-set
on the stored status, so two racing submissions produce exactly one completion
and the loser gets ``AttemptAlreadyCompleted``.

Submission order matters for crash safety. Answer rows are committed before
any essay is sent for grading, grades are committed next, and only then is the
status flipped together with the score. Grades are only ever written onto
ungraded rows, so a retried submission never re-grades.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError

from examprep.core.config import settings
from examprep.core.errors import (
    AttemptAlreadyCompleted, Conflict, NotFound, ValidationFailed, ensure_owner,
)
from examprep.core.storage import Storage
from examprep.jobs.dispatch import schedule_performance_refresh
from examprep.models.orm import (
    AttemptStatus, Exam, ExamAttempt, ExamStatus, Question, QuestionAnswer, as_utc, utcnow,
)
from examprep.services.grading import (
    GradeResult, ScoreSummary, grade_essay, grade_objective, is_blank, score_attempt,
)
from examprep.services.question_bank import GENERAL_SUBJECT
from examprep.services.text_generation import TextGenerator

logger = logging.getLogger(__name__)


@dataclass
class FinalAnswer:
    question_id: str
    answer: Optional[str] = None
    time_spent: int = 0


@dataclass
class SubmissionResult:
    attempt_id: str
    status: str
    summary: ScoreSummary
    total_questions: int
    time_spent: Optional[int] = None


@dataclass
class QuestionResult:
    question: Question
    order_index: int
    answer: Optional[QuestionAnswer]

    @property
    def result(self) -> str:
        return result_label(self.answer.is_correct if self.answer else None)


@dataclass
class SubjectRollup:
    subject_id: Optional[str]
    subject_name: str
    correct: int = 0
    incorrect: int = 0
    pending: int = 0

    @property
    def accuracy(self) -> float:
        graded = self.correct + self.incorrect
        return 100.0 * self.correct / graded if graded else 0.0


@dataclass
class AttemptResults:
    attempt: ExamAttempt
    questions: List[QuestionResult]
    subjects: List[SubjectRollup] = field(default_factory=list)


def result_label(is_correct: Optional[bool]) -> str:
    if is_correct is None:
        return "pending"
    return "correct" if is_correct else "incorrect"


class AttemptService:
    def __init__(self, storage: Storage, generator: TextGenerator):
        self.storage = storage
        self.generator = generator

    # ---------- reads ----------

    def list(self, user_id: str, status: Optional[str] = None) -> List[ExamAttempt]:
        return self.storage.list_attempts(user_id, status)

    def get(self, attempt_id: str, user_id: str) -> ExamAttempt:
        return ensure_owner(self.storage.get_attempt(attempt_id), user_id, "Attempt")

    def answers(self, attempt_id: str, user_id: str) -> List[QuestionAnswer]:
        self.get(attempt_id, user_id)
        return self.storage.list_answers(attempt_id)

    def results(self, attempt_id: str, user_id: str) -> AttemptResults:
        """Per-question outcome and a per-subject rollup of a completed attempt."""
        attempt = self.get(attempt_id, user_id)
        if attempt.status != AttemptStatus.COMPLETED.value:
            raise Conflict("Results are only available for completed attempts")
        items = self.storage.list_exam_questions(attempt.exam_id)
        answers = {a.question_id: a for a in self.storage.list_answers(attempt.id)}
        names = self._subject_names(q for _, q in items)

        questions: List[QuestionResult] = []
        rollup: Dict[Optional[str], SubjectRollup] = {}
        for eq, q in items:
            qr = QuestionResult(question=q, order_index=eq.order_index, answer=answers.get(q.id))
            questions.append(qr)
            bucket = rollup.setdefault(q.subject_id, SubjectRollup(q.subject_id, names.get(q.subject_id, GENERAL_SUBJECT)))
            if qr.result == "correct":
                bucket.correct += 1
            elif qr.result == "incorrect":
                bucket.incorrect += 1
            else:
                bucket.pending += 1
        return AttemptResults(attempt=attempt, questions=questions,
                              subjects=sorted(rollup.values(), key=lambda r: r.subject_name))

    # ---------- lifecycle ----------

    def create(self, exam_id: str, user_id: str) -> ExamAttempt:
        exam = ensure_owner(self.storage.get_exam(exam_id), user_id, "Exam")
        if not self.storage.list_exam_questions(exam.id):
            raise ValidationFailed("Exam has no questions")
        attempt = self.storage.add_attempt(ExamAttempt(
            user_id=user_id, exam_id=exam.id, status=AttemptStatus.IN_PROGRESS.value, started_at=utcnow()))
        self.storage.commit()
        logger.info("Attempt %s started on exam %s by %s", attempt.id, exam.id, user_id)
        return attempt

    def record_answer(self, attempt_id: str, user_id: str, question_id: str,
                      answer: Optional[str], time_spent: int = 0) -> QuestionAnswer:
        """Upsert the answer to one question. Time spent accumulates, the latest answer wins."""
        attempt = self._open_attempt(attempt_id, user_id)
        if time_spent < 0:
            raise ValidationFailed("time_spent must not be negative")
        if question_id not in {eq.question_id for eq, _ in self.storage.list_exam_questions(attempt.exam_id)}:
            raise NotFound("Question not found in this exam")
        row = self.storage.get_answer(attempt.id, question_id)
        if row is None:
            row = self.storage.add_answer(QuestionAnswer(
                attempt_id=attempt.id, question_id=question_id, user_answer=answer, time_spent=time_spent))
        else:
            row.user_answer = answer
            row.time_spent = (row.time_spent or 0) + time_spent
            row.is_correct = None
            row.ai_score = None
            row.ai_evaluation = None
        self.storage.commit()
        return row

    async def submit(self, attempt_id: str, user_id: str,
                     final_answers: Optional[Sequence[FinalAnswer]] = None,
                     total_time_spent: Optional[int] = None) -> SubmissionResult:
        attempt = self._open_attempt(attempt_id, user_id)
        if total_time_spent is not None and total_time_spent < 0:
            raise ValidationFailed("total_time_spent must not be negative")
        items = self.storage.list_exam_questions(attempt.exam_id)
        questions = {q.id: q for _, q in items}
        finals = {fa.question_id: fa for fa in final_answers or []}
        unknown = sorted(qid for qid in finals if qid not in questions)
        if unknown:
            raise ValidationFailed(f"Answers reference questions outside this exam: {', '.join(unknown)}")

        try:
            answers = self._collect_answers(attempt, questions, finals)
            # no open writes may be held across the grading await below
            self.storage.commit()
        except IntegrityError:
            # a racing submission inserted the same answer rows first
            self.storage.rollback()
            raise AttemptAlreadyCompleted(attempt_id)
        await self._grade_pending(answers, questions)
        # grades are durable before the status can change
        self.storage.commit()

        summary = score_attempt(answers[qid].is_correct for qid in questions)
        spent = total_time_spent if total_time_spent is not None else sum(a.time_spent or 0 for a in answers.values())
        done = self.storage.transition_attempt(
            attempt.id, AttemptStatus.IN_PROGRESS.value,
            status=AttemptStatus.COMPLETED.value, completed_at=utcnow(), score=summary.score,
            correct_count=summary.correct_count, incorrect_count=summary.incorrect_count, time_spent=spent,
        )
        if not done:
            self.storage.rollback()
            raise AttemptAlreadyCompleted(attempt.id)
        exam = self.storage.get_exam(attempt.exam_id)
        if exam.status != ExamStatus.COMPLETED.value:
            exam.status = ExamStatus.COMPLETED.value
        self.storage.commit()
        logger.info("Attempt %s completed: score=%.2f correct=%d incorrect=%d pending=%d",
                    attempt.id, summary.score, summary.correct_count, summary.incorrect_count, summary.pending_count)

        schedule_performance_refresh(self.storage, user_id, {q.subject_id for q in questions.values()})
        return SubmissionResult(attempt_id=attempt.id, status=AttemptStatus.COMPLETED.value, summary=summary,
                                total_questions=len(questions), time_spent=spent)

    async def expire(self, attempt_id: str, user_id: str) -> SubmissionResult:
        """Submit a timed attempt whose limit has elapsed, charging the full limit."""
        attempt = self._open_attempt(attempt_id, user_id)
        exam = self.storage.get_exam(attempt.exam_id)
        deadline = self._deadline(attempt, exam)
        if deadline is None:
            raise Conflict("Exam has no time limit")
        if utcnow() < deadline:
            raise Conflict("Time limit has not elapsed yet")
        return await self.submit(attempt.id, user_id, total_time_spent=exam.time_limit * 60)

    async def expire_overdue(self) -> int:
        """Expire every open timed attempt past its deadline. Returns how many were expired."""
        now = utcnow()
        expired = 0
        overdue = []
        for attempt in self.storage.list_open_timed_attempts():
            deadline = self._deadline(attempt, self.storage.get_exam(attempt.exam_id))
            if deadline is not None and now >= deadline:
                overdue.append((attempt.id, attempt.user_id))
        for attempt_id, user_id in overdue:
            try:
                await self.expire(attempt_id, user_id)
                expired += 1
            except Conflict as e:
                # submitted or abandoned meanwhile
                logger.info("Skipping expiry of attempt %s: %s", attempt_id, e.message)
            except Exception:
                self.storage.rollback()
                logger.exception("Failed to expire attempt %s, continuing the sweep", attempt_id)
        return expired

    def abandon(self, attempt_id: str, user_id: str) -> ExamAttempt:
        attempt = self._open_attempt(attempt_id, user_id)
        if not self.storage.transition_attempt(attempt.id, AttemptStatus.IN_PROGRESS.value,
                                               status=AttemptStatus.ABANDONED.value):
            self.storage.rollback()
            raise AttemptAlreadyCompleted(attempt.id)
        self.storage.commit()
        logger.info("Attempt %s abandoned", attempt.id)
        return attempt

    async def regrade(self, attempt_id: str, user_id: str) -> SubmissionResult:
        """Retry grading of pending essay answers on a completed attempt and rescore it."""
        attempt = self.get(attempt_id, user_id)
        if attempt.status != AttemptStatus.COMPLETED.value:
            raise Conflict("Only completed attempts can be regraded")
        questions = {q.id: q for _, q in self.storage.list_exam_questions(attempt.exam_id)}
        answers = {a.question_id: a for a in self.storage.list_answers(attempt.id) if a.question_id in questions}
        await self._grade_pending(answers, questions)
        self.storage.commit()

        summary = score_attempt(answers[qid].is_correct if qid in answers else False for qid in questions)
        self.storage.update_attempt(attempt.id, score=summary.score, correct_count=summary.correct_count,
                                    incorrect_count=summary.incorrect_count)
        self.storage.commit()
        logger.info("Attempt %s regraded: score=%.2f pending=%d", attempt.id, summary.score, summary.pending_count)
        schedule_performance_refresh(self.storage, user_id, {q.subject_id for q in questions.values()})
        return SubmissionResult(attempt_id=attempt.id, status=attempt.status, summary=summary,
                                total_questions=len(questions), time_spent=attempt.time_spent)

    # ---------- internals ----------

    def _open_attempt(self, attempt_id: str, user_id: str) -> ExamAttempt:
        attempt = self.get(attempt_id, user_id)
        if attempt.status != AttemptStatus.IN_PROGRESS.value:
            raise AttemptAlreadyCompleted(attempt.id)
        return attempt

    @staticmethod
    def _deadline(attempt: ExamAttempt, exam: Optional[Exam]) -> Optional[datetime]:
        if exam is None or not exam.time_limit:
            return None
        return as_utc(attempt.started_at) + timedelta(minutes=exam.time_limit)

    def _subject_names(self, questions) -> Dict[Optional[str], str]:
        subjects = self.storage.get_subjects({q.subject_id for q in questions if q.subject_id})
        return {sid: s.name for sid, s in subjects.items()}

    def _collect_answers(self, attempt: ExamAttempt, questions: Dict[str, Question],
                         finals: Dict[str, FinalAnswer]) -> Dict[str, QuestionAnswer]:
        """One answer row per exam question.

        Recorded answers are authoritative; ``finals`` only fill questions with
        no recorded (or a blank, ungraded) answer. Questions left unanswered get
        a blank row, which grades as incorrect.
        """
        answers = {a.question_id: a for a in self.storage.list_answers(attempt.id)}
        for qid in questions:
            row = answers.get(qid)
            fa = finals.get(qid)
            if row is None:
                answers[qid] = self.storage.add_answer(QuestionAnswer(
                    attempt_id=attempt.id, question_id=qid,
                    user_answer=fa.answer if fa else None,
                    time_spent=max(0, fa.time_spent or 0) if fa else 0))
            elif fa and row.is_correct is None and is_blank(row.user_answer) and not is_blank(fa.answer):
                row.user_answer = fa.answer
                row.time_spent = (row.time_spent or 0) + max(0, fa.time_spent or 0)
        return answers

    async def _grade_pending(self, answers: Dict[str, QuestionAnswer], questions: Dict[str, Question]) -> None:
        """Grade ungraded rows; essays run concurrently up to ESSAY_GRADING_CONCURRENCY."""
        pending = [a for qid, a in answers.items() if qid in questions and a.is_correct is None]
        if not pending:
            return
        names = self._subject_names(questions.values())
        semaphore = asyncio.Semaphore(settings.ESSAY_GRADING_CONCURRENCY)

        async def grade(row: QuestionAnswer):
            q = questions[row.question_id]
            if not q.is_essay:
                return row, grade_objective(q, row.user_answer)
            async with semaphore:
                return row, await grade_essay(q, row.user_answer, names.get(q.subject_id, GENERAL_SUBJECT),
                                              self.generator)

        results: List = await asyncio.gather(*(grade(row) for row in pending))
        for row, outcome in results:
            self._store_grade(row, outcome)

    def _store_grade(self, row: QuestionAnswer, outcome: GradeResult) -> None:
        if outcome.pending:
            return
        stored = self.storage.grade_answer_if_pending(
            row.id, is_correct=outcome.is_correct, ai_score=outcome.ai_score, ai_evaluation=outcome.ai_evaluation)
        if not stored:
            logger.debug("Answer %s was graded concurrently, keeping the stored grade", row.id)
