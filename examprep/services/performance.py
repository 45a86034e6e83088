"""
Per-subject performance aggregation.

``refresh`` is a full recomputation from the graded answers of completed
attempts, so running it any number of times over the same answers always
lands on the same row. Concurrent refreshes are last-writer-wins.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from examprep.core.storage import Storage
from examprep.models.orm import SubjectPerformance, StrengthLevel, AttemptStatus, as_utc

logger = logging.getLogger(__name__)

WEAK_BELOW = 60.0
STRONG_FROM = 80.0


def strength_for(average_score: float, total_questions: int) -> str:
    if total_questions == 0:
        return StrengthLevel.UNKNOWN.value
    if average_score < WEAK_BELOW:
        return StrengthLevel.WEAK.value
    if average_score < STRONG_FROM:
        return StrengthLevel.MEDIUM.value
    return StrengthLevel.STRONG.value


@dataclass
class UserStats:
    total_attempts: int
    completed_attempts: int
    average_score: float
    total_questions: int
    correct_answers: int

    @property
    def accuracy(self) -> float:
        return 100.0 * self.correct_answers / self.total_questions if self.total_questions else 0.0


class PerformanceAggregator:
    def __init__(self, storage: Storage):
        self.storage = storage

    def refresh(self, user_id: str, subject_id: str) -> SubjectPerformance:
        graded = self.storage.graded_answers_for_subject(user_id, subject_id)
        total = len(graded)
        correct = sum(1 for is_correct, _ in graded if is_correct)
        average = 100.0 * correct / total if total else 0.0
        studied = [as_utc(ts) for _, ts in graded if ts is not None]

        row = self.storage.get_performance(user_id, subject_id)
        if row is None:
            row = SubjectPerformance(user_id=user_id, subject_id=subject_id)
        row.total_questions = total
        row.correct_answers = correct
        row.average_score = average
        row.last_studied = max(studied) if studied else None
        row.strength_level = strength_for(average, total)
        self.storage.save_performance(row)
        self.storage.commit()
        return row

    def refresh_many(self, user_id: str, subject_ids: Iterable[Optional[str]]) -> List[SubjectPerformance]:
        """Best-effort refresh: a failing subject is logged and skipped."""
        rows = []
        for subject_id in sorted({s for s in subject_ids if s}):
            try:
                rows.append(self.refresh(user_id, subject_id))
            except Exception:
                logger.exception("Performance refresh failed for user %s subject %s", user_id, subject_id)
                self.storage.rollback()
        return rows

    def refresh_all(self, user_id: str) -> List[SubjectPerformance]:
        return self.refresh_many(user_id, self.storage.subjects_studied_by(user_id))

    def list_for_user(self, user_id: str) -> List[SubjectPerformance]:
        return self.storage.list_performance(user_id)

    def stats(self, user_id: str) -> UserStats:
        attempts = self.storage.list_attempts(user_id)
        completed = [a for a in attempts if a.status == AttemptStatus.COMPLETED.value]
        total_score = sum(a.score or 0.0 for a in completed)
        correct = sum(a.correct_count or 0 for a in completed)
        incorrect = sum(a.incorrect_count or 0 for a in completed)
        return UserStats(
            total_attempts=len(attempts),
            completed_attempts=len(completed),
            average_score=total_score / len(completed) if completed else 0.0,
            total_questions=correct + incorrect,
            correct_answers=correct,
        )
