"""
Grading engine.

Objective answers are matched against the stored letter; essay answers are
scored by the text-generation boundary. A failed essay evaluation yields a
*pending* grade (``is_correct is None``) which is left out of the score until
it is regraded.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from examprep.core.config import settings
from examprep.core.errors import UpstreamUnavailable
from examprep.models.orm import Question
from examprep.services.text_generation import TextGenerator

logger = logging.getLogger(__name__)


@dataclass
class GradeResult:
    is_correct: Optional[bool]
    ai_score: Optional[float] = None
    ai_evaluation: Optional[str] = None

    @property
    def pending(self) -> bool:
        return self.is_correct is None


@dataclass
class ScoreSummary:
    score: float
    correct_count: int
    incorrect_count: int
    pending_count: int = 0

    @property
    def graded_count(self) -> int:
        return self.correct_count + self.incorrect_count


def _normalize(value: Optional[str]) -> str:
    return (value or "").strip().upper()


def is_blank(raw_answer: Optional[str]) -> bool:
    return not (raw_answer or "").strip()


def grade_objective(question: Question, raw_answer: Optional[str]) -> GradeResult:
    """Case-insensitive, whitespace-trimmed letter match. Blank answers are wrong."""
    answer = _normalize(raw_answer)
    correct = _normalize(question.correct_answer)
    return GradeResult(is_correct=bool(answer) and bool(correct) and answer == correct)


async def grade_essay(question: Question, raw_answer: Optional[str], subject_name: str,
                      generator: TextGenerator, threshold: Optional[float] = None) -> GradeResult:
    """Score an essay answer. Any grader failure leaves the answer pending instead of raising."""
    if is_blank(raw_answer):
        return GradeResult(is_correct=False, ai_score=0.0, ai_evaluation="No answer was given.")
    pass_mark = settings.ESSAY_PASS_THRESHOLD if threshold is None else threshold
    try:
        result = await generator.evaluate_essay(question.content, raw_answer.strip(), subject_name)
    except UpstreamUnavailable as e:
        logger.warning("Essay grading failed for question %s, leaving it pending: %s", question.id, e.message)
        return GradeResult(is_correct=None)
    except Exception:
        logger.exception("Unexpected error grading question %s, leaving it pending", question.id)
        return GradeResult(is_correct=None)
    return GradeResult(is_correct=result.score >= pass_mark, ai_score=result.score, ai_evaluation=result.evaluation)


async def grade_answer(question: Question, raw_answer: Optional[str], subject_name: str,
                       generator: TextGenerator) -> GradeResult:
    if question.is_essay:
        return await grade_essay(question, raw_answer, subject_name, generator)
    return grade_objective(question, raw_answer)


def score_attempt(grades: Iterable[Optional[bool]]) -> ScoreSummary:
    """Aggregate ``is_correct`` values; ``None`` (pending) is excluded from the denominator.

    The score keeps full precision, rounding is left to presentation.
    """
    correct = incorrect = pending = 0
    for is_correct in grades:
        if is_correct is True:
            correct += 1
        elif is_correct is False:
            incorrect += 1
        else:
            pending += 1
    graded = correct + incorrect
    score = 100.0 * correct / graded if graded else 0.0
    return ScoreSummary(score=score, correct_count=correct, incorrect_count=incorrect, pending_count=pending)
