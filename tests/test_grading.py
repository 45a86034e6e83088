import pytest

from examprep.core.config import settings
from examprep.models.orm import Question
from examprep.services.grading import grade_answer, grade_essay, grade_objective, score_attempt

from conftest import FakeTextGenerator, options


def objective(correct="B"):
    return Question(id="q-obj", content="Pick one", type="objective",
                    options=options("a", "b", "c"), correct_answer=correct)


def essay():
    return Question(id="q-essay", content="Discuss federalism.", type="essay")


@pytest.mark.parametrize("raw,expected", [
    ("B", True), ("b", True), ("  b \n", True), ("A", False), ("", False), ("   ", False), (None, False),
])
def test_objective_grading_is_trimmed_and_case_insensitive(raw, expected):
    assert grade_objective(objective(), raw).is_correct is expected


def test_objective_without_answer_key_is_never_correct():
    assert grade_objective(objective(correct=None), "").is_correct is False
    assert grade_objective(objective(correct=None), "A").is_correct is False


def test_scoring_arithmetic():
    s = score_attempt([True] * 7 + [False] * 3)
    assert (s.score, s.correct_count, s.incorrect_count) == (70.0, 7, 3)


def test_scoring_empty_attempt_does_not_divide_by_zero():
    s = score_attempt([])
    assert (s.score, s.correct_count, s.incorrect_count, s.pending_count) == (0.0, 0, 0, 0)


def test_pending_answers_are_left_out_of_the_denominator():
    s = score_attempt([True, True, True, True, None])
    assert s.score == 100.0
    assert s.pending_count == 1
    assert s.graded_count == 4


def test_score_keeps_full_precision():
    assert score_attempt([True, False, False]).score == pytest.approx(100 / 3)


@pytest.mark.parametrize("ai_score,expected", [(6.0, True), (5.9, False), (10.0, True), (0.0, False)])
async def test_essay_threshold_boundaries_at_default(ai_score, expected):
    gen = FakeTextGenerator()
    gen.essay_scores = [ai_score]
    result = await grade_essay(essay(), "Powers are split between levels.", "Law", gen)
    assert settings.ESSAY_PASS_THRESHOLD == 6.0
    assert result.is_correct is expected
    assert result.ai_score == ai_score
    assert result.ai_evaluation


@pytest.mark.parametrize("ai_score,expected", [(7.0, True), (6.5, False)])
async def test_essay_threshold_boundaries_when_configured_higher(monkeypatch, ai_score, expected):
    monkeypatch.setattr(settings, "ESSAY_PASS_THRESHOLD", 7.0)
    gen = FakeTextGenerator()
    gen.essay_scores = [ai_score]
    result = await grade_essay(essay(), "An answer", "Law", gen)
    assert result.is_correct is expected


async def test_blank_essay_is_incorrect_without_calling_the_grader():
    gen = FakeTextGenerator()
    result = await grade_essay(essay(), "   ", "Law", gen)
    assert result.is_correct is False
    assert result.ai_score == 0.0
    assert gen.calls["evaluate_essay"] == 0


async def test_failed_essay_grading_is_pending_not_wrong():
    gen = FakeTextGenerator()
    gen.fail_essays = True
    result = await grade_essay(essay(), "Some answer", "Law", gen)
    assert result.pending
    assert result.is_correct is None
    assert result.ai_score is None


async def test_grade_answer_dispatches_on_question_type():
    gen = FakeTextGenerator()
    assert (await grade_answer(objective(), "b", "Maths", gen)).is_correct is True
    assert gen.calls["evaluate_essay"] == 0
    assert (await grade_answer(essay(), "text", "Law", gen)).is_correct is True
    assert gen.calls["evaluate_essay"] == 1


async def test_unexpected_grader_error_is_pending_not_raised(monkeypatch):
    gen = FakeTextGenerator()

    async def broken(question, answer, subject_name):
        raise KeyError("choices")

    monkeypatch.setattr(gen, "evaluate_essay", broken)
    result = await grade_essay(essay(), "Some answer", "Law", gen)
    assert result.pending
    assert result.ai_evaluation is None
