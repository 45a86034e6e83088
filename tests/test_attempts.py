import asyncio
from datetime import timedelta
from types import SimpleNamespace

import pytest

from examprep.core.config import settings
from examprep.core.database import SessionLocal
from examprep.core.errors import AttemptAlreadyCompleted, Conflict, Forbidden, NotFound, ValidationFailed
from examprep.core.storage import SqlStorage
from examprep.models.orm import ExamAttempt, Question, utcnow
from examprep.services.attempts import AttemptService, FinalAnswer
from examprep.services.exams import ExamService
from examprep.services.text_generation import TextGenerator

from conftest import options

USER = "student-1"


def answer_all(attempts, attempt, bank, essay_text="Legislative, executive and judicial powers are split."):
    attempts.record_answer(attempt.id, USER, bank.q1.id, "a", 30)
    attempts.record_answer(attempt.id, USER, bank.q2.id, "C", 20)
    attempts.record_answer(attempt.id, USER, bank.essay.id, essay_text, 120)


def test_create_requires_questions(attempts, storage):
    exam = ExamService(storage).create(USER, "Empty exam")
    with pytest.raises(ValidationFailed):
        attempts.create(exam.id, USER)


def test_create_checks_exam_owner(attempts, bank, make_exam):
    exam = make_exam(USER, [bank.q1])
    with pytest.raises(Forbidden):
        attempts.create(exam.id, "someone-else")
    with pytest.raises(NotFound):
        attempts.create("missing", USER)


def test_record_answer_upserts_and_sums_time(attempts, storage, bank, make_exam):
    attempt = attempts.create(make_exam(USER, [bank.q1]).id, USER)
    attempts.record_answer(attempt.id, USER, bank.q1.id, "B", 10)
    row = attempts.record_answer(attempt.id, USER, bank.q1.id, "A", 15)
    assert row.user_answer == "A"
    assert row.time_spent == 25
    assert len(storage.list_answers(attempt.id)) == 1


def test_record_answer_rejects_questions_outside_the_exam(attempts, bank, make_exam):
    attempt = attempts.create(make_exam(USER, [bank.q1]).id, USER)
    with pytest.raises(NotFound):
        attempts.record_answer(attempt.id, USER, bank.q2.id, "C")


async def test_end_to_end_submission(attempts, storage, bank, make_exam):
    exam = make_exam(USER, [bank.q1, bank.q2, bank.essay])
    attempt = attempts.create(exam.id, USER)
    answer_all(attempts, attempt, bank)

    result = await attempts.submit(attempt.id, USER)

    assert result.summary.score == 100.0
    assert (result.summary.correct_count, result.summary.incorrect_count) == (3, 0)
    assert result.total_questions == 3
    stored = storage.get_attempt(attempt.id)
    assert stored.status == "completed"
    assert stored.completed_at is not None
    assert stored.time_spent == 170
    assert storage.get_exam(exam.id).status == "completed"
    essay_row = storage.get_answer(attempt.id, bank.essay.id)
    assert essay_row.ai_score == 8.0
    assert essay_row.is_correct is True
    assert {p.subject_id for p in storage.list_performance(USER)} == {bank.math.id, bank.law.id}


async def test_second_submit_is_rejected_and_changes_nothing(attempts, storage, bank, make_exam):
    attempt = attempts.create(make_exam(USER, [bank.q1, bank.q2]).id, USER)
    attempts.record_answer(attempt.id, USER, bank.q1.id, "A")
    await attempts.submit(attempt.id, USER)
    before = storage.get_attempt(attempt.id)
    snapshot = (before.score, before.correct_count, before.incorrect_count, before.completed_at)

    with pytest.raises(AttemptAlreadyCompleted):
        await attempts.submit(attempt.id, USER, [FinalAnswer(bank.q2.id, "C")])

    after = storage.get_attempt(attempt.id)
    assert (after.score, after.correct_count, after.incorrect_count, after.completed_at) == snapshot
    assert storage.get_answer(attempt.id, bank.q2.id).user_answer is None


async def test_concurrent_submissions_complete_once(attempts, storage, bank, make_exam):
    attempt = attempts.create(make_exam(USER, [bank.q1, bank.essay]).id, USER)
    attempts.record_answer(attempt.id, USER, bank.q1.id, "A")
    attempts.record_answer(attempt.id, USER, bank.essay.id, "An essay")

    outcomes = await asyncio.gather(
        attempts.submit(attempt.id, USER), attempts.submit(attempt.id, USER), return_exceptions=True)

    errors = [o for o in outcomes if isinstance(o, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], AttemptAlreadyCompleted)
    stored = storage.get_attempt(attempt.id)
    assert stored.status == "completed"
    assert (stored.correct_count, stored.incorrect_count) == (2, 0)
    assert len(storage.list_answers(attempt.id)) == 2


async def test_submit_by_another_user_is_forbidden(attempts, storage, bank, make_exam):
    attempt = attempts.create(make_exam(USER, [bank.q1]).id, USER)
    with pytest.raises(Forbidden):
        await attempts.submit(attempt.id, "intruder")
    assert storage.get_attempt(attempt.id).status == "in_progress"
    assert storage.list_answers(attempt.id) == []


async def test_unanswered_questions_are_graded_incorrect(attempts, storage, generator, bank, make_exam):
    attempt = attempts.create(make_exam(USER, [bank.q1, bank.q2, bank.essay]).id, USER)
    attempts.record_answer(attempt.id, USER, bank.q1.id, "A")

    result = await attempts.submit(attempt.id, USER)

    assert (result.summary.correct_count, result.summary.incorrect_count) == (1, 2)
    assert result.summary.score == pytest.approx(100 / 3)
    assert generator.calls["evaluate_essay"] == 0
    essay_row = storage.get_answer(attempt.id, bank.essay.id)
    assert essay_row.user_answer is None
    assert essay_row.is_correct is False
    assert essay_row.ai_score == 0.0


async def test_final_answers_fill_gaps_but_recorded_answers_win(attempts, storage, bank, make_exam):
    attempt = attempts.create(make_exam(USER, [bank.q1, bank.q2]).id, USER)
    attempts.record_answer(attempt.id, USER, bank.q1.id, "A", 10)

    result = await attempts.submit(attempt.id, USER, [
        FinalAnswer(bank.q1.id, "B", 5),
        FinalAnswer(bank.q2.id, "c", 7),
    ])

    assert (result.summary.correct_count, result.summary.incorrect_count) == (2, 0)
    assert storage.get_answer(attempt.id, bank.q1.id).user_answer == "A"
    assert result.time_spent == 17


async def test_final_answers_for_foreign_questions_are_rejected_before_any_change(
        attempts, storage, bank, make_exam):
    attempt = attempts.create(make_exam(USER, [bank.q1]).id, USER)
    with pytest.raises(ValidationFailed):
        await attempts.submit(attempt.id, USER, [FinalAnswer(bank.q2.id, "C")])
    assert storage.get_attempt(attempt.id).status == "in_progress"
    assert storage.list_answers(attempt.id) == []


async def test_explicit_total_time_overrides_the_sum(attempts, storage, bank, make_exam):
    attempt = attempts.create(make_exam(USER, [bank.q1]).id, USER)
    attempts.record_answer(attempt.id, USER, bank.q1.id, "A", 10)
    result = await attempts.submit(attempt.id, USER, total_time_spent=95)
    assert result.time_spent == 95
    assert storage.get_attempt(attempt.id).time_spent == 95


@pytest.fixture
def four_plus_essay(storage, bank):
    extra = [Question(subject_id=bank.math.id, content=f"Extra {i}", type="objective",
                      options=options("x", "y"), correct_answer="A") for i in range(2)]
    storage.add_questions(extra)
    storage.commit()
    return [bank.q1, bank.q2] + extra + [bank.essay]


async def test_failed_essay_stays_pending_and_regrade_does_not_double_count(
        attempts, storage, generator, bank, make_exam, four_plus_essay):
    attempt = attempts.create(make_exam(USER, four_plus_essay).id, USER)
    for q in four_plus_essay[:-1]:
        attempts.record_answer(attempt.id, USER, q.id, q.correct_answer)
    attempts.record_answer(attempt.id, USER, bank.essay.id, "Checks and balances.")
    generator.fail_essays = True

    result = await attempts.submit(attempt.id, USER)

    assert result.summary.score == 100.0
    assert (result.summary.correct_count, result.summary.incorrect_count, result.summary.pending_count) == (4, 0, 1)
    assert storage.get_answer(attempt.id, bank.essay.id).is_correct is None
    assert storage.get_attempt(attempt.id).status == "completed"

    generator.fail_essays = False
    generator.essay_scores = [3.0]
    regraded = await attempts.regrade(attempt.id, USER)

    assert (regraded.summary.correct_count, regraded.summary.incorrect_count, regraded.summary.pending_count) == (4, 1, 0)
    assert regraded.summary.score == 80.0
    stored = storage.get_attempt(attempt.id)
    assert (stored.score, stored.correct_count, stored.incorrect_count) == (80.0, 4, 1)

    # nothing pending any more: a second regrade is a no-op
    again = await attempts.regrade(attempt.id, USER)
    assert again.summary.score == 80.0
    assert generator.calls["evaluate_essay"] == 2


async def test_regrade_requires_completed_attempt(attempts, bank, make_exam):
    attempt = attempts.create(make_exam(USER, [bank.q1]).id, USER)
    with pytest.raises(Conflict):
        await attempts.regrade(attempt.id, USER)


async def test_retry_after_failed_status_update_does_not_regrade(
        attempts, storage, generator, bank, make_exam, monkeypatch):
    attempt = attempts.create(make_exam(USER, [bank.q1, bank.essay]).id, USER)
    attempts.record_answer(attempt.id, USER, bank.q1.id, "A")
    attempts.record_answer(attempt.id, USER, bank.essay.id, "An essay")

    original = storage.transition_attempt

    def lost_connection(*args, **kwargs):
        raise RuntimeError("connection lost")

    monkeypatch.setattr(storage, "transition_attempt", lost_connection)
    with pytest.raises(RuntimeError):
        await attempts.submit(attempt.id, USER)
    assert storage.get_attempt(attempt.id).status == "in_progress"
    assert storage.get_answer(attempt.id, bank.essay.id).is_correct is True

    monkeypatch.setattr(storage, "transition_attempt", original)
    result = await attempts.submit(attempt.id, USER)

    assert result.summary.correct_count == 2
    assert generator.calls["evaluate_essay"] == 1
    assert storage.get_attempt(attempt.id).status == "completed"


async def test_essay_grading_concurrency_is_bounded(attempts, storage, generator, bank, make_exam, monkeypatch):
    monkeypatch.setattr(settings, "ESSAY_GRADING_CONCURRENCY", 2)
    essays = [Question(subject_id=bank.law.id, content=f"Essay {i}", type="essay") for i in range(6)]
    storage.add_questions(essays)
    storage.commit()
    attempt = attempts.create(make_exam(USER, essays).id, USER)
    for q in essays:
        attempts.record_answer(attempt.id, USER, q.id, "Long answer")

    result = await attempts.submit(attempt.id, USER)

    assert result.summary.correct_count == 6
    assert generator.calls["evaluate_essay"] == 6
    assert generator.max_in_flight <= 2


def _backdate(storage, attempt: ExamAttempt, minutes: int):
    attempt.started_at = utcnow() - timedelta(minutes=minutes)
    storage.commit()


async def test_expire_submits_with_the_full_time_limit(attempts, storage, bank, make_exam):
    attempt = attempts.create(make_exam(USER, [bank.q1, bank.q2], time_limit=30).id, USER)
    attempts.record_answer(attempt.id, USER, bank.q1.id, "A", 40)
    _backdate(storage, attempt, 31)

    result = await attempts.expire(attempt.id, USER)

    assert result.time_spent == 1800
    assert (result.summary.correct_count, result.summary.incorrect_count) == (1, 1)
    assert storage.get_attempt(attempt.id).status == "completed"


async def test_expire_before_the_deadline_or_without_limit_conflicts(attempts, storage, bank, make_exam):
    timed = attempts.create(make_exam(USER, [bank.q1], time_limit=30).id, USER)
    with pytest.raises(Conflict):
        await attempts.expire(timed.id, USER)
    untimed = attempts.create(make_exam(USER, [bank.q1]).id, USER)
    _backdate(storage, untimed, 600)
    with pytest.raises(Conflict):
        await attempts.expire(untimed.id, USER)
    assert storage.get_attempt(timed.id).status == "in_progress"


async def test_expire_overdue_sweeps_only_late_attempts(attempts, storage, bank, make_exam):
    exam = make_exam(USER, [bank.q1], time_limit=10)
    late = attempts.create(exam.id, USER)
    fresh = attempts.create(exam.id, USER)
    _backdate(storage, late, 11)

    assert await attempts.expire_overdue() == 1
    assert storage.get_attempt(late.id).status == "completed"
    assert storage.get_attempt(fresh.id).status == "in_progress"


async def test_abandon_is_terminal(attempts, storage, bank, make_exam):
    attempt = attempts.create(make_exam(USER, [bank.q1]).id, USER)
    attempts.abandon(attempt.id, USER)
    assert storage.get_attempt(attempt.id).status == "abandoned"
    assert storage.get_attempt(attempt.id).completed_at is None
    with pytest.raises(Conflict):
        attempts.abandon(attempt.id, USER)
    with pytest.raises(Conflict):
        await attempts.submit(attempt.id, USER)
    with pytest.raises(Conflict):
        attempts.record_answer(attempt.id, USER, bank.q1.id, "A")


async def test_results_break_down_by_question_and_subject(attempts, generator, bank, make_exam):
    attempt = attempts.create(make_exam(USER, [bank.q1, bank.q2, bank.essay]).id, USER)
    attempts.record_answer(attempt.id, USER, bank.q1.id, "A")
    attempts.record_answer(attempt.id, USER, bank.q2.id, "B")
    attempts.record_answer(attempt.id, USER, bank.essay.id, "An essay")
    generator.fail_essays = True
    await attempts.submit(attempt.id, USER)

    res = attempts.results(attempt.id, USER)

    assert [q.result for q in res.questions] == ["correct", "incorrect", "pending"]
    assert [q.order_index for q in res.questions] == [0, 1, 2]
    rollup = {r.subject_name: r for r in res.subjects}
    assert (rollup["Mathematics"].correct, rollup["Mathematics"].incorrect) == (1, 1)
    assert rollup["Mathematics"].accuracy == 50.0
    assert rollup["Constitutional Law"].pending == 1


def test_results_require_a_completed_attempt(attempts, bank, make_exam):
    attempt = attempts.create(make_exam(USER, [bank.q1]).id, USER)
    with pytest.raises(Conflict):
        attempts.results(attempt.id, USER)


def test_list_is_scoped_to_the_caller(attempts, bank, make_exam):
    attempts.create(make_exam(USER, [bank.q1]).id, USER)
    attempts.create(make_exam("other", [bank.q1]).id, "other")
    assert [a.user_id for a in attempts.list(USER)] == [USER]
    assert attempts.list(USER, status="completed") == []


async def test_malformed_grader_reply_leaves_essay_pending(storage, bank, make_exam):
    async def create(**kwargs):
        return SimpleNamespace(choices=[])

    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    service = AttemptService(storage, TextGenerator(client=client))
    attempt = service.create(make_exam(USER, [bank.q1, bank.essay]).id, USER)
    service.record_answer(attempt.id, USER, bank.q1.id, "A")
    service.record_answer(attempt.id, USER, bank.essay.id, "An essay")

    result = await service.submit(attempt.id, USER)

    assert (result.summary.correct_count, result.summary.pending_count) == (1, 1)
    assert result.summary.score == 100.0
    assert storage.get_attempt(attempt.id).status == "completed"
    assert storage.get_answer(attempt.id, bank.essay.id).is_correct is None


async def test_answer_rows_are_committed_before_essay_grading(
        attempts, storage, generator, bank, make_exam, monkeypatch):
    attempt = attempts.create(make_exam(USER, [bank.q1, bank.essay]).id, USER)
    attempts.record_answer(attempt.id, USER, bank.essay.id, "An essay")
    events = []
    commit, evaluate = storage.commit, generator.evaluate_essay

    def recording_commit():
        events.append("commit")
        commit()

    async def recording_evaluate(*args):
        events.append("grade")
        return await evaluate(*args)

    monkeypatch.setattr(storage, "commit", recording_commit)
    monkeypatch.setattr(generator, "evaluate_essay", recording_evaluate)

    await attempts.submit(attempt.id, USER)

    assert events[:2] == ["commit", "grade"]
    assert storage.get_answer(attempt.id, bank.q1.id).is_correct is False


async def test_racing_submissions_from_separate_sessions(db, attempts, generator, bank, make_exam):
    attempt = attempts.create(make_exam(USER, [bank.q1, bank.q2, bank.essay]).id, USER)
    attempts.record_answer(attempt.id, USER, bank.essay.id, "An essay")
    first, second = SessionLocal(), SessionLocal()
    try:
        outcomes = await asyncio.gather(
            AttemptService(SqlStorage(first), generator).submit(attempt.id, USER),
            AttemptService(SqlStorage(second), generator).submit(attempt.id, USER),
            return_exceptions=True)
    finally:
        first.close()
        second.close()

    errors = [o for o in outcomes if isinstance(o, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], AttemptAlreadyCompleted)
    db.expire_all()
    stored = db.get(ExamAttempt, attempt.id)
    assert stored.status == "completed"
    assert (stored.correct_count, stored.incorrect_count) == (1, 2)
    assert len(SqlStorage(db).list_answers(attempt.id)) == 3


async def test_duplicate_answer_rows_from_a_racing_submit_conflict(db, attempts, storage, bank, make_exam,
                                                                  generator, monkeypatch):
    attempt = attempts.create(make_exam(USER, [bank.q1, bank.q2]).id, USER)
    attempts.record_answer(attempt.id, USER, bank.q1.id, "A")
    other = SqlStorage(SessionLocal())
    # the other session read the answers before this one's rows were committed
    monkeypatch.setattr(other, "list_answers", lambda attempt_id: [])
    try:
        with pytest.raises(AttemptAlreadyCompleted):
            await AttemptService(other, generator).submit(attempt.id, USER)
    finally:
        other.db.close()

    db.expire_all()
    assert storage.get_attempt(attempt.id).status == "in_progress"
    assert len(storage.list_answers(attempt.id)) == 1
