import pytest

from examprep.services.performance import PerformanceAggregator, strength_for

USER = "student-1"


def snapshot(row):
    return (row.total_questions, row.correct_answers, row.average_score, row.strength_level, row.last_studied)


async def complete(attempts, exam, answers, essay_fail=False, generator=None):
    attempt = attempts.create(exam.id, USER)
    for question, text in answers:
        attempts.record_answer(attempt.id, USER, question.id, text)
    if generator is not None:
        generator.fail_essays = essay_fail
    await attempts.submit(attempt.id, USER)
    return attempt


@pytest.mark.parametrize("average,total,level", [
    (0.0, 0, "unknown"), (100.0, 0, "unknown"), (59.9, 10, "weak"), (60.0, 10, "medium"),
    (79.9, 10, "medium"), (80.0, 10, "strong"), (100.0, 1, "strong"),
])
def test_strength_thresholds(average, total, level):
    assert strength_for(average, total) == level


async def test_refresh_aggregates_completed_attempts(attempts, storage, bank, make_exam):
    exam = make_exam(USER, [bank.q1, bank.q2, bank.essay])
    await complete(attempts, exam, [(bank.q1, "A"), (bank.q2, "B"), (bank.essay, "An essay")])

    math = PerformanceAggregator(storage).refresh(USER, bank.math.id)

    assert (math.total_questions, math.correct_answers) == (2, 1)
    assert math.average_score == 50.0
    assert math.strength_level == "weak"
    assert math.last_studied is not None


async def test_refresh_is_idempotent(attempts, storage, bank, make_exam):
    exam = make_exam(USER, [bank.q1, bank.q2])
    await complete(attempts, exam, [(bank.q1, "A"), (bank.q2, "C")])
    aggregator = PerformanceAggregator(storage)

    first = snapshot(aggregator.refresh(USER, bank.math.id))
    second = snapshot(aggregator.refresh(USER, bank.math.id))

    assert first == second
    assert len(storage.list_performance(USER)) == 1


async def test_in_progress_and_pending_answers_do_not_count(attempts, storage, generator, bank, make_exam):
    exam = make_exam(USER, [bank.q1, bank.essay])
    await complete(attempts, exam, [(bank.q1, "A"), (bank.essay, "An essay")], essay_fail=True, generator=generator)
    open_attempt = attempts.create(exam.id, USER)
    attempts.record_answer(open_attempt.id, USER, bank.q1.id, "B")
    aggregator = PerformanceAggregator(storage)

    law = aggregator.refresh(USER, bank.law.id)
    math = aggregator.refresh(USER, bank.math.id)

    assert (law.total_questions, law.strength_level) == (0, "unknown")
    assert (math.total_questions, math.correct_answers) == (1, 1)


async def test_refresh_many_skips_failing_subjects(attempts, storage, bank, make_exam, monkeypatch):
    exam = make_exam(USER, [bank.q1, bank.essay])
    await complete(attempts, exam, [(bank.q1, "A"), (bank.essay, "An essay")])
    aggregator = PerformanceAggregator(storage)
    real_refresh = aggregator.refresh

    def flaky(user_id, subject_id):
        if subject_id == bank.law.id:
            raise RuntimeError("deadlock detected")
        return real_refresh(user_id, subject_id)

    monkeypatch.setattr(aggregator, "refresh", flaky)
    rows = aggregator.refresh_many(USER, [bank.math.id, bank.law.id, None])

    assert [r.subject_id for r in rows] == [bank.math.id]


async def test_refresh_all_and_stats(attempts, storage, bank, make_exam):
    exam = make_exam(USER, [bank.q1, bank.q2, bank.essay])
    await complete(attempts, exam, [(bank.q1, "A"), (bank.q2, "C"), (bank.essay, "An essay")])
    await complete(attempts, exam, [(bank.q1, "B"), (bank.essay, "Another essay")])
    attempts.create(exam.id, USER)
    aggregator = PerformanceAggregator(storage)

    rows = aggregator.refresh_all(USER)
    stats = aggregator.stats(USER)

    assert {r.subject_id for r in rows} == {bank.math.id, bank.law.id}
    assert (stats.total_attempts, stats.completed_attempts) == (3, 2)
    assert stats.average_score == pytest.approx((100 + 100 / 3) / 2)
    assert (stats.total_questions, stats.correct_answers) == (6, 4)
    assert stats.accuracy == pytest.approx(400 / 6)
    # weakest subject first
    assert [r.subject_id for r in aggregator.list_for_user(USER)][0] == bank.math.id
