"""Assessment service against a real (SQLite) repository."""

import asyncio

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import update

from packages.common.config import get_settings
from packages.common.resilience import RetryConfig
from packages.schemas.assessment import ProctoringEvent, QuizSettings, QuizUpdate
from services.assessment.errors import (
    AttemptLimitExceeded, ConcurrencyConflictError, NotFoundError, PolicyError, StateConflictError,
    ValidationError,
)
from services.assessment.expiry import ExpirySweeper
from services.assessment.models import AttemptRow
from services.assessment.repo import AssessmentRepo
from services.assessment.service import AssessmentService
from services.assessment.tests.helpers import (
    ADMIN, LEARNER, LEARNER_B, OTHER_TEACHER, TEACHER, answers, essay, mcq, spec, true_false,
)


async def _publish(service, *questions, **settings) -> str:
    quiz = await service.create_quiz(TEACHER, spec(*(questions or (mcq(), true_false())), **settings))
    await service.publish_quiz(TEACHER, quiz.id)
    return quiz.id


@pytest.mark.asyncio
async def test_submit_scores_and_notifies(service, events) -> None:
    quiz_id = await _publish(service, passing_score=70)
    started = await service.start_attempt(quiz_id, LEARNER)
    assert started.attempt_number == 1

    result = await service.submit_attempt(started.attempt_id, LEARNER, answers(q_mc=["a", "c"], q_tf=False))

    assert result.status == "submitted"
    assert result.score == 50
    assert result.passed is False
    assert result.total_points == 2
    assert [e.id for e in events] == [started.attempt_id]
    report = await service.get_quiz_analytics(TEACHER, quiz_id)
    assert report.analytics.total_attempts == 1
    assert report.analytics.average_score == 50.0
    assert report.unique_learners == 1
    by_id = {q.question_id: q for q in report.questions}
    assert by_id["q-mc"].accuracy == 100.0
    assert by_id["q-tf"].difficulty_score == 10.0


@pytest.mark.asyncio
async def test_single_attempt_quiz_rejects_second_start(service) -> None:
    quiz_id = await _publish(service, max_attempts=1)
    started = await service.start_attempt(quiz_id, LEARNER)
    await service.submit_attempt(started.attempt_id, LEARNER, answers(q_mc=["a"]))
    with pytest.raises(AttemptLimitExceeded):
        await service.start_attempt(quiz_id, LEARNER)
    other = await service.start_attempt(quiz_id, LEARNER_B)
    assert other.attempt_number == 1


@pytest.mark.asyncio
async def test_submit_after_expiry_conflicts(service, clock, events) -> None:
    quiz_id = await _publish(service, time_limit=1)
    started = await service.start_attempt(quiz_id, LEARNER)
    await service.save_answers(started.attempt_id, LEARNER, answers(q_tf=True))
    clock.advance(minutes=2)

    expired = await service.expire_attempt(started.attempt_id)
    assert expired.status == "auto_submitted"
    assert expired.score == 50
    assert expired.time_spent == 60

    with pytest.raises(StateConflictError):
        await service.submit_attempt(started.attempt_id, LEARNER, answers(q_mc=["a", "c"]))
    assert len(events) == 1


@pytest.mark.asyncio
async def test_expire_overdue_sweeps_only_elapsed_attempts(service, clock) -> None:
    quiz_id = await _publish(service, time_limit=5)
    a = await service.start_attempt(quiz_id, LEARNER)
    clock.advance(minutes=3)
    b = await service.start_attempt(quiz_id, LEARNER_B)
    clock.advance(minutes=3)

    assert await service.expire_overdue() == 1
    assert (await service.get_results(a.attempt_id, LEARNER)).status == "auto_submitted"
    with pytest.raises(StateConflictError):
        await service.get_results(b.attempt_id, LEARNER_B)

    clock.advance(minutes=10)
    assert await ExpirySweeper(service, interval=60).sweep_once() == 1
    assert await service.expire_overdue() == 0


@pytest.mark.asyncio
async def test_sweeper_task_starts_and_stops(service) -> None:
    sweeper = ExpirySweeper(service, interval=0.01)
    sweeper.start()
    await asyncio.sleep(0.05)
    await sweeper.stop()
    assert sweeper._task is None


@pytest.mark.asyncio
async def test_essay_waits_for_review(service, events) -> None:
    quiz_id = await _publish(service, essay(points=10), passing_score=60)
    started = await service.start_attempt(quiz_id, LEARNER)
    pending = await service.submit_attempt(started.attempt_id, LEARNER, answers(q_essay="Light becomes sugar"))
    assert pending.status == "awaiting_review"
    assert pending.score is None and pending.passed is None
    assert events == []

    with pytest.raises(PolicyError):
        await service.review_answer(LEARNER, started.attempt_id, "q-essay", 10)

    reviewed = await service.review_answer(TEACHER, started.attempt_id, "q-essay", 7)
    assert reviewed.status == "submitted"
    assert reviewed.score == 70
    assert reviewed.passed is True
    assert reviewed.answers[0].is_correct is True
    assert len(events) == 1


@pytest.mark.asyncio
async def test_low_review_marks_answer_incorrect(service) -> None:
    quiz_id = await _publish(service, essay(points=10))
    started = await service.start_attempt(quiz_id, LEARNER)
    await service.submit_attempt(started.attempt_id, LEARNER, answers(q_essay="Not sure"))
    reviewed = await service.review_answer(TEACHER, started.attempt_id, "q-essay", 5)
    assert reviewed.score == 50
    assert reviewed.answers[0].is_correct is False


@pytest.mark.asyncio
async def test_review_points_cannot_exceed_question_points(service) -> None:
    quiz_id = await _publish(service, essay(points=4))
    started = await service.start_attempt(quiz_id, LEARNER)
    await service.submit_attempt(started.attempt_id, LEARNER, answers(q_essay="text"))
    with pytest.raises(ValidationError):
        await service.review_answer(TEACHER, started.attempt_id, "q-essay", 5)
    assert (await service.get_results(started.attempt_id, TEACHER)).status == "awaiting_review"


@pytest.mark.asyncio
async def test_stale_commit_is_rejected(service, repo) -> None:
    quiz_id = await _publish(service, time_limit=1)
    started = await service.start_attempt(quiz_id, LEARNER)
    stale = await repo.load_quiz(quiz_id)
    stale_attempt = await repo.get_attempt(started.attempt_id)

    await service.submit_attempt(started.attempt_id, LEARNER, answers(q_tf=True))

    stale.expire(stale_attempt, stale_attempt.expires_at)
    with pytest.raises(ConcurrencyConflictError):
        await repo.commit(stale, attempts=[stale_attempt])
    assert (await repo.get_attempt(started.attempt_id)).status == "submitted"


class FlakyRepo(AssessmentRepo):
    """Fails the first `failures` commits with a version conflict."""

    def __init__(self, engine, failures: int) -> None:
        super().__init__(engine)
        self.failures = failures
        self.commits = 0

    async def commit(self, agg, attempts=(), new_attempts=()):
        self.commits += 1
        if self.commits <= self.failures:
            raise ConcurrencyConflictError("simulated concurrent writer")
        return await super().commit(agg, attempts, new_attempts)


@pytest.mark.asyncio
async def test_conflicts_are_retried(repo, clock) -> None:
    flaky = FlakyRepo(repo.engine, failures=2)
    svc = AssessmentService(flaky, clock=clock, retry=RetryConfig(attempts=3, base_delay=0.0), event_sink=lambda a: None)
    quiz = await svc.create_quiz(TEACHER, spec(mcq(), true_false()))
    published_at = await svc.publish_quiz(TEACHER, quiz.id)
    assert published_at == clock()
    assert flaky.commits == 3


@pytest.mark.asyncio
async def test_conflict_surfaces_after_retry_budget(repo, clock) -> None:
    flaky = FlakyRepo(repo.engine, failures=10)
    svc = AssessmentService(flaky, clock=clock, retry=RetryConfig(attempts=3, base_delay=0.0), event_sink=lambda a: None)
    quiz = await svc.create_quiz(TEACHER, spec(mcq()))
    with pytest.raises(ConcurrencyConflictError):
        await svc.publish_quiz(TEACHER, quiz.id)
    assert flaky.commits == 3
    assert (await repo.load_quiz(quiz.id)).quiz.status == "draft"


@pytest.mark.asyncio
async def test_event_sink_failure_keeps_grade(repo, clock) -> None:
    def broken_sink(attempt):
        raise RuntimeError("broker down")

    svc = AssessmentService(repo, clock=clock, retry=RetryConfig(attempts=3, base_delay=0.0), event_sink=broken_sink)
    quiz = await svc.create_quiz(TEACHER, spec(mcq(), true_false()))
    await svc.publish_quiz(TEACHER, quiz.id)
    started = await svc.start_attempt(quiz.id, LEARNER)
    result = await svc.submit_attempt(started.attempt_id, LEARNER, answers(q_mc=["a", "c"], q_tf=True))
    assert result.score == 100
    assert (await repo.get_attempt(started.attempt_id)).status == "submitted"


@pytest.mark.asyncio
async def test_authorization_rules(service) -> None:
    with pytest.raises(PolicyError):
        await service.create_quiz(LEARNER, spec(mcq()))
    quiz_id = await _publish(service)
    with pytest.raises(PolicyError):
        await service.update_quiz(OTHER_TEACHER, quiz_id, QuizUpdate(title="mine now"))
    await service.update_quiz(ADMIN, quiz_id, QuizUpdate(title="Renamed"))

    started = await service.start_attempt(quiz_id, LEARNER)
    with pytest.raises(PolicyError):
        await service.submit_attempt(started.attempt_id, LEARNER_B, answers(q_tf=True))
    with pytest.raises(PolicyError):
        await service.get_quiz_analytics(LEARNER, quiz_id)


@pytest.mark.asyncio
async def test_result_visibility_follows_settings(service) -> None:
    quiz_id = await _publish(service, show_results="never")
    started = await service.start_attempt(quiz_id, LEARNER)
    result = await service.submit_attempt(started.attempt_id, LEARNER, answers(q_mc=["a"], q_tf=True))
    assert result.answers is None
    assert result.score == 50

    full = await service.get_results(started.attempt_id, TEACHER)
    assert full.answers[0].correct_answer == ["a", "c"]
    assert full.proctoring_flags == {}


@pytest.mark.asyncio
async def test_correct_answers_hidden_when_disabled(service) -> None:
    quiz_id = await _publish(service, show_correct_answers=False, show_explanations=False)
    started = await service.start_attempt(quiz_id, LEARNER)
    result = await service.submit_attempt(started.attempt_id, LEARNER, answers(q_mc=["a"]))
    assert result.answers is not None
    assert all(a.correct_answer is None and a.explanation is None for a in result.answers)


@pytest.mark.asyncio
async def test_learner_results_best_and_recent(service, clock) -> None:
    quiz_id = await _publish(service, max_attempts=3)
    with pytest.raises(NotFoundError):
        await service.get_learner_results(quiz_id, LEARNER.sub, LEARNER)

    for picks in (["a", "c"], []):
        started = await service.start_attempt(quiz_id, LEARNER)
        clock.advance(minutes=1)
        await service.submit_attempt(started.attempt_id, LEARNER, answers(q_mc=picks, q_tf=True))

    summary = await service.get_learner_results(quiz_id, LEARNER.sub, LEARNER)
    assert summary.total_attempts == 2
    assert summary.best.attempt_number == 1 and summary.best.score == 100
    assert summary.most_recent.attempt_number == 2 and summary.most_recent.score == 50
    with pytest.raises(PolicyError):
        await service.get_learner_results(quiz_id, LEARNER.sub, LEARNER_B)


@pytest.mark.asyncio
async def test_frozen_key_through_service(service) -> None:
    quiz_id = await _publish(service)
    started = await service.start_attempt(quiz_id, LEARNER)
    await service.submit_attempt(started.attempt_id, LEARNER, answers(q_tf=True))
    with pytest.raises(StateConflictError):
        await service.update_quiz(TEACHER, quiz_id, QuizUpdate(questions=[mcq(correct=("b",)), true_false()]))
    quiz = await service.update_quiz(TEACHER, quiz_id, QuizUpdate(settings=QuizSettings(max_attempts=10)))
    assert quiz.settings.max_attempts == 10


@pytest.mark.asyncio
async def test_delete_only_without_attempts(service) -> None:
    draft = await service.create_quiz(TEACHER, spec(mcq()))
    await service.delete_quiz(TEACHER, draft.id)
    with pytest.raises(NotFoundError):
        await service.get_quiz(TEACHER, draft.id)

    quiz_id = await _publish(service)
    await service.start_attempt(quiz_id, LEARNER)
    with pytest.raises(StateConflictError):
        await service.delete_quiz(TEACHER, quiz_id)
    archived = await service.archive_quiz(TEACHER, quiz_id)
    assert archived.status == "archived"


@pytest.mark.asyncio
async def test_abandon_updates_analytics(service) -> None:
    quiz_id = await _publish(service)
    started = await service.start_attempt(quiz_id, LEARNER)
    await service.record_proctoring_event(started.attempt_id, LEARNER, ProctoringEvent(kind="tab_switch"))
    result = await service.abandon_attempt(started.attempt_id, LEARNER)
    assert result.status == "abandoned"
    report = await service.get_quiz_analytics(TEACHER, quiz_id)
    assert report.analytics.abandonment_rate == 100.0
    assert report.analytics.graded_attempts == 0


@pytest.mark.asyncio
async def test_learners_see_published_quizzes_without_keys(service) -> None:
    draft = await service.create_quiz(TEACHER, spec(mcq()))
    with pytest.raises(NotFoundError):
        await service.get_quiz(LEARNER, draft.id)
    await service.publish_quiz(TEACHER, draft.id)
    view = await service.get_quiz(LEARNER, draft.id)
    assert "is_correct" not in str(view)
    full = await service.get_quiz(TEACHER, draft.id)
    assert full["questions"][0]["options"][0]["is_correct"] is True


@pytest.mark.asyncio
async def test_similar_essays_pairs_different_learners(service) -> None:
    quiz_id = await _publish(service, essay(points=10), mcq())
    text = "plants turn sunlight water and carbon dioxide into glucose and oxygen"
    for learner in (LEARNER, LEARNER_B):
        started = await service.start_attempt(quiz_id, learner)
        await service.submit_attempt(started.attempt_id, learner, answers(q_essay=text))
    pairs = await service.similar_essays(TEACHER, quiz_id, "q-essay")
    assert len(pairs) == 1
    assert {pairs[0].learner_a, pairs[0].learner_b} == {LEARNER.sub, LEARNER_B.sub}
    with pytest.raises(ValidationError):
        await service.similar_essays(TEACHER, quiz_id, "q-mc")


@pytest.mark.asyncio
async def test_two_choice_questions_half_score(service) -> None:
    q1 = mcq(qid="q-1", correct=("A",), options=("A", "B", "C"), points=5, order=0)
    q2 = mcq(qid="q-2", correct=("B", "C"), options=("A", "B", "C"), points=5, order=1)
    quiz_id = await _publish(service, q1, q2)
    started = await service.start_attempt(quiz_id, LEARNER)
    result = await service.submit_attempt(started.attempt_id, LEARNER, answers(q_1=["A"], q_2=["B"]))
    assert result.total_points == 10
    assert result.points_earned == 5.0
    assert result.score == 50
    assert [a.is_correct for a in result.answers] == [True, False]

    again = await service.get_results(started.attempt_id, LEARNER)
    assert (again.status, again.score) == ("submitted", 50)


@pytest.mark.asyncio
async def test_null_title_is_rejected_and_quiz_still_loads(service, repo) -> None:
    quiz = await service.create_quiz(TEACHER, spec(mcq(), title="Algebra"))
    for patch in (QuizUpdate(title=None), QuizUpdate(type=None), QuizUpdate(weightage=None)):
        with pytest.raises(ValidationError):
            await service.update_quiz(TEACHER, quiz.id, patch)
    assert (await repo.load_quiz(quiz.id)).quiz.title == "Algebra"
    assert (await service.get_quiz(TEACHER, quiz.id))["title"] == "Algebra"


@pytest.mark.asyncio
async def test_removed_question_drops_saved_answer(service) -> None:
    quiz_id = await _publish(service)
    started = await service.start_attempt(quiz_id, LEARNER)
    await service.save_answers(started.attempt_id, LEARNER, answers(q_tf=True))
    await service.update_quiz(TEACHER, quiz_id, QuizUpdate(questions=[mcq()]))

    result = await service.submit_attempt(started.attempt_id, LEARNER, answers(q_mc=["a", "c"]))
    assert result.status == "submitted"
    assert result.score == 100
    assert [a.question_id for a in result.answers] == ["q-mc"]


@pytest.mark.asyncio
async def test_retyped_question_clears_saved_value_on_expiry(service, repo, clock) -> None:
    quiz_id = await _publish(service, time_limit=1)
    a = await service.start_attempt(quiz_id, LEARNER)
    b = await service.start_attempt(quiz_id, LEARNER_B)
    await service.save_answers(a.attempt_id, LEARNER, answers(q_tf=True))
    await service.save_answers(b.attempt_id, LEARNER_B, answers(q_mc=["a", "c"]))
    await service.update_quiz(TEACHER, quiz_id, QuizUpdate(questions=[mcq(), mcq(qid="q-tf", order=1)]))
    clock.advance(minutes=2)

    assert await service.expire_overdue() == 2
    first, second = await repo.get_attempt(a.attempt_id), await repo.get_attempt(b.attempt_id)
    assert first.status == second.status == "auto_submitted"
    tf = next(x for x in first.answers if x.question_id == "q-tf")
    assert tf.value is None and tf.is_correct is False
    assert first.score == 0 and second.score == 50


@pytest.mark.asyncio
async def test_sweep_continues_past_a_broken_attempt(service, repo, clock) -> None:
    quiz_id = await _publish(service, time_limit=1)
    broken = await service.start_attempt(quiz_id, LEARNER)
    clock.advance(seconds=10)
    healthy = await service.start_attempt(quiz_id, LEARNER_B)
    async with repo.Session() as session, session.begin():
        await session.execute(
            update(AttemptRow).where(AttemptRow.id == broken.attempt_id).values(doc={"id": broken.attempt_id})
        )
    clock.advance(minutes=2)
    failures = REGISTRY.get_sample_value("assessment_expiry_failures_total")

    assert await ExpirySweeper(service, interval=60).sweep_once() == 1
    assert (await repo.get_attempt(healthy.attempt_id)).status == "auto_submitted"
    assert REGISTRY.get_sample_value("assessment_expiry_failures_total") == failures + 1


class RecordingBus:
    def __init__(self) -> None:
        self.sent = []

    def publish(self, topic, key, value) -> None:
        self.sent.append((topic, key, value))


@pytest.mark.asyncio
async def test_graded_event_goes_to_injected_bus(repo, clock) -> None:
    bus = RecordingBus()
    svc = AssessmentService(repo, bus=bus, clock=clock, retry=RetryConfig(attempts=3, base_delay=0.0))
    quiz = await svc.create_quiz(TEACHER, spec(mcq()))
    await svc.publish_quiz(TEACHER, quiz.id)
    started = await svc.start_attempt(quiz.id, LEARNER)
    await svc.submit_attempt(started.attempt_id, LEARNER, answers(q_mc=["a", "c"]))

    [(topic, key, value)] = bus.sent
    assert topic == get_settings().EVENTS_TOPIC
    assert key == started.attempt_id
    assert value["score"] == 100 and value["status"] == "submitted"
