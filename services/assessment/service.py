"""Assessment service: orchestration of quiz and attempt commands.

Every state-changing command follows the same shape:
load aggregate -> mutate in memory (grading happens here) -> one atomic commit.
A version conflict on commit re-runs the whole command (bounded retries), so a
racing submit/expire pair resolves to whichever commits first; the loser then
sees the settled status and fails with `StateConflictError`.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from packages.common.auth import User
from packages.common.config import get_settings
from packages.common.events import EventBus
from packages.common.rbac import can_author, can_manage
from packages.common.resilience import RetryConfig, retry_async
from packages.schemas.assessment import (
    AnswerDetail, AnswerIn, Attempt, AttemptResult, AttemptSummary, LearnerResults,
    ProctoringEvent, QuestionAnalytics, Quiz, QuizAnalyticsReport, QuizSpec, QuizUpdate,
    SimilarPair, StartedAttempt, utcnow,
)
from . import metrics
from .aggregate import QuizAggregate
from .anti_cheat import proctoring_flags, similar_answers
from .errors import ConcurrencyConflictError, NotFoundError, PolicyError, StateConflictError, ValidationError
from .grading import answer_key, exact_percentage
from .repo import AssessmentRepo

log = logging.getLogger(__name__)

T = TypeVar("T")
EventSink = Callable[[Attempt], None]


class AssessmentService:
    """Application service for quizzes and attempts.

    Args:
        repo: Storage for quiz aggregates and attempts.
        bus: Event bus used by the default graded-attempt sink.
        clock: Returns the current UTC time; injectable for expiry tests.
        retry: Retry policy for version conflicts.
        event_sink: Overrides the graded-attempt notification (fire-and-forget).
    """

    def __init__(
        self,
        repo: AssessmentRepo,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
        retry: Optional[RetryConfig] = None,
        event_sink: Optional[EventSink] = None,
    ) -> None:
        self.repo = repo
        self.bus = bus if bus is not None else EventBus()
        self.clock = clock
        self.retry = retry or RetryConfig(attempts=get_settings().ASSESSMENT_MAX_RETRIES)
        self._event_sink = event_sink or self._publish_graded

    # ----- plumbing -----

    async def _atomic(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run `fn` (load, mutate, commit) and retry it on version conflicts only."""
        return await retry_async(
            fn, self.retry, (ConcurrencyConflictError,),
            on_retry=lambda n, e: metrics.mark_retry(operation),
        )

    async def _load_managed(self, user: User, quiz_id: str) -> QuizAggregate:
        agg = await self.repo.load_quiz(quiz_id)
        if not can_manage(user, agg.quiz.created_by):
            raise PolicyError("not allowed to manage this quiz")
        return agg

    async def _load_for_attempt(self, attempt_id: str, learner: Optional[User]) -> Tuple[QuizAggregate, Attempt]:
        """Load the owning quiz first, then the attempt, so the attempt is never older than the quiz version."""
        first = await self.repo.get_attempt(attempt_id)
        if learner is not None and first.learner_id != learner.sub:
            raise PolicyError("attempt belongs to another learner")
        agg = await self.repo.load_quiz(first.quiz_id)
        return agg, await self.repo.get_attempt(attempt_id)

    def _publish_graded(self, attempt: Attempt) -> None:
        self.bus.publish(get_settings().EVENTS_TOPIC, key=attempt.id, value={
            "attempt_id": attempt.id,
            "quiz_id": attempt.quiz_id,
            "learner_id": attempt.learner_id,
            "attempt_number": attempt.attempt_number,
            "status": attempt.status,
            "score": attempt.score,
            "points_earned": attempt.points_earned,
            "submitted_at": attempt.submitted_at,
        })

    def _on_attempt_graded(self, attempt: Attempt) -> None:
        """Notify downstream consumers; failures are logged and never undo grading."""
        try:
            self._event_sink(attempt)
        except Exception:
            metrics.event_sink_failures.inc()
            log.exception("attempt-graded event not delivered",
                          extra={"ctx": {"attempt_id": attempt.id, "quiz_id": attempt.quiz_id}})

    def _after_settle(self, attempt: Attempt) -> None:
        if attempt.status != "awaiting_review":
            metrics.mark_settled(attempt.status)
        if attempt.is_graded:
            self._on_attempt_graded(attempt)

    # ----- quiz authoring -----

    async def create_quiz(self, user: User, spec: QuizSpec) -> Quiz:
        """Validate and persist a new quiz in `draft`."""
        if not can_author(user):
            raise PolicyError("only teachers and admins can create quizzes")
        agg = QuizAggregate.create(spec, user.sub, self.clock())
        await self.repo.add_quiz(agg)
        log.info("quiz created", extra={"ctx": {"quiz_id": agg.quiz.id, "questions": len(agg.quiz.questions)}})
        return agg.quiz

    async def get_quiz(self, user: User, quiz_id: str) -> Dict[str, Any]:
        """Full quiz for managers; published quizzes without answer keys for everyone else."""
        agg = await self.repo.load_quiz(quiz_id)
        if can_manage(user, agg.quiz.created_by):
            return agg.quiz.model_dump(mode="json")
        if agg.quiz.status != "published":
            raise NotFoundError(f"quiz {quiz_id} not found")
        return agg.learner_view(seed=f"{quiz_id}:{user.sub}")

    async def update_quiz(self, user: User, quiz_id: str, patch: QuizUpdate) -> Quiz:
        async def op() -> Quiz:
            agg = await self._load_managed(user, quiz_id)
            agg.update(patch, self.clock())
            await self.repo.commit(agg)
            return agg.quiz
        quiz = await self._atomic("update_quiz", op)
        log.info("quiz updated", extra={"ctx": {"quiz_id": quiz_id, "fields": sorted(patch.model_fields_set)}})
        return quiz

    async def publish_quiz(self, user: User, quiz_id: str) -> datetime:
        """draft -> published; returns the (first) publish timestamp."""
        async def op() -> datetime:
            agg = await self._load_managed(user, quiz_id)
            already = agg.quiz.status == "published"
            published_at = agg.publish(self.clock())
            if not already:
                await self.repo.commit(agg)
                log.info("quiz published", extra={"ctx": {"quiz_id": quiz_id}})
            return published_at
        return await self._atomic("publish_quiz", op)

    async def archive_quiz(self, user: User, quiz_id: str) -> Quiz:
        async def op() -> Quiz:
            agg = await self._load_managed(user, quiz_id)
            if agg.quiz.status != "archived":
                agg.archive(self.clock())
                await self.repo.commit(agg)
            return agg.quiz
        return await self._atomic("archive_quiz", op)

    async def delete_quiz(self, user: User, quiz_id: str) -> None:
        async def op() -> None:
            agg = await self._load_managed(user, quiz_id)
            agg.ensure_deletable()
            await self.repo.delete_quiz(agg)
        await self._atomic("delete_quiz", op)
        log.info("quiz deleted", extra={"ctx": {"quiz_id": quiz_id}})

    # ----- attempt lifecycle -----

    async def start_attempt(
        self,
        quiz_id: str,
        learner: User,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> StartedAttempt:
        """Create the learner's next attempt.

        Raises:
            AttemptAlreadyInProgress: The learner has an unfinished attempt.
            AttemptLimitExceeded: `max_attempts` reached or retakes disabled.
            StateConflictError: Quiz not published or past its deadline.
        """
        async def op() -> Attempt:
            agg = await self.repo.load_quiz(quiz_id)
            previous = await self.repo.learner_attempts(quiz_id, learner.sub)
            attempt = agg.start_attempt(learner.sub, previous, self.clock())
            attempt.ip_address, attempt.user_agent = ip_address, user_agent
            await self.repo.commit(agg, new_attempts=[attempt])
            return attempt
        attempt = await self._atomic("start_attempt", op)
        metrics.attempts_started.inc()
        log.info("attempt started", extra={"ctx": {
            "quiz_id": quiz_id, "attempt_id": attempt.id, "attempt_number": attempt.attempt_number}})
        return StartedAttempt(attempt_id=attempt.id, attempt_number=attempt.attempt_number,
                              started_at=attempt.started_at, expires_at=attempt.expires_at)

    async def save_answers(self, attempt_id: str, learner: User, answers: Sequence[AnswerIn]) -> Attempt:
        """Store answers on an in-progress attempt without grading them."""
        async def op() -> Attempt:
            agg, attempt = await self._load_for_attempt(attempt_id, learner)
            agg.save_answers(attempt, answers, self.clock())
            await self.repo.commit(agg, attempts=[attempt])
            return attempt
        return await self._atomic("save_answers", op)

    async def record_proctoring_event(self, attempt_id: str, learner: User, event: ProctoringEvent) -> int:
        """Append to the attempt's proctoring log; returns the log length."""
        async def op() -> int:
            agg, attempt = await self._load_for_attempt(attempt_id, learner)
            agg.record_proctoring(attempt, event)
            await self.repo.commit(agg, attempts=[attempt])
            return len(attempt.proctoring)
        return await self._atomic("record_proctoring_event", op)

    async def submit_attempt(self, attempt_id: str, learner: User, answers: Sequence[AnswerIn]) -> AttemptResult:
        """Grade the attempt once and settle it (or hold it for manual review)."""
        async def op() -> Tuple[QuizAggregate, Attempt]:
            agg, attempt = await self._load_for_attempt(attempt_id, learner)
            with metrics.grading_seconds.time():
                agg.submit(attempt, answers, self.clock())
            await self.repo.commit(agg, attempts=[attempt])
            return agg, attempt
        agg, attempt = await self._atomic("submit_attempt", op)
        self._after_settle(attempt)
        return self._result(agg, attempt, full_access=False)

    async def expire_attempt(self, attempt_id: str) -> AttemptResult:
        """System-initiated: grade whatever answers exist once the time limit has elapsed."""
        async def op() -> Tuple[QuizAggregate, Attempt]:
            agg, attempt = await self._load_for_attempt(attempt_id, None)
            with metrics.grading_seconds.time():
                agg.expire(attempt, self.clock())
            await self.repo.commit(agg, attempts=[attempt])
            return agg, attempt
        agg, attempt = await self._atomic("expire_attempt", op)
        log.info("attempt expired", extra={"ctx": {"attempt_id": attempt_id, "status": attempt.status}})
        self._after_settle(attempt)
        return self._result(agg, attempt, full_access=True)

    async def expire_overdue(self, limit: int = 100) -> int:
        """Expire every in-progress attempt past its time limit; returns how many were expired."""
        expired = 0
        for attempt_id in await self.repo.overdue_attempt_ids(self.clock(), limit):
            try:
                await self.expire_attempt(attempt_id)
            except StateConflictError as e:
                # submitted or abandoned between the scan and the expiry
                log.info("expiry skipped", extra={"ctx": {"attempt_id": attempt_id, "reason": e.detail}})
                continue
            except Exception:
                metrics.expiry_failures.inc()
                log.exception("expiry failed", extra={"ctx": {"attempt_id": attempt_id}})
                continue
            expired += 1
        return expired

    async def abandon_attempt(self, attempt_id: str, learner: User) -> AttemptResult:
        """Mark the attempt abandoned; no grading, but abandonment analytics update."""
        async def op() -> Tuple[QuizAggregate, Attempt]:
            agg, attempt = await self._load_for_attempt(attempt_id, learner)
            agg.abandon(attempt, self.clock())
            agg.refresh_analytics()
            await self.repo.commit(agg, attempts=[attempt])
            return agg, attempt
        agg, attempt = await self._atomic("abandon_attempt", op)
        self._after_settle(attempt)
        return self._result(agg, attempt, full_access=False)

    async def review_answer(self, user: User, attempt_id: str, question_id: str, points: float) -> AttemptResult:
        """Record reviewer points for an essay/code answer."""
        async def op() -> Tuple[QuizAggregate, Attempt]:
            agg, attempt = await self._load_for_attempt(attempt_id, None)
            if not can_manage(user, agg.quiz.created_by):
                raise PolicyError("not allowed to review attempts of this quiz")
            agg.review(attempt, question_id, points, user.sub, self.clock())
            await self.repo.commit(agg, attempts=[attempt])
            return agg, attempt
        agg, attempt = await self._atomic("review_answer", op)
        log.info("answer reviewed", extra={"ctx": {
            "attempt_id": attempt_id, "question_id": question_id, "status": attempt.status}})
        self._after_settle(attempt)
        return self._result(agg, attempt, full_access=True)

    # ----- reads -----

    def _details_visible(self, agg: QuizAggregate) -> bool:
        policy = agg.quiz.settings.show_results
        if policy in ("immediately", "after_submission"):
            return True
        if policy == "after_deadline":
            return agg.quiz.deadline is not None and self.clock() >= agg.quiz.deadline
        return False

    def _result(self, agg: QuizAggregate, attempt: Attempt, full_access: bool) -> AttemptResult:
        quiz, s = agg.quiz, agg.quiz.settings
        details: Optional[List[AnswerDetail]] = None
        if full_access or self._details_visible(agg):
            details = []
            for a in attempt.answers:
                q = quiz.question(a.question_id)
                if q is None:
                    continue
                details.append(AnswerDetail(
                    question_id=a.question_id,
                    is_correct=a.is_correct,
                    points_earned=a.points_earned,
                    max_points=q.points,
                    needs_review=a.needs_review,
                    correct_answer=answer_key(q) if full_access or s.show_correct_answers else None,
                    explanation=q.explanation if full_access or s.show_explanations else None,
                ))
        return AttemptResult(
            attempt_id=attempt.id,
            quiz_id=attempt.quiz_id,
            learner_id=attempt.learner_id,
            attempt_number=attempt.attempt_number,
            status=attempt.status,
            score=attempt.score,
            points_earned=attempt.points_earned,
            total_points=quiz.total_points,
            percentage=exact_percentage(attempt.points_earned, quiz.total_points) if attempt.is_graded else 0.0,
            passed=agg.passed(attempt),
            submitted_at=attempt.submitted_at,
            time_spent=attempt.time_spent,
            answers=details,
            proctoring_flags=proctoring_flags(attempt.proctoring) if full_access else None,
        )

    async def get_results(self, attempt_id: str, user: User) -> AttemptResult:
        """Results of one attempt, for its learner or a quiz manager."""
        attempt = await self.repo.get_attempt(attempt_id)
        agg = await self.repo.load_quiz(attempt.quiz_id)
        manager = can_manage(user, agg.quiz.created_by)
        if not manager and attempt.learner_id != user.sub:
            raise PolicyError("attempt belongs to another learner")
        if attempt.status == "in_progress":
            raise StateConflictError("attempt has not been submitted")
        return self._result(agg, attempt, full_access=manager)

    def _summary(self, agg: QuizAggregate, a: Attempt) -> AttemptSummary:
        return AttemptSummary(attempt_id=a.id, attempt_number=a.attempt_number, status=a.status,
                              score=a.score, passed=agg.passed(a), submitted_at=a.submitted_at,
                              time_spent=a.time_spent)

    async def get_learner_results(self, quiz_id: str, learner_id: str, user: User) -> LearnerResults:
        """Best and most recent graded attempts of `learner_id` on `quiz_id`."""
        agg = await self.repo.load_quiz(quiz_id)
        if user.sub != learner_id and not can_manage(user, agg.quiz.created_by):
            raise PolicyError("not allowed to view another learner's results")
        graded = [a for a in await self.repo.learner_attempts(quiz_id, learner_id) if a.is_graded]
        if not graded:
            raise NotFoundError("no submissions found")
        best = max(graded, key=lambda a: (a.score or 0, -a.attempt_number))
        recent = max(graded, key=lambda a: (a.submitted_at or a.started_at, a.attempt_number))
        return LearnerResults(
            quiz_id=quiz_id,
            quiz_title=agg.quiz.title,
            learner_id=learner_id,
            total_attempts=len(graded),
            best=self._summary(agg, best),
            most_recent=self._summary(agg, recent),
            attempts=[self._summary(agg, a) for a in graded],
        )

    async def get_quiz_analytics(self, user: User, quiz_id: str) -> QuizAnalyticsReport:
        agg = await self._load_managed(user, quiz_id)
        questions = []
        for q in sorted(agg.quiz.questions, key=lambda q: q.order):
            st = q.analytics
            questions.append(QuestionAnalytics(
                question_id=q.id, text=q.text, type=q.type, points=q.points,
                total_attempts=st.total_attempts, correct_attempts=st.correct_attempts,
                accuracy=round(st.correct_attempts / st.total_attempts * 100, 2) if st.total_attempts else 0.0,
                average_time=st.average_time, difficulty_score=st.difficulty_score,
            ))
        return QuizAnalyticsReport(
            quiz_id=quiz_id,
            title=agg.quiz.title,
            total_points=agg.quiz.total_points,
            unique_learners=await self.repo.count_learners(quiz_id),
            analytics=agg.quiz.analytics,
            questions=questions,
        )

    async def similar_essays(self, user: User, quiz_id: str, question_id: str) -> List[SimilarPair]:
        agg = await self._load_managed(user, quiz_id)
        q = agg.quiz.question(question_id)
        if q is None:
            raise NotFoundError(f"unknown question id {question_id}")
        if q.type != "essay":
            raise ValidationError("similarity checks apply to essay questions only")
        attempts = await self.repo.quiz_attempts(quiz_id, statuses=("awaiting_review", "submitted", "auto_submitted"))
        return similar_answers(attempts, question_id)
