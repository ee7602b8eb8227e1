"""Quiz aggregate: the consistency boundary of the assessment engine.

`QuizAggregate` wraps a `Quiz` (questions + settings) and its analytics
counters, and owns every state transition of the quiz and of the attempts
handed to it. Methods mutate in memory only; the repository commits the
result atomically (see `repo.AssessmentRepo.commit`).

Invariants held here:
- `total_points` is derived from the question list (never stored separately).
- attempt numbers per learner increase by one; at most one attempt in progress;
  the attempt count never exceeds `max_attempts`.
- only `in_progress` attempts accept answers or get graded; grading is single-shot.
- once any attempt has settled, edits that could change the meaning of stored
  answers are rejected (the answer key is frozen).
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError as SchemaError

from packages.schemas.assessment import (
    GRADED_STATUSES, Answer, AnswerIn, Attempt, FinalStatus, ProctoringEvent, Question,
    Quiz, QuizSpec, QuizUpdate,
)
from .analytics import AnalyticsCounters, record_question_outcome
from .errors import (
    AttemptAlreadyInProgress, AttemptLimitExceeded, NotFoundError, StateConflictError, ValidationError,
)
from .grading import grade, grade_answers, key_problems, score_percentage, total_points_earned

log = logging.getLogger(__name__)

MAX_PROCTORING_EVENTS = 500
REQUIRED_QUIZ_FIELDS = {"title", "type", "weightage", "questions", "settings"}


def validate_questions(questions: Sequence[Question]) -> None:
    """Reject empty quizzes, duplicate ids and malformed answer keys."""
    if not questions:
        raise ValidationError("a quiz needs at least one question")
    ids = [q.id for q in questions]
    if len(set(ids)) != len(ids):
        raise ValidationError("question ids must be unique within a quiz")
    for i, q in enumerate(questions, start=1):
        problems = key_problems(q)
        if problems:
            raise ValidationError(f"question {i} ({q.id}): {'; '.join(problems)}")


def validate_settings(quiz: Quiz) -> None:
    s = quiz.settings
    if s.max_attempts < 1:
        raise ValidationError("max_attempts must be a positive integer")
    if not 0 <= s.passing_score <= 100:
        raise ValidationError("passing_score must be within 0..100")


class QuizAggregate:
    """A quiz plus its analytics counters, as loaded for one command."""

    def __init__(self, quiz: Quiz, counters: Optional[AnalyticsCounters] = None) -> None:
        self.quiz = quiz
        self.counters = counters or AnalyticsCounters()
        self.expected_version = quiz.version

    # ----- quiz lifecycle -----

    @classmethod
    def create(cls, spec: QuizSpec, created_by: Optional[str], now: datetime) -> "QuizAggregate":
        """Build a draft quiz from `spec` after validating its questions and settings."""
        quiz = Quiz(**spec.model_dump(), created_by=created_by, created_at=now, updated_at=now)
        validate_questions(quiz.questions)
        validate_settings(quiz)
        return cls(quiz)

    @property
    def has_settled_attempts(self) -> bool:
        return self.counters.settled_attempts > 0

    def _questions_by_id(self) -> Dict[str, Question]:
        return {q.id: q for q in self.quiz.questions}

    def publish(self, now: datetime) -> datetime:
        """draft -> published; sets `published_at` once. Re-publishing is a no-op."""
        if self.quiz.status == "archived":
            raise StateConflictError("archived quizzes cannot be published")
        validate_questions(self.quiz.questions)
        validate_settings(self.quiz)
        if self.quiz.published_at is None:
            self.quiz.published_at = now
        if self.quiz.status != "published":
            self.quiz.status = "published"
            self.quiz.updated_at = now
        return self.quiz.published_at

    def archive(self, now: datetime) -> None:
        if self.quiz.status != "archived":
            self.quiz.status = "archived"
            self.quiz.updated_at = now

    def ensure_deletable(self) -> None:
        if self.counters.total_attempts:
            raise StateConflictError("quizzes with attempts cannot be deleted; archive instead")

    def update(self, patch: QuizUpdate, now: datetime) -> None:
        """Apply a partial update, enforcing the frozen-key rule once attempts have settled."""
        if self.quiz.status == "archived":
            raise StateConflictError("archived quizzes cannot be edited")
        fields = patch.model_fields_set
        for name in sorted(fields & REQUIRED_QUIZ_FIELDS):
            if getattr(patch, name) is None:
                raise ValidationError(f"{name} cannot be null")
        candidate = self.quiz.model_copy(deep=True)
        for name in fields & {"title", "description", "instructions", "type", "weightage", "deadline"}:
            setattr(candidate, name, getattr(patch, name))
        if "settings" in fields:
            candidate.settings = patch.settings
        if "questions" in fields:
            stats = {q.id: q.analytics for q in self.quiz.questions}
            questions = [q.model_copy(deep=True) for q in patch.questions]
            for q in questions:
                if q.id in stats:
                    q.analytics = stats[q.id].model_copy()
            candidate.questions = questions
        validate_questions(candidate.questions)
        validate_settings(candidate)
        if self.has_settled_attempts:
            self._guard_frozen_key(candidate)
        candidate.updated_at = now
        try:
            # setattr above skips validation; the stored document must load again
            self.quiz = Quiz.model_validate(candidate.model_dump(exclude={"total_points"}))
        except SchemaError as e:
            raise ValidationError(f"invalid quiz update: {e.errors()[0]['msg']}") from e

    def _guard_frozen_key(self, candidate: Quiz) -> None:
        old, new = self.quiz, candidate
        if {q.id for q in old.questions} != {q.id for q in new.questions}:
            raise StateConflictError("questions cannot be added or removed once attempts exist; create a new quiz revision")
        new_by_id = {q.id: q for q in new.questions}
        for q in old.questions:
            if q.grading_fingerprint() != new_by_id[q.id].grading_fingerprint():
                raise StateConflictError(
                    f"answer key, type or points of question {q.id} cannot change once attempts exist; "
                    "create a new quiz revision"
                )
        before, after = old.settings, new.settings
        if after.passing_score != before.passing_score:
            raise StateConflictError("passing_score cannot change once attempts exist")
        if after.max_attempts < before.max_attempts:
            raise StateConflictError("max_attempts cannot be lowered once attempts exist")
        if before.allow_retake and not after.allow_retake:
            raise StateConflictError("retakes cannot be disabled once attempts exist")

    # ----- attempt lifecycle -----

    def start_attempt(self, learner_id: str, previous: Sequence[Attempt], now: datetime) -> Attempt:
        """Create the learner's next attempt, enforcing publish state, deadline and ceilings.

        Args:
            learner_id: The learner starting the attempt.
            previous: Every earlier attempt of this learner on this quiz.
            now: Current time.
        """
        quiz, s = self.quiz, self.quiz.settings
        if quiz.status != "published":
            raise StateConflictError("quiz is not published")
        if quiz.deadline is not None and now >= quiz.deadline:
            raise StateConflictError("quiz deadline has passed")
        if any(a.status == "in_progress" for a in previous):
            raise AttemptAlreadyInProgress("learner already has an attempt in progress")
        if not s.allow_retake and previous:
            raise AttemptLimitExceeded("this quiz can only be attempted once")
        if len(previous) >= s.max_attempts:
            raise AttemptLimitExceeded(f"maximum attempts ({s.max_attempts}) reached")
        number = max((a.attempt_number for a in previous), default=0) + 1
        attempt = Attempt(
            quiz_id=quiz.id,
            learner_id=learner_id,
            attempt_number=number,
            started_at=now,
            expires_at=now + timedelta(minutes=s.time_limit) if s.time_limit else None,
        )
        self.counters.apply(None, attempt, s.passing_score)
        return attempt

    def _require_in_progress(self, attempt: Attempt, action: str) -> None:
        if attempt.quiz_id != self.quiz.id:
            raise NotFoundError(f"attempt {attempt.id} does not belong to quiz {self.quiz.id}")
        if attempt.status != "in_progress":
            raise StateConflictError(f"cannot {action} an attempt that is {attempt.status}")

    def _merge_answers(self, attempt: Attempt, incoming: Sequence[AnswerIn], now: datetime) -> List[Answer]:
        """Latest value per question wins; result follows question order."""
        by_id = self._questions_by_id()
        seen: set[str] = set()
        merged = self._carry_saved(attempt.answers, by_id)
        for a in incoming:
            if a.question_id not in by_id:
                raise NotFoundError(f"unknown question id {a.question_id}")
            if a.question_id in seen:
                raise ValidationError(f"question {a.question_id} answered more than once")
            seen.add(a.question_id)
            merged[a.question_id] = Answer(**a.model_dump(), submitted_at=now)
        order = {q.id: i for i, q in enumerate(sorted(self.quiz.questions, key=lambda q: q.order))}
        return sorted(merged.values(), key=lambda a: order[a.question_id])

    @staticmethod
    def _carry_saved(saved: Sequence[Answer], by_id: Dict[str, Question]) -> Dict[str, Answer]:
        """Saved answers that still apply after the quiz was edited mid-attempt.

        Answers to removed questions are dropped; values that no longer fit
        an edited question are cleared and count as unanswered.
        """
        kept: Dict[str, Answer] = {}
        for a in saved:
            q = by_id.get(a.question_id)
            if q is None:
                continue
            try:
                grade(q, a.value)
            except ValidationError:
                a = a.model_copy(update={"value": None})
            kept[a.question_id] = a
        return kept

    def save_answers(self, attempt: Attempt, answers: Sequence[AnswerIn], now: datetime) -> None:
        """Store in-progress answers; shapes are checked now so submission cannot fail on them later."""
        self._require_in_progress(attempt, "answer")
        merged = self._merge_answers(attempt, answers, now)
        grade_answers(self._questions_by_id(), merged)
        attempt.answers = [a.model_copy(update={"is_correct": None, "points_earned": 0.0, "needs_review": False})
                           for a in merged]

    def record_proctoring(self, attempt: Attempt, event: ProctoringEvent) -> None:
        self._require_in_progress(attempt, "record activity for")
        if len(attempt.proctoring) >= MAX_PROCTORING_EVENTS:
            raise StateConflictError("proctoring log is full")
        attempt.proctoring.append(event)

    def submit(
        self,
        attempt: Attempt,
        answers: Sequence[AnswerIn],
        now: datetime,
        mode: FinalStatus = "submitted",
    ) -> Attempt:
        """Grade an in-progress attempt exactly once.

        Attempts with ungraded essay/code answers move to `awaiting_review`
        and settle on `mode` once every such answer is reviewed.
        """
        self._require_in_progress(attempt, "submit")
        graded = grade_answers(self._questions_by_id(), self._merge_answers(attempt, answers, now))
        elapsed = int((now - attempt.started_at).total_seconds())
        if mode == "auto_submitted" and self.quiz.settings.time_limit:
            elapsed = min(elapsed, self.quiz.settings.time_limit * 60)
        attempt.answers = graded
        attempt.submitted_at = now
        attempt.time_spent = max(0, elapsed)
        attempt.points_earned = total_points_earned(graded)
        if any(a.needs_review for a in graded):
            attempt.status = "awaiting_review"
            attempt.final_status = mode
            self.counters.apply("in_progress", attempt, self.quiz.settings.passing_score)
        else:
            self._finalize(attempt, mode, before="in_progress")
        return attempt

    def expire(self, attempt: Attempt, now: datetime) -> Attempt:
        """System-initiated submission once the time limit has elapsed."""
        self._require_in_progress(attempt, "expire")
        if attempt.expires_at is None:
            raise StateConflictError("quiz has no time limit")
        if now < attempt.expires_at:
            raise StateConflictError("time limit has not elapsed")
        return self.submit(attempt, [], now, mode="auto_submitted")

    def abandon(self, attempt: Attempt, now: datetime) -> Attempt:
        self._require_in_progress(attempt, "abandon")
        attempt.status = "abandoned"
        attempt.time_spent = max(0, int((now - attempt.started_at).total_seconds()))
        self.counters.apply("in_progress", attempt, self.quiz.settings.passing_score)
        return attempt

    def review(self, attempt: Attempt, question_id: str, points: float, reviewer: str, now: datetime) -> Attempt:
        """Record reviewer points for one essay/code answer; settle the attempt when none remain."""
        if attempt.quiz_id != self.quiz.id:
            raise NotFoundError(f"attempt {attempt.id} does not belong to quiz {self.quiz.id}")
        if attempt.status != "awaiting_review":
            raise StateConflictError(f"cannot review an attempt that is {attempt.status}")
        q = self.quiz.question(question_id)
        if q is None:
            raise NotFoundError(f"unknown question id {question_id}")
        idx = next((i for i, a in enumerate(attempt.answers) if a.question_id == question_id), None)
        if idx is None:
            raise NotFoundError(f"attempt {attempt.id} has no answer for question {question_id}")
        answer = attempt.answers[idx]
        if not answer.needs_review:
            raise StateConflictError(f"answer to question {question_id} does not need review")
        r = grade(q, answer.value, points)
        attempt.answers[idx] = answer.model_copy(update={
            "is_correct": r.is_correct, "points_earned": r.points_earned,
            "needs_review": False, "reviewed_by": reviewer,
        })
        attempt.points_earned = total_points_earned(attempt.answers)
        if not any(a.needs_review for a in attempt.answers):
            self._finalize(attempt, attempt.final_status or "submitted", before="awaiting_review")
        return attempt

    def _finalize(self, attempt: Attempt, status: FinalStatus, before: str) -> None:
        """Settle the score, fold answers into question counters and quiz analytics."""
        attempt.status = status
        attempt.final_status = None
        attempt.score = score_percentage(attempt.points_earned, self.quiz.total_points)
        by_id = self._questions_by_id()
        for a in attempt.answers:
            record_question_outcome(by_id[a.question_id].analytics, bool(a.is_correct), a.time_spent)
        self.counters.apply(before, attempt, self.quiz.settings.passing_score)
        self.quiz.analytics = self.counters.snapshot(self.quiz.questions)
        log.info(
            "attempt graded",
            extra={"ctx": {"quiz_id": self.quiz.id, "attempt_id": attempt.id,
                           "status": status, "score": attempt.score}},
        )

    def refresh_analytics(self) -> None:
        self.quiz.analytics = self.counters.snapshot(self.quiz.questions)

    # ----- views -----

    def passed(self, attempt: Attempt) -> Optional[bool]:
        if attempt.status not in GRADED_STATUSES or attempt.score is None:
            return None
        return attempt.score >= self.quiz.settings.passing_score

    def learner_view(self, seed: str) -> Dict[str, Any]:
        """The quiz as shown to learners: answer keys removed, shuffled per the settings.

        `seed` keeps the shuffle stable for one learner across requests.
        """
        rng = random.Random(seed)
        s = self.quiz.settings
        questions = sorted(self.quiz.questions, key=lambda q: q.order)
        if s.shuffle_questions:
            questions = rng.sample(questions, len(questions))
        out: List[Dict[str, Any]] = []
        for q in questions:
            item: Dict[str, Any] = {
                "id": q.id, "type": q.type, "text": q.text, "points": q.points,
                "hints": q.hints, "estimated_time": q.estimated_time,
            }
            if q.type in ("multiple_choice", "single_choice"):
                options = sorted(q.options, key=lambda o: o.order)
                if s.shuffle_options:
                    options = rng.sample(options, len(options))
                item["options"] = [{"id": o.id, "text": o.text} for o in options]
            elif q.type == "matching":
                rights = [p.right for p in q.pairs]
                item["left"] = [p.left for p in q.pairs]
                item["right"] = rng.sample(rights, len(rights))
            elif q.type == "ordering":
                items = [i.item for i in q.items]
                item["items"] = rng.sample(items, len(items))
            elif q.type == "code":
                item["language"] = q.code_key.language
            out.append(item)
        return {
            "id": self.quiz.id,
            "title": self.quiz.title,
            "description": self.quiz.description,
            "instructions": self.quiz.instructions,
            "type": self.quiz.type,
            "status": self.quiz.status,
            "total_points": self.quiz.total_points,
            "deadline": self.quiz.deadline,
            "settings": s.model_dump(include={
                "time_limit", "time_per_question", "max_attempts", "allow_retake", "passing_score",
                "allow_backtrack", "require_sequential", "webcam_required", "full_screen",
            }),
            "questions": out,
        }
