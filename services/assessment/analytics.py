"""Quiz analytics.

Two equivalent ways to obtain `QuizAnalytics`:
- `recompute`: reference fold over every attempt of a quiz, O(attempts).
- `AnalyticsCounters`: running counters persisted in the `quiz_analytics` row and
  updated per attempt transition, O(1) per update.

Both produce identical results for the same attempt history.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Iterable, Optional, Sequence

from packages.schemas.assessment import (
    GRADED_STATUSES, Attempt, AttemptStatus, Question, QuestionStats, QuizAnalytics,
)

DEFAULT_DIFFICULTY = 5.0


def _pct(part: float, whole: float) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def difficulty_score(stats: QuestionStats) -> float:
    """1 (everyone correct) .. 10 (nobody correct); the default until data exists."""
    if not stats.total_attempts:
        return DEFAULT_DIFFICULTY
    accuracy = stats.correct_attempts / stats.total_attempts
    return round(1 + 9 * (1 - accuracy), 1)


def difficulty_rating(questions: Sequence[Question]) -> float:
    """Mean difficulty over questions that have been answered at least once."""
    scores = [q.analytics.difficulty_score for q in questions if q.analytics.total_attempts]
    return round(sum(scores) / len(scores), 1) if scores else DEFAULT_DIFFICULTY


def record_question_outcome(stats: QuestionStats, is_correct: bool, time_spent: int) -> None:
    """Fold one final answer into a question's running counters (in place)."""
    n = stats.total_attempts + 1
    stats.average_time = round((stats.average_time * stats.total_attempts + time_spent) / n, 2)
    stats.total_attempts = n
    if is_correct:
        stats.correct_attempts += 1
    stats.difficulty_score = difficulty_score(stats)


def recompute(attempts: Iterable[Attempt], passing_score: int, questions: Sequence[Question] = ()) -> QuizAnalytics:
    """Reference fold over all attempts of a quiz.

    Score statistics and pass rate use only submitted/auto-submitted attempts;
    abandonment rate divides abandoned attempts by every attempt, including
    in-progress and awaiting-review ones.
    """
    attempts = list(attempts)
    graded = [a for a in attempts if a.status in GRADED_STATUSES and a.score is not None]
    scores = [a.score for a in graded]
    abandoned = sum(1 for a in attempts if a.status == "abandoned")
    return QuizAnalytics(
        total_attempts=len(attempts),
        graded_attempts=len(graded),
        average_score=round(sum(scores) / len(scores), 2) if scores else 0.0,
        highest_score=max(scores, default=0),
        lowest_score=min(scores, default=0),
        pass_rate=_pct(sum(1 for s in scores if s >= passing_score), len(scores)),
        average_time=round(sum(a.time_spent for a in graded) / len(graded) / 60, 2) if graded else 0.0,
        abandonment_rate=_pct(abandoned, len(attempts)),
        difficulty_rating=difficulty_rating(questions),
    )


@dataclass
class AnalyticsCounters:
    """Incremental form of `recompute`, one row per quiz."""
    total_attempts: int = 0
    in_progress: int = 0
    graded: int = 0
    score_sum: int = 0
    score_high: Optional[int] = None
    score_low: Optional[int] = None
    pass_count: int = 0
    duration_sum: int = 0  # seconds, graded attempts only
    abandoned: int = 0

    @property
    def settled_attempts(self) -> int:
        """Attempts that have left `in_progress` (graded, awaiting review or abandoned)."""
        return self.total_attempts - self.in_progress

    def apply(self, before: Optional[AttemptStatus], attempt: Attempt, passing_score: int) -> None:
        """Account for `attempt` moving from `before` (None for a new attempt) to its current status."""
        after = attempt.status
        if before is None:
            self.total_attempts += 1
            self.in_progress += 1
            before = "in_progress"
        if before == after:
            return
        if before == "in_progress":
            self.in_progress -= 1
        if after in GRADED_STATUSES and before not in GRADED_STATUSES and attempt.score is not None:
            s = attempt.score
            self.graded += 1
            self.score_sum += s
            self.score_high = s if self.score_high is None else max(self.score_high, s)
            self.score_low = s if self.score_low is None else min(self.score_low, s)
            self.duration_sum += attempt.time_spent
            if s >= passing_score:
                self.pass_count += 1
        elif after == "abandoned":
            self.abandoned += 1

    def snapshot(self, questions: Sequence[Question] = ()) -> QuizAnalytics:
        return QuizAnalytics(
            total_attempts=self.total_attempts,
            graded_attempts=self.graded,
            average_score=round(self.score_sum / self.graded, 2) if self.graded else 0.0,
            highest_score=self.score_high or 0,
            lowest_score=self.score_low or 0,
            pass_rate=_pct(self.pass_count, self.graded),
            average_time=round(self.duration_sum / self.graded / 60, 2) if self.graded else 0.0,
            abandonment_rate=_pct(self.abandoned, self.total_attempts),
            difficulty_rating=difficulty_rating(questions),
        )

    def as_row(self) -> dict:
        return asdict(self)
