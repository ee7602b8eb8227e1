"""SQLAlchemy models for the Assessment service.

Storage is partitioned per aggregate:
- QuizRow: quiz metadata, settings and questions (with question counters) as a
  JSON document, plus the `version` used for optimistic concurrency.
- AttemptRow: one row per attempt, keyed by id and unique per
  (quiz_id, learner_id, attempt_number).
- QuizAnalyticsRow: running analytics counters, one row per quiz.
"""

from datetime import datetime
from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint

Base = declarative_base()


class QuizRow(Base):
    """Quiz aggregate root.

    Attributes:
        id: Quiz id.
        created_by: Author's user id (used for ownership checks).
        status: draft/published/archived, duplicated from `doc` for filtering.
        version: Incremented by every committed command on this quiz.
        doc: The serialized `Quiz` (without analytics).
        updated_at: Last commit time (UTC, naive).
    """

    __tablename__ = "quizzes"
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(16), default="draft")
    version: Mapped[int] = mapped_column(Integer, default=0)
    doc: Mapped[dict] = mapped_column(JSON)
    updated_at: Mapped[datetime] = mapped_column(DateTime)


class AttemptRow(Base):
    """One learner attempt.

    Attributes:
        id: Attempt id.
        quiz_id: Owning quiz.
        learner_id: The learner.
        attempt_number: 1-based, increasing per (quiz, learner).
        status: Lifecycle status, duplicated from `doc` for queries.
        expires_at: Deadline for in-progress attempts of timed quizzes (UTC, naive).
        doc: The serialized `Attempt`.
    """

    __tablename__ = "attempts"
    __table_args__ = (
        UniqueConstraint("quiz_id", "learner_id", "attempt_number", name="uq_attempt_number"),
        Index("ix_attempts_status_expires", "status", "expires_at"),
    )
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    quiz_id: Mapped[str] = mapped_column(ForeignKey("quizzes.id", ondelete="CASCADE"), index=True)
    learner_id: Mapped[str] = mapped_column(String(64), index=True)
    attempt_number: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(16))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    doc: Mapped[dict] = mapped_column(JSON)


class QuizAnalyticsRow(Base):
    """Running counters from which `QuizAnalytics` is derived."""

    __tablename__ = "quiz_analytics"
    quiz_id: Mapped[str] = mapped_column(ForeignKey("quizzes.id", ondelete="CASCADE"), primary_key=True)
    total_attempts: Mapped[int] = mapped_column(Integer, default=0)
    in_progress: Mapped[int] = mapped_column(Integer, default=0)
    graded: Mapped[int] = mapped_column(Integer, default=0)
    score_sum: Mapped[int] = mapped_column(Integer, default=0)
    score_high: Mapped[int | None] = mapped_column(Integer, nullable=True)
    score_low: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pass_count: Mapped[int] = mapped_column(Integer, default=0)
    duration_sum: Mapped[int] = mapped_column(Integer, default=0)
    abandoned: Mapped[int] = mapped_column(Integer, default=0)
