"""Repository layer for the Assessment service.

Provides async database initialization, aggregate loading, and the single
atomic commit used by every state-changing command. Concurrency control is
optimistic: the quiz row's `version` must still equal the version the
aggregate was loaded at, otherwise `ConcurrencyConflictError` is raised and
nothing is written.
"""

from datetime import datetime, timezone
from dataclasses import fields
from typing import Iterable, Sequence

from pydantic import ValidationError as SchemaError
from sqlalchemy import delete, distinct, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from packages.common.config import get_settings
from packages.schemas.assessment import Attempt, Quiz
from .aggregate import QuizAggregate
from .analytics import AnalyticsCounters
from .errors import ConcurrencyConflictError, DataIntegrityError, NotFoundError
from .models import AttemptRow, Base, QuizAnalyticsRow, QuizRow

_COUNTER_FIELDS = [f.name for f in fields(AnalyticsCounters)]


def _naive_utc(dt: datetime | None) -> datetime | None:
    """Index columns store naive UTC so comparisons behave the same on every backend."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _quiz_doc(quiz: Quiz) -> dict:
    return quiz.model_dump(mode="json", exclude={"analytics", "version", "total_points"})


def _attempt_values(a: Attempt) -> dict:
    return {
        "status": a.status,
        "expires_at": _naive_utc(a.expires_at) if a.status == "in_progress" else None,
        "doc": a.model_dump(mode="json"),
    }


def _load_attempt(row: AttemptRow) -> Attempt:
    try:
        return Attempt.model_validate(row.doc)
    except SchemaError as e:
        raise DataIntegrityError(f"stored attempt {row.id} is malformed") from e


class AssessmentRepo:
    """Async SQLAlchemy repository over the partitioned assessment tables."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.Session = async_sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_settings(cls) -> "AssessmentRepo":
        return cls(create_async_engine(get_settings().DATABASE_DSN, echo=False))

    async def init_db(self) -> None:
        """Create database schema if it doesn't exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    # ----- reads -----

    async def load_quiz(self, quiz_id: str) -> QuizAggregate:
        """Load the quiz document and its analytics counters.

        Raises:
            NotFoundError: No quiz with this id.
            DataIntegrityError: The stored document no longer validates.
        """
        async with self.Session() as session:
            row = await session.get(QuizRow, quiz_id)
            if row is None:
                raise NotFoundError(f"quiz {quiz_id} not found")
            stats = await session.get(QuizAnalyticsRow, quiz_id)
        try:
            quiz = Quiz.model_validate({**row.doc, "version": row.version})
        except SchemaError as e:
            raise DataIntegrityError(f"stored quiz {quiz_id} is malformed") from e
        counters = AnalyticsCounters(**{n: getattr(stats, n) for n in _COUNTER_FIELDS}) if stats else AnalyticsCounters()
        agg = QuizAggregate(quiz, counters)
        agg.refresh_analytics()
        return agg

    async def get_attempt(self, attempt_id: str) -> Attempt:
        async with self.Session() as session:
            row = await session.get(AttemptRow, attempt_id)
        if row is None:
            raise NotFoundError(f"attempt {attempt_id} not found")
        return _load_attempt(row)

    async def learner_attempts(self, quiz_id: str, learner_id: str) -> list[Attempt]:
        """All attempts of one learner on one quiz, oldest first."""
        q = (
            select(AttemptRow)
            .where(AttemptRow.quiz_id == quiz_id, AttemptRow.learner_id == learner_id)
            .order_by(AttemptRow.attempt_number)
        )
        async with self.Session() as session:
            res = await session.execute(q)
            return [_load_attempt(r) for r in res.scalars()]

    async def quiz_attempts(self, quiz_id: str, statuses: Iterable[str] | None = None) -> list[Attempt]:
        q = select(AttemptRow).where(AttemptRow.quiz_id == quiz_id)
        if statuses is not None:
            q = q.where(AttemptRow.status.in_(list(statuses)))
        async with self.Session() as session:
            res = await session.execute(q.order_by(AttemptRow.learner_id, AttemptRow.attempt_number))
            return [_load_attempt(r) for r in res.scalars()]

    async def count_learners(self, quiz_id: str) -> int:
        q = select(func.count(distinct(AttemptRow.learner_id))).where(AttemptRow.quiz_id == quiz_id)
        async with self.Session() as session:
            return int((await session.execute(q)).scalar_one())

    async def overdue_attempt_ids(self, now: datetime, limit: int = 100) -> list[str]:
        """Ids of in-progress attempts whose time limit has elapsed."""
        q = (
            select(AttemptRow.id)
            .where(AttemptRow.status == "in_progress", AttemptRow.expires_at <= _naive_utc(now))
            .order_by(AttemptRow.expires_at)
            .limit(limit)
        )
        async with self.Session() as session:
            return list((await session.execute(q)).scalars())

    # ----- writes -----

    async def add_quiz(self, agg: QuizAggregate) -> None:
        quiz = agg.quiz
        async with self.Session() as session, session.begin():
            session.add(QuizRow(
                id=quiz.id, created_by=quiz.created_by, status=quiz.status,
                version=quiz.version, doc=_quiz_doc(quiz), updated_at=_naive_utc(quiz.updated_at),
            ))
            await session.flush()
            session.add(QuizAnalyticsRow(quiz_id=quiz.id, **agg.counters.as_row()))

    async def commit(
        self,
        agg: QuizAggregate,
        attempts: Sequence[Attempt] = (),
        new_attempts: Sequence[Attempt] = (),
    ) -> int:
        """Atomically persist the quiz, changed/new attempts and analytics counters.

        Returns:
            The quiz's new version.

        Raises:
            ConcurrencyConflictError: The quiz changed since `agg` was loaded, or a
                concurrent insert took the same attempt number.
        """
        quiz = agg.quiz
        new_version = agg.expected_version + 1
        try:
            async with self.Session() as session, session.begin():
                res = await session.execute(
                    update(QuizRow)
                    .where(QuizRow.id == quiz.id, QuizRow.version == agg.expected_version)
                    .values(status=quiz.status, doc=_quiz_doc(quiz), version=new_version,
                            updated_at=_naive_utc(quiz.updated_at))
                )
                if res.rowcount != 1:
                    raise ConcurrencyConflictError(
                        f"quiz {quiz.id} changed since version {agg.expected_version}; retry"
                    )
                for a in new_attempts:
                    session.add(AttemptRow(
                        id=a.id, quiz_id=a.quiz_id, learner_id=a.learner_id,
                        attempt_number=a.attempt_number, **_attempt_values(a),
                    ))
                for a in attempts:
                    await session.execute(
                        update(AttemptRow).where(AttemptRow.id == a.id).values(**_attempt_values(a))
                    )
                await session.execute(
                    update(QuizAnalyticsRow)
                    .where(QuizAnalyticsRow.quiz_id == quiz.id)
                    .values(**agg.counters.as_row())
                )
        except IntegrityError as e:
            raise ConcurrencyConflictError(f"concurrent write on quiz {quiz.id}; retry") from e
        quiz.version = agg.expected_version = new_version
        return new_version

    async def delete_quiz(self, agg: QuizAggregate) -> None:
        quiz_id = agg.quiz.id
        async with self.Session() as session, session.begin():
            await session.execute(delete(QuizAnalyticsRow).where(QuizAnalyticsRow.quiz_id == quiz_id))
            await session.execute(delete(AttemptRow).where(AttemptRow.quiz_id == quiz_id))
            res = await session.execute(
                delete(QuizRow).where(QuizRow.id == quiz_id, QuizRow.version == agg.expected_version)
            )
            if res.rowcount != 1:
                raise ConcurrencyConflictError(f"quiz {quiz_id} changed since version {agg.expected_version}; retry")
