"""Builders shared by the assessment tests."""

from datetime import datetime, timedelta, timezone
from typing import Dict, Sequence

from packages.common.auth import User
from packages.schemas.assessment import (
    AnswerIn, Choice, CodeKey, CodeQuestion, EssayQuestion, FillBlankQuestion, MatchingQuestion,
    MatchPair, MultipleChoiceQuestion, OrderingQuestion, OrderItem, QuizSettings, QuizSpec,
    SingleChoiceQuestion, TrueFalseQuestion,
)

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)

TEACHER = User(sub="teacher-1", roles=["teacher"])
OTHER_TEACHER = User(sub="teacher-2", roles=["teacher"])
ADMIN = User(sub="admin-1", roles=["admin"])
LEARNER = User(sub="learner-1", roles=["learner"])
LEARNER_B = User(sub="learner-2", roles=["learner"])


class Clock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw) -> None:
        self.now += timedelta(**kw)


def _options(ids: Sequence[str], correct: Sequence[str]):
    return [Choice(id=i, text=f"option {i}", is_correct=i in correct, order=n) for n, i in enumerate(ids)]


def mcq(qid="q-mc", correct=("a", "c"), options=("a", "b", "c"), points=1, order=0):
    return MultipleChoiceQuestion(id=qid, text="Pick all primes", points=points, order=order,
                                  options=_options(options, correct), explanation="2 and 3 are prime")


def single(qid="q-sc", correct="b", options=("a", "b", "c"), points=1, order=0):
    return SingleChoiceQuestion(id=qid, text="Capital of Italy?", points=points, order=order,
                                options=_options(options, [correct]))


def true_false(qid="q-tf", answer=True, points=1, order=1):
    return TrueFalseQuestion(id=qid, text="The earth is round", answer_key=answer, points=points, order=order)


def fill(qid="q-fb", answers=("Paris",), points=1, order=2):
    return FillBlankQuestion(id=qid, text="Capital of France is ___", accepted_answers=list(answers),
                             points=points, order=order)


def essay(qid="q-essay", points=10, order=3):
    return EssayQuestion(id=qid, text="Explain photosynthesis", points=points, order=order,
                         model_answer="Light energy becomes chemical energy")


def code(qid="q-code", points=5, order=4):
    return CodeQuestion(id=qid, text="Reverse a string", points=points, order=order,
                        code_key=CodeKey(language="python", solution="def rev(s): return s[::-1]"))


def matching(qid="q-match", pairs: Dict[str, str] = None, points=2, order=5):
    pairs = pairs or {"France": "Paris", "Spain": "Madrid"}
    return MatchingQuestion(id=qid, text="Match countries to capitals", points=points, order=order,
                            pairs=[MatchPair(left=k, right=v) for k, v in pairs.items()])


def ordering(qid="q-order", items=("one", "two", "three"), points=1, order=6):
    return OrderingQuestion(id=qid, text="Put in order", points=points, order=order,
                            items=[OrderItem(item=it, correct_position=n) for n, it in enumerate(items, start=1)])


def spec(*questions, title="Quiz", deadline=None, **settings) -> QuizSpec:
    return QuizSpec(title=title, questions=list(questions), settings=QuizSettings(**settings), deadline=deadline)


def answers(**values) -> list:
    """`answers(q_mc=["a"])` -> AnswerIn list; underscores in keys map to dashes."""
    return [AnswerIn(question_id=k.replace("_", "-"), value=v) for k, v in values.items()]
