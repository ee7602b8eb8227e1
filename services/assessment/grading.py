"""Grading engine for the Assessment service.

Functions:
- key_problems: structural checks of a question's answer key.
- grade: score one submitted value against one question -> GradeResult.
- grade_answers: grade every answer of an attempt (pure; no side effects).
- score_percentage: normalized 0..100 score, rounded half-up.
- answer_key: the learner-facing representation of a question's correct answer.

Auto-graded types give full points or zero. Essay and code questions are never
graded from content: their points come from a reviewer and correctness is
derived from `MANUAL_PASS_RATIO`.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from packages.schemas.assessment import (
    QUESTION_TYPES, Answer, CodeQuestion, EssayQuestion, FillBlankQuestion,
    MatchingQuestion, OrderingQuestion, Question, TrueFalseQuestion,
)
from .errors import DataIntegrityError, NotFoundError, ValidationError

MANUAL_PASS_RATIO = 0.6


@dataclass(frozen=True)
class GradeResult:
    """Outcome of grading one answer; `is_correct` is None while review is pending."""
    is_correct: Optional[bool]
    points_earned: float
    pending: bool = False


def key_problems(q: Question) -> List[str]:
    """Return human-readable problems with the answer key of `q` (empty if well-formed)."""
    problems: List[str] = []
    if q.type in ("multiple_choice", "single_choice"):
        ids = [o.id for o in q.options]
        correct = [o for o in q.options if o.is_correct]
        if len(q.options) < 2:
            problems.append("choice questions need at least two options")
        if len(set(ids)) != len(ids):
            problems.append("option ids must be unique")
        if not correct:
            problems.append("choice questions need at least one correct option")
        elif q.type == "single_choice" and len(correct) != 1:
            problems.append("single-choice questions need exactly one correct option")
    elif q.type == "fill_blank":
        if not [a for a in q.accepted_answers if a.strip()]:
            problems.append("fill-in-blank questions need at least one accepted answer")
    elif q.type == "matching":
        lefts = [p.left for p in q.pairs]
        if not q.pairs:
            problems.append("matching questions need at least one pair")
        if len(set(lefts)) != len(lefts):
            problems.append("matching pairs must have unique left items")
        if any(not p.left.strip() or not p.right.strip() for p in q.pairs):
            problems.append("matching pairs cannot be blank")
    elif q.type == "ordering":
        positions = sorted(i.correct_position for i in q.items)
        if len(q.items) < 2:
            problems.append("ordering questions need at least two items")
        if positions != list(range(1, len(q.items) + 1)):
            problems.append("ordering positions must be 1..n without gaps or duplicates")
        if len({i.item for i in q.items}) != len(q.items):
            problems.append("ordering items must be unique")
    return problems


def _check_key(q: Question) -> None:
    problems = key_problems(q)
    if problems:
        raise DataIntegrityError(f"question {q.id} has a malformed answer key: {'; '.join(problems)}")


def _full_or_zero(q: Question, correct: bool) -> GradeResult:
    return GradeResult(is_correct=correct, points_earned=float(q.points) if correct else 0.0)


def _grade_choice(q: Question, value: Any, manual_points: Optional[float]) -> GradeResult:
    """Set equality between submitted option ids and the options flagged correct."""
    if value is None:
        selected: set[str] = set()
    elif isinstance(value, str):
        selected = {value}
    elif isinstance(value, list) and all(isinstance(v, str) for v in value):
        selected = set(value)
    else:
        raise ValidationError(f"question {q.id} expects an option id or a list of option ids")
    known = {o.id for o in q.options}
    unknown = selected - known
    if unknown:
        raise ValidationError(f"question {q.id} has no option(s) {sorted(unknown)}")
    if q.type == "single_choice" and len(selected) > 1:
        raise ValidationError(f"question {q.id} accepts a single option")
    correct = {o.id for o in q.options if o.is_correct}
    return _full_or_zero(q, selected == correct)


def _grade_true_false(q: TrueFalseQuestion, value: Any, manual_points: Optional[float]) -> GradeResult:
    if value is None:
        return _full_or_zero(q, False)
    if not isinstance(value, bool):
        raise ValidationError(f"question {q.id} expects true or false")
    return _full_or_zero(q, value == q.answer_key)


def _normalize_text(s: str) -> str:
    return s.strip().casefold()


def _grade_fill_blank(q: FillBlankQuestion, value: Any, manual_points: Optional[float]) -> GradeResult:
    if value is None:
        return _full_or_zero(q, False)
    if not isinstance(value, str):
        raise ValidationError(f"question {q.id} expects a text answer")
    cand = _normalize_text(value)
    return _full_or_zero(q, any(_normalize_text(a) == cand for a in q.accepted_answers if a.strip()))


def _check_manual_value(q: Question, value: Any) -> None:
    if isinstance(value, str):
        return
    if q.type == "code" and isinstance(value, dict) and isinstance(value.get("source"), str):
        return
    expected = "source code or {language, source}" if q.type == "code" else "a text answer"
    raise ValidationError(f"question {q.id} expects {expected}")


def _grade_manual(q: Question, value: Any, manual_points: Optional[float]) -> GradeResult:
    """Essay/code: points are supplied by a reviewer; correctness is derived from them."""
    if value is None:
        return _full_or_zero(q, False)
    _check_manual_value(q, value)
    if manual_points is None:
        return GradeResult(is_correct=None, points_earned=0.0, pending=True)
    if isinstance(manual_points, bool) or not isinstance(manual_points, (int, float)):
        raise ValidationError("reviewed points must be a number")
    if manual_points < 0 or manual_points > q.points:
        raise ValidationError(f"reviewed points must be within 0..{q.points}")
    points = float(manual_points)
    return GradeResult(is_correct=points >= MANUAL_PASS_RATIO * q.points, points_earned=points)


def _submitted_mapping(q: MatchingQuestion, value: Any) -> Dict[str, str]:
    if isinstance(value, dict) and all(isinstance(k, str) and isinstance(v, str) for k, v in value.items()):
        return dict(value)
    if isinstance(value, list):
        mapping: Dict[str, str] = {}
        for pair in value:
            if not (isinstance(pair, dict) and isinstance(pair.get("left"), str) and isinstance(pair.get("right"), str)):
                break
            if pair["left"] in mapping:
                raise ValidationError(f"question {q.id} matches {pair['left']!r} more than once")
            mapping[pair["left"]] = pair["right"]
        else:
            return mapping
    raise ValidationError(f"question {q.id} expects a left->right mapping")


def _grade_matching(q: MatchingQuestion, value: Any, manual_points: Optional[float]) -> GradeResult:
    """Exact pair equality: every left item mapped to its key, nothing extra."""
    if value is None:
        return _full_or_zero(q, False)
    submitted = _submitted_mapping(q, value)
    return _full_or_zero(q, submitted == {p.left: p.right for p in q.pairs})


def _grade_ordering(q: OrderingQuestion, value: Any, manual_points: Optional[float]) -> GradeResult:
    """Exact positional equality with the key sequence."""
    if value is None:
        return _full_or_zero(q, False)
    if not (isinstance(value, list) and all(isinstance(v, str) for v in value)):
        raise ValidationError(f"question {q.id} expects an ordered list of items")
    expected = [i.item for i in sorted(q.items, key=lambda i: i.correct_position)]
    return _full_or_zero(q, value == expected)


_GRADERS: Dict[str, Callable[[Any, Any, Optional[float]], GradeResult]] = {
    "multiple_choice": _grade_choice,
    "single_choice": _grade_choice,
    "true_false": _grade_true_false,
    "fill_blank": _grade_fill_blank,
    "essay": _grade_manual,
    "code": _grade_manual,
    "matching": _grade_matching,
    "ordering": _grade_ordering,
}
if set(_GRADERS) != set(QUESTION_TYPES):
    raise RuntimeError(f"grader table out of sync with question types: {sorted(set(QUESTION_TYPES) ^ set(_GRADERS))}")


def grade(q: Question, value: Any, manual_points: Optional[float] = None) -> GradeResult:
    """Grade one submitted `value` against `q`.

    Args:
        q: The question, including its answer key.
        value: The learner's submitted value (shape depends on `q.type`).
        manual_points: Reviewer-assigned points; only meaningful for essay/code.

    Returns:
        GradeResult with correctness and points earned.

    Raises:
        ValidationError: The submitted value has the wrong shape for the question type.
        DataIntegrityError: The stored answer key is malformed.
    """
    grader = _GRADERS.get(q.type)
    if grader is None:
        raise DataIntegrityError(f"question {q.id} has unsupported type {q.type!r}")
    _check_key(q)
    return grader(q, value, manual_points)


def grade_answers(
    questions: Mapping[str, Question],
    answers: Sequence[Answer],
    manual_points: Optional[Mapping[str, float]] = None,
) -> List[Answer]:
    """Grade all answers of an attempt and return graded copies (inputs untouched)."""
    manual_points = manual_points or {}
    graded: List[Answer] = []
    for a in answers:
        q = questions.get(a.question_id)
        if q is None:
            raise NotFoundError(f"unknown question id {a.question_id}")
        r = grade(q, a.value, manual_points.get(a.question_id))
        graded.append(a.model_copy(update={
            "is_correct": r.is_correct,
            "points_earned": r.points_earned,
            "needs_review": r.pending,
        }))
    return graded


def total_points_earned(answers: Sequence[Answer]) -> float:
    return float(sum(Decimal(str(a.points_earned)) for a in answers))


def score_percentage(points: float, total_points: int) -> int:
    """round(points / total_points * 100), half-up; 0 for an empty quiz."""
    if total_points <= 0:
        return 0
    pct = Decimal(str(points)) * 100 / Decimal(total_points)
    return int(pct.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def exact_percentage(points: float, total_points: int) -> float:
    if total_points <= 0:
        return 0.0
    return round(points / total_points * 100, 2)


def answer_key(q: Question) -> Any:
    """The correct answer in the same shape a learner would submit it."""
    if q.type in ("multiple_choice", "single_choice"):
        return sorted(o.id for o in q.options if o.is_correct)
    if isinstance(q, TrueFalseQuestion):
        return q.answer_key
    if isinstance(q, FillBlankQuestion):
        return list(q.accepted_answers)
    if isinstance(q, EssayQuestion):
        return q.model_answer
    if isinstance(q, CodeQuestion):
        return q.code_key.solution
    if isinstance(q, MatchingQuestion):
        return {p.left: p.right for p in q.pairs}
    if isinstance(q, OrderingQuestion):
        return [i.item for i in sorted(q.items, key=lambda i: i.correct_position)]
    raise DataIntegrityError(f"question {q.id} has unsupported type {q.type!r}")
