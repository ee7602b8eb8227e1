"""Assessment schemas for quizzes, questions, attempts, results and analytics."""

import uuid
from datetime import datetime, timezone
from pydantic import BaseModel, Field, computed_field, field_validator
from typing import Annotated, Any, Dict, List, Literal, Optional, Union, get_args

QuestionType = Literal[
    "multiple_choice", "single_choice", "true_false", "fill_blank",
    "essay", "code", "matching", "ordering",
]
QUESTION_TYPES: tuple[str, ...] = get_args(QuestionType)
MANUAL_TYPES = ("essay", "code")

QuizType = Literal["practice", "assessment", "final_exam", "certification"]
QuizStatus = Literal["draft", "published", "archived"]
AttemptStatus = Literal["in_progress", "awaiting_review", "submitted", "auto_submitted", "abandoned"]
FinalStatus = Literal["submitted", "auto_submitted"]
GRADED_STATUSES = ("submitted", "auto_submitted")
TERMINAL_STATUSES = ("submitted", "auto_submitted", "abandoned")
ShowResults = Literal["immediately", "after_submission", "after_deadline", "never"]
Difficulty = Literal["easy", "medium", "hard"]
ProctoringKind = Literal["tab_switch", "window_blur", "copy_paste", "right_click", "fullscreen_exit"]
CodeLanguage = Literal["javascript", "python", "java", "cpp", "html", "css", "sql"]

# Fields a teacher may edit after attempts exist; everything else is the answer key.
PRESENTATION_FIELDS = {"text", "explanation", "hints", "tags", "difficulty", "estimated_time", "order", "analytics"}


def new_id() -> str:
    """Return a fresh opaque identifier."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class QuestionStats(BaseModel):
    """Per-question counters maintained as attempts are graded."""
    total_attempts: int = 0
    correct_attempts: int = 0
    average_time: float = 0.0  # seconds
    difficulty_score: float = 5.0  # 1 (easy) .. 10 (hard)


class Choice(BaseModel):
    """A selectable option for a choice question."""
    id: str = Field(default_factory=new_id)
    text: str = Field(min_length=1, max_length=500)
    is_correct: bool = False
    explanation: Optional[str] = Field(default=None, max_length=1000)
    order: int = 0


class QuestionBase(BaseModel):
    """Fields shared by every question type."""
    id: str = Field(default_factory=new_id)
    text: str = Field(min_length=1, max_length=2000)
    points: int = Field(default=1, ge=1)
    order: int = 0
    explanation: Optional[str] = Field(default=None, max_length=2000)
    hints: List[str] = []
    tags: List[str] = []
    difficulty: Difficulty = "medium"
    estimated_time: int = Field(default=60, ge=0)  # seconds
    analytics: QuestionStats = Field(default_factory=QuestionStats)

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, v: List[str]) -> List[str]:
        return [t.strip().lower() for t in v if t.strip()]

    def grading_fingerprint(self) -> Dict[str, Any]:
        """Everything that influences grading, with presentation-only fields removed."""
        data = self.model_dump(exclude=PRESENTATION_FIELDS)
        if "options" in data:
            data["options"] = sorted((o["id"], o["is_correct"]) for o in data["options"])
        return data


class MultipleChoiceQuestion(QuestionBase):
    """Any number of options may be correct; the selection must match exactly."""
    type: Literal["multiple_choice"] = "multiple_choice"
    options: List[Choice] = []


class SingleChoiceQuestion(QuestionBase):
    """Exactly one option is correct."""
    type: Literal["single_choice"] = "single_choice"
    options: List[Choice] = []


class TrueFalseQuestion(QuestionBase):
    type: Literal["true_false"] = "true_false"
    answer_key: bool


class FillBlankQuestion(QuestionBase):
    """Free-text answer compared (trimmed, case-folded) against accepted answers."""
    type: Literal["fill_blank"] = "fill_blank"
    accepted_answers: List[str] = []


class EssayQuestion(QuestionBase):
    """Manually graded; `model_answer` is reviewer guidance only."""
    type: Literal["essay"] = "essay"
    model_answer: Optional[str] = Field(default=None, max_length=5000)


class CodeTestCase(BaseModel):
    input: str = ""
    expected_output: str


class CodeKey(BaseModel):
    language: CodeLanguage
    solution: Optional[str] = None
    test_cases: List[CodeTestCase] = []


class CodeQuestion(QuestionBase):
    """Manually graded; the reference solution and test cases guide the reviewer."""
    type: Literal["code"] = "code"
    code_key: CodeKey


class MatchPair(BaseModel):
    left: str
    right: str


class MatchingQuestion(QuestionBase):
    type: Literal["matching"] = "matching"
    pairs: List[MatchPair] = []


class OrderItem(BaseModel):
    item: str
    correct_position: int  # 1-based


class OrderingQuestion(QuestionBase):
    type: Literal["ordering"] = "ordering"
    items: List[OrderItem] = []


Question = Annotated[
    Union[
        MultipleChoiceQuestion, SingleChoiceQuestion, TrueFalseQuestion, FillBlankQuestion,
        EssayQuestion, CodeQuestion, MatchingQuestion, OrderingQuestion,
    ],
    Field(discriminator="type"),
]
ChoiceQuestion = Union[MultipleChoiceQuestion, SingleChoiceQuestion]


class QuizSettings(BaseModel):
    """Timing, attempt, display and navigation rules of a quiz."""
    time_limit: int = Field(default=0, ge=0)  # minutes, 0 means no limit
    time_per_question: int = Field(default=60, ge=0)  # seconds
    max_attempts: int = 3
    allow_retake: bool = True
    passing_score: int = 70
    shuffle_questions: bool = False
    shuffle_options: bool = True
    show_results: ShowResults = "after_submission"
    show_correct_answers: bool = True
    show_explanations: bool = True
    allow_backtrack: bool = True
    require_sequential: bool = False
    prevent_cheating: bool = False
    webcam_required: bool = False
    full_screen: bool = False


class QuizAnalytics(BaseModel):
    """Aggregate statistics over all attempts of a quiz."""
    total_attempts: int = 0
    graded_attempts: int = 0
    average_score: float = 0.0
    highest_score: int = 0
    lowest_score: int = 0
    pass_rate: float = 0.0  # percent
    average_time: float = 0.0  # minutes
    abandonment_rate: float = 0.0  # percent
    difficulty_rating: float = 5.0


class QuizSpec(BaseModel):
    """Payload for creating a quiz."""
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    instructions: Optional[str] = Field(default=None, max_length=2000)
    type: QuizType = "practice"
    course_id: Optional[str] = None
    lesson_id: Optional[str] = None
    questions: List[Question] = []
    settings: QuizSettings = Field(default_factory=QuizSettings)
    weightage: float = Field(default=0, ge=0, le=100)
    deadline: Optional[datetime] = None


class Quiz(QuizSpec):
    """Quiz aggregate root as stored; `total_points` is always derived."""
    id: str = Field(default_factory=new_id)
    created_by: Optional[str] = None
    status: QuizStatus = "draft"
    published_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0
    analytics: QuizAnalytics = Field(default_factory=QuizAnalytics)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_points(self) -> int:
        return sum(q.points for q in self.questions)

    def question(self, question_id: str) -> Optional[Question]:
        return next((q for q in self.questions if q.id == question_id), None)


class QuizUpdate(BaseModel):
    """Partial quiz update; only fields that are set are applied."""
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    instructions: Optional[str] = Field(default=None, max_length=2000)
    type: Optional[QuizType] = None
    questions: Optional[List[Question]] = None
    settings: Optional[QuizSettings] = None
    weightage: Optional[float] = Field(default=None, ge=0, le=100)
    deadline: Optional[datetime] = None


class AnswerIn(BaseModel):
    """A learner's submitted value for one question.

    `value` is interpreted by the question type: an option id or list of ids,
    free text, a boolean, `{"language", "source"}` for code, a left->right map
    (or list of `{"left", "right"}`) for matching, an item list for ordering.
    """
    question_id: str
    value: Any = None
    time_spent: int = Field(default=0, ge=0)  # seconds


class Answer(AnswerIn):
    """A stored answer with derived grading fields."""
    is_correct: Optional[bool] = None
    points_earned: float = 0.0
    needs_review: bool = False
    submitted_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None


class ProctoringEvent(BaseModel):
    """One suspicious-activity signal captured during an attempt."""
    kind: ProctoringKind
    timestamp: datetime = Field(default_factory=utcnow)
    detail: Optional[str] = Field(default=None, max_length=500)


class Attempt(BaseModel):
    """One learner session against a quiz."""
    id: str = Field(default_factory=new_id)
    quiz_id: str
    learner_id: str
    attempt_number: int = Field(ge=1)
    status: AttemptStatus = "in_progress"
    final_status: Optional[FinalStatus] = None  # target status while awaiting review
    answers: List[Answer] = []
    score: Optional[int] = None
    points_earned: float = 0.0
    started_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    time_spent: int = 0  # seconds
    proctoring: List[ProctoringEvent] = []
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def is_graded(self) -> bool:
        return self.status in GRADED_STATUSES


class StartedAttempt(BaseModel):
    attempt_id: str
    attempt_number: int
    started_at: datetime
    expires_at: Optional[datetime] = None


class AnswerDetail(BaseModel):
    """Per-answer feedback, shown according to the quiz's result policy."""
    question_id: str
    is_correct: Optional[bool]
    points_earned: float
    max_points: int
    needs_review: bool = False
    correct_answer: Any = None
    explanation: Optional[str] = None


class AttemptResult(BaseModel):
    attempt_id: str
    quiz_id: str
    learner_id: str
    attempt_number: int
    status: AttemptStatus
    score: Optional[int]
    points_earned: float
    total_points: int
    percentage: float
    passed: Optional[bool]
    submitted_at: Optional[datetime]
    time_spent: int
    answers: Optional[List[AnswerDetail]] = None
    proctoring_flags: Optional[Dict[str, int]] = None


class AttemptSummary(BaseModel):
    attempt_id: str
    attempt_number: int
    status: AttemptStatus
    score: Optional[int]
    passed: Optional[bool]
    submitted_at: Optional[datetime]
    time_spent: int


class LearnerResults(BaseModel):
    """Best and most recent graded attempts of one learner on one quiz."""
    quiz_id: str
    quiz_title: str
    learner_id: str
    total_attempts: int
    best: AttemptSummary
    most_recent: AttemptSummary
    attempts: List[AttemptSummary]


class QuestionAnalytics(BaseModel):
    question_id: str
    text: str
    type: QuestionType
    points: int
    total_attempts: int
    correct_attempts: int
    accuracy: float  # percent
    average_time: float  # seconds
    difficulty_score: float


class QuizAnalyticsReport(BaseModel):
    quiz_id: str
    title: str
    total_points: int
    unique_learners: int
    analytics: QuizAnalytics
    questions: List[QuestionAnalytics]


class SimilarPair(BaseModel):
    """Two essay answers whose token overlap exceeds the similarity threshold."""
    attempt_a: str
    attempt_b: str
    learner_a: str
    learner_b: str
    similarity: float


class AnswersPayload(BaseModel):
    answers: List[AnswerIn] = []


class ReviewPayload(BaseModel):
    """Reviewer points for one essay or code answer."""
    question_id: str
    points: float = Field(ge=0)
