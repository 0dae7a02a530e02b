"""Assessment schemas: questions, per-type content variants, answer payloads, attempts.

Content is a closed tagged union discriminated on `type`. These models only describe
shape; semantic rules (cardinality, referential integrity) live in
`services.assessment.validator`.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class QuestionType(str, Enum):
    """The seven supported question formats."""
    MULTIPLE_CHOICE = "multiple_choice"
    TRUE_FALSE = "true_false"
    ESSAY = "essay"
    FILL_BLANK = "fill_blank"
    MATCHING = "matching"
    ORDERING = "ordering"
    SHORT_ANSWER = "short_answer"


class AssessmentStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    EXPIRED = "expired"
    ARCHIVED = "archived"


class AttemptStatus(str, Enum):
    """Lifecycle states of one student's attempt."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    TIMED_OUT = "timed_out"
    PENDING_MANUAL_GRADING = "pending_manual_grading"
    GRADED = "graded"
    ABANDONED = "abandoned"


class EndReason(str, Enum):
    USER_SUBMIT = "user_submit"
    TIMEOUT = "timeout"


# ---------------------------------------------------------------------------
# Content variants
# ---------------------------------------------------------------------------

class Option(BaseModel):
    """A selectable option of a multiple-choice question."""
    id: str
    text: str


class MatchItem(BaseModel):
    """One entry on either side of a matching question."""
    id: str
    text: str


class MatchPair(BaseModel):
    """A (left, right) association."""
    model_config = ConfigDict(frozen=True)

    left_id: str
    right_id: str


class OrderItem(BaseModel):
    id: str
    text: str


class BlankDefinition(BaseModel):
    """Accepted answers and the points awarded for one blank."""
    accepted_answers: List[str]
    points: float = 0.0


class MultipleChoiceContent(BaseModel):
    type: Literal["multiple_choice"] = "multiple_choice"
    options: List[Option]
    correct_answers: List[str]
    multiple_correct: bool = False


class TrueFalseContent(BaseModel):
    type: Literal["true_false"] = "true_false"
    correct_answer: bool


class EssayContent(BaseModel):
    type: Literal["essay"] = "essay"
    min_words: Optional[int] = None
    max_words: Optional[int] = None


class FillBlankContent(BaseModel):
    """Template text plus blank id -> definition."""
    type: Literal["fill_blank"] = "fill_blank"
    template: str
    blanks: Dict[str, BlankDefinition]


class MatchingContent(BaseModel):
    type: Literal["matching"] = "matching"
    left_items: List[MatchItem]
    right_items: List[MatchItem]
    correct_pairs: List[MatchPair]


class OrderingContent(BaseModel):
    type: Literal["ordering"] = "ordering"
    items: List[OrderItem]
    correct_order: List[str]


class ShortAnswerContent(BaseModel):
    type: Literal["short_answer"] = "short_answer"
    accepted_answers: List[str]
    max_length: int = 255


QuestionContent = Annotated[
    Union[
        MultipleChoiceContent,
        TrueFalseContent,
        EssayContent,
        FillBlankContent,
        MatchingContent,
        OrderingContent,
        ShortAnswerContent,
    ],
    Field(discriminator="type"),
]

CONTENT_MODELS: Dict[QuestionType, type[BaseModel]] = {
    QuestionType.MULTIPLE_CHOICE: MultipleChoiceContent,
    QuestionType.TRUE_FALSE: TrueFalseContent,
    QuestionType.ESSAY: EssayContent,
    QuestionType.FILL_BLANK: FillBlankContent,
    QuestionType.MATCHING: MatchingContent,
    QuestionType.ORDERING: OrderingContent,
    QuestionType.SHORT_ANSWER: ShortAnswerContent,
}


# ---------------------------------------------------------------------------
# Answer payloads
# ---------------------------------------------------------------------------

class MultipleChoiceAnswer(BaseModel):
    selected_options: List[str]


class TrueFalseAnswer(BaseModel):
    answer: bool


class EssayAnswer(BaseModel):
    text: str
    word_count: Optional[int] = None


class FillBlankAnswer(BaseModel):
    """blank id -> submitted text"""
    answers: Dict[str, str]


class MatchingAnswer(BaseModel):
    pairs: List[MatchPair]


class OrderingAnswer(BaseModel):
    order: List[str]


class ShortAnswerAnswer(BaseModel):
    text: str


ANSWER_MODELS: Dict[QuestionType, type[BaseModel]] = {
    QuestionType.MULTIPLE_CHOICE: MultipleChoiceAnswer,
    QuestionType.TRUE_FALSE: TrueFalseAnswer,
    QuestionType.ESSAY: EssayAnswer,
    QuestionType.FILL_BLANK: FillBlankAnswer,
    QuestionType.MATCHING: MatchingAnswer,
    QuestionType.ORDERING: OrderingAnswer,
    QuestionType.SHORT_ANSWER: ShortAnswerAnswer,
}


# ---------------------------------------------------------------------------
# Questions, assessments, attempts
# ---------------------------------------------------------------------------

class Question(BaseModel):
    """A question definition with its typed content."""
    id: str
    type: QuestionType
    text: str
    content: QuestionContent
    points: int = 1
    time_limit: Optional[int] = None
    manual_review: bool = False

    @model_validator(mode="before")
    @classmethod
    def _tag_content(cls, data: Any) -> Any:
        """Let raw content omit its tag; it inherits the question's type."""
        if isinstance(data, dict):
            content = data.get("content")
            qtype = data.get("type")
            if isinstance(content, dict) and "type" not in content and qtype is not None:
                tag = qtype.value if isinstance(qtype, QuestionType) else qtype
                data = {**data, "content": {**content, "type": tag}}
        return data

    @model_validator(mode="after")
    def _check_tag(self) -> "Question":
        if self.content.type != self.type.value:
            raise ValueError(f"content type {self.content.type!r} does not match question type {self.type.value!r}")
        return self


class Assessment(BaseModel):
    """An exam: timing, pass mark, attempt policy and its ordered questions."""
    id: str
    title: str
    status: AssessmentStatus = AssessmentStatus.DRAFT
    duration: int = 60  # minutes
    passing_score: float = 60.0
    max_attempts: int = 1
    due_date: Optional[datetime] = None
    time_warning: int = 300  # seconds before end_time
    questions: List[Question] = []

    def question(self, question_id: str) -> Optional[Question]:
        return next((q for q in self.questions if q.id == question_id), None)

    @property
    def total_points(self) -> int:
        return sum(q.points for q in self.questions)


class AnswerRecord(BaseModel):
    """Stored answer row; unique per (attempt_id, question_id)."""
    id: Optional[int] = None
    attempt_id: int
    question_id: str
    payload: Optional[Dict[str, Any]] = None
    time_spent: int = 0
    skipped: bool = False
    flagged: bool = False
    graded: bool = False
    manually_graded: bool = False
    score: Optional[float] = None
    max_score: Optional[float] = None
    is_correct: Optional[bool] = None
    feedback: Optional[str] = None
    grading_error: Optional[str] = None
    graded_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Attempt(BaseModel):
    """One student's timed session on one assessment."""
    id: Optional[int] = None
    assessment_id: str
    student_id: str
    status: AttemptStatus = AttemptStatus.NOT_STARTED
    started_at: Optional[datetime] = None
    time_limit_seconds: int = 0
    end_time: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    end_reason: Optional[EndReason] = None
    time_spent: Optional[int] = None
    total_score: Optional[float] = None
    max_score: Optional[float] = None
    percentage: Optional[float] = None
    passed: Optional[bool] = None
    graded_at: Optional[datetime] = None
    grading_failures: Dict[str, str] = {}
    version: int = 0


class AttemptView(BaseModel):
    """An attempt returned to callers, optionally with its question set attached."""
    attempt: Attempt
    questions: List[Question] = []
    answers: List[AnswerRecord] = []
    can_submit: bool = False
    seconds_remaining: int = 0


class AnswerSubmission(BaseModel):
    """One answer sent by a student (SubmitAnswer body / SubmitAttempt item)."""
    question_id: str
    payload: Optional[Dict[str, Any]] = None
    time_spent: Optional[int] = None
    skipped: bool = False
    flagged: Optional[bool] = None
