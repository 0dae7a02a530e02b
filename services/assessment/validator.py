"""Question content validation.

`validate_content` is pure: it never touches storage and returns one
`ValidationIssue` per violated rule so authors can fix everything in one pass.
Rules are dispatched through a closed table keyed by `QuestionType`.
"""

from __future__ import annotations

from collections import Counter
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import BaseModel, ValidationError

from packages.schemas.assessment import (
    ANSWER_MODELS,
    CONTENT_MODELS,
    Assessment,
    EssayContent,
    FillBlankAnswer,
    FillBlankContent,
    MatchingAnswer,
    MatchingContent,
    MultipleChoiceAnswer,
    MultipleChoiceContent,
    OrderingAnswer,
    OrderingContent,
    Question,
    QuestionType,
    ShortAnswerAnswer,
    ShortAnswerContent,
    TrueFalseContent,
)

from .errors import AnswerValidationError, ContentValidationError, ValidationIssue

MIN_OPTIONS, MAX_OPTIONS = 2, 10
MIN_ITEMS, MAX_ITEMS = 2, 10
MIN_POINTS, MAX_POINTS = 1, 100
MAX_SHORT_ANSWER_LENGTH = 500
MIN_DURATION, MAX_DURATION = 5, 300
MIN_ATTEMPTS, MAX_ATTEMPTS = 1, 10

ContentInput = Union[BaseModel, Mapping[str, Any]]


def _issue(field: str, rule: str, message: str, value: Any = None) -> ValidationIssue:
    return ValidationIssue(field=field, rule=rule, message=message, value=value)


def _schema_issues(err: ValidationError, prefix: str = "content") -> List[ValidationIssue]:
    """Turn pydantic's structural errors into issues (one per error)."""
    out = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e.get("loc", ()))
        out.append(_issue(f"{prefix}.{loc}" if loc else prefix, "schema", e.get("msg", "invalid"), e.get("input")))
    return out


def _duplicates(values: Iterable[str]) -> List[str]:
    return sorted(v for v, n in Counter(values).items() if n > 1)


def _check_items(field: str, items: list, lo: int, hi: int, issues: List[ValidationIssue]) -> set[str]:
    """Shared cardinality / id / text checks for option-like lists. Returns the id set."""
    if len(items) < lo:
        issues.append(_issue(field, "min_items", f"must have at least {lo} entries", len(items)))
    if len(items) > hi:
        issues.append(_issue(field, "max_items", f"cannot have more than {hi} entries", len(items)))
    for i, item in enumerate(items):
        if not item.id.strip():
            issues.append(_issue(f"{field}[{i}].id", "required", "id cannot be empty"))
        if not item.text.strip():
            issues.append(_issue(f"{field}[{i}].text", "required", "text cannot be empty"))
    for dup in _duplicates(item.id for item in items):
        issues.append(_issue(field, "unique_ids", f"duplicate id '{dup}'", dup))
    return {item.id for item in items}


# ---------------------------------------------------------------------------
# Per-type rules
# ---------------------------------------------------------------------------

def _multiple_choice(c: MultipleChoiceContent) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    ids = _check_items("options", c.options, MIN_OPTIONS, MAX_OPTIONS, issues)
    if not c.correct_answers:
        issues.append(_issue("correct_answers", "min_items", "must have at least 1 correct answer"))
    if len(c.correct_answers) > len(c.options):
        issues.append(_issue("correct_answers", "max_items", "cannot have more correct answers than options", len(c.correct_answers)))
    for cid in c.correct_answers:
        if cid not in ids:
            issues.append(_issue("correct_answers", "reference", f"correct answer ID '{cid}' does not match any option", cid))
    for dup in _duplicates(c.correct_answers):
        issues.append(_issue("correct_answers", "unique_ids", f"duplicate correct answer '{dup}'", dup))
    if len(set(c.correct_answers)) > 1 and not c.multiple_correct:
        issues.append(_issue("multiple_correct", "required_true", "multiple correct answers require multiple_correct to be true"))
    return issues


def _true_false(c: TrueFalseContent) -> List[ValidationIssue]:
    return []


def _essay(c: EssayContent) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    if c.min_words is not None and c.min_words < 0:
        issues.append(_issue("min_words", "non_negative", "minimum word count cannot be negative", c.min_words))
    if c.max_words is not None and c.max_words < 0:
        issues.append(_issue("max_words", "non_negative", "maximum word count cannot be negative", c.max_words))
    if c.min_words is not None and c.max_words is not None and c.min_words > c.max_words:
        issues.append(_issue("min_words", "min_le_max", "minimum word count cannot be greater than maximum", c.min_words))
    return issues


def _fill_blank(c: FillBlankContent) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    if not c.template.strip():
        issues.append(_issue("template", "required", "template is required"))
    if not c.blanks:
        issues.append(_issue("blanks", "min_items", "must have at least 1 blank"))
    for blank_id, blank in c.blanks.items():
        field = f"blanks.{blank_id}"
        if not blank.accepted_answers:
            issues.append(_issue(f"{field}.accepted_answers", "min_items", f"blank '{blank_id}' must have at least 1 accepted answer"))
        for i, accepted in enumerate(blank.accepted_answers):
            if not accepted.strip():
                issues.append(_issue(f"{field}.accepted_answers[{i}]", "required", "accepted answer cannot be empty"))
        if blank.points < 0:
            issues.append(_issue(f"{field}.points", "non_negative", f"blank '{blank_id}' points cannot be negative", blank.points))
    return issues


def _matching(c: MatchingContent) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    left = _check_items("left_items", c.left_items, MIN_ITEMS, MAX_ITEMS, issues)
    right = _check_items("right_items", c.right_items, MIN_ITEMS, MAX_ITEMS, issues)
    if not c.correct_pairs:
        issues.append(_issue("correct_pairs", "min_items", "must have at least 1 correct pair"))
    for i, pair in enumerate(c.correct_pairs):
        if pair.left_id not in left:
            issues.append(_issue(f"correct_pairs[{i}].left_id", "reference", f"correct pair references non-existent left item: {pair.left_id}", pair.left_id))
        if pair.right_id not in right:
            issues.append(_issue(f"correct_pairs[{i}].right_id", "reference", f"correct pair references non-existent right item: {pair.right_id}", pair.right_id))
    for dup in {p for p, n in Counter(c.correct_pairs).items() if n > 1}:
        issues.append(_issue("correct_pairs", "unique_pairs", f"duplicate pair ({dup.left_id}, {dup.right_id})"))
    return issues


def _ordering(c: OrderingContent) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    ids = _check_items("items", c.items, MIN_ITEMS, MAX_ITEMS, issues)
    if len(c.correct_order) != len(c.items):
        issues.append(_issue("correct_order", "permutation", "correct order must include all items exactly once", len(c.correct_order)))
    for oid in c.correct_order:
        if oid not in ids:
            issues.append(_issue("correct_order", "reference", f"correct order references non-existent item: {oid}", oid))
    for dup in _duplicates(c.correct_order):
        issues.append(_issue("correct_order", "unique_ids", f"correct order contains duplicate item: {dup}", dup))
    return issues


def _short_answer(c: ShortAnswerContent) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    if not c.accepted_answers:
        issues.append(_issue("accepted_answers", "min_items", "must have at least 1 accepted answer"))
    if c.max_length < 1:
        issues.append(_issue("max_length", "min", "max length must be at least 1", c.max_length))
    if c.max_length > MAX_SHORT_ANSWER_LENGTH:
        issues.append(_issue("max_length", "max", f"max length cannot exceed {MAX_SHORT_ANSWER_LENGTH} characters", c.max_length))
    for i, answer in enumerate(c.accepted_answers):
        if not answer.strip():
            issues.append(_issue(f"accepted_answers[{i}]", "required", f"accepted answer {i + 1} cannot be empty"))
        elif len(answer) > c.max_length:
            issues.append(_issue(f"accepted_answers[{i}]", "max_length", f"accepted answer {i + 1} exceeds max length of {c.max_length}", answer))
    return issues


_RULES: Dict[QuestionType, Callable[[Any], List[ValidationIssue]]] = {
    QuestionType.MULTIPLE_CHOICE: _multiple_choice,
    QuestionType.TRUE_FALSE: _true_false,
    QuestionType.ESSAY: _essay,
    QuestionType.FILL_BLANK: _fill_blank,
    QuestionType.MATCHING: _matching,
    QuestionType.ORDERING: _ordering,
    QuestionType.SHORT_ANSWER: _short_answer,
}

assert set(_RULES) == set(QuestionType), "every question type needs content rules"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse_content(question_type: QuestionType, content: ContentInput) -> BaseModel:
    """Coerce raw or typed content into the variant model for `question_type`.

    Raises:
        ContentValidationError: if the content's shape does not fit the type.
    """
    qtype = QuestionType(question_type)
    model = CONTENT_MODELS[qtype]
    if isinstance(content, model):
        return content
    if isinstance(content, BaseModel):
        raise ContentValidationError([
            _issue("content.type", "type_mismatch", f"content of type {getattr(content, 'type', '?')} given for {qtype.value}")
        ])
    if content is None:
        raise ContentValidationError([_issue("content", "required", "content cannot be empty")])
    raw = dict(content)
    raw.setdefault("type", qtype.value)
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise ContentValidationError(_schema_issues(e)) from e


def validate_content(question_type: QuestionType, content: ContentInput) -> List[ValidationIssue]:
    """Validate content for its declared type; an empty list means valid."""
    try:
        qtype = QuestionType(question_type)
    except ValueError:
        return [_issue("type", "question_type", f"unsupported question type: {question_type}", question_type)]
    try:
        parsed = parse_content(qtype, content)
    except ContentValidationError as e:
        return e.issues
    return _RULES[qtype](parsed)


def ensure_valid_content(question_type: QuestionType, content: ContentInput) -> BaseModel:
    """Parse and validate, raising `ContentValidationError` with every issue found."""
    issues = validate_content(question_type, content)
    if issues:
        raise ContentValidationError(issues, question_type=str(question_type))
    return parse_content(QuestionType(question_type), content)


def validate_question(question: Question) -> List[ValidationIssue]:
    """Validate a complete question: text, points, time limit and content."""
    issues: List[ValidationIssue] = []
    if not question.text.strip():
        issues.append(_issue("text", "required", "question text is required"))
    if not MIN_POINTS <= question.points <= MAX_POINTS:
        issues.append(_issue("points", "range", f"question points must be between {MIN_POINTS} and {MAX_POINTS}", question.points))
    if question.time_limit is not None and question.time_limit <= 0:
        issues.append(_issue("time_limit", "positive", "time limit must be positive", question.time_limit))
    issues.extend(
        i.model_copy(update={"field": f"content.{i.field}" if not i.field.startswith("content") else i.field})
        for i in validate_content(question.type, question.content)
    )
    return issues


def validate_questions(questions: List[Question]) -> List[ValidationIssue]:
    """Validate a batch; each issue's field is prefixed with the question's position."""
    if not questions:
        return [_issue("questions", "min_items", "question batch cannot be empty")]
    issues: List[ValidationIssue] = []
    for idx, question in enumerate(questions):
        for i in validate_question(question):
            issues.append(i.model_copy(update={"field": f"questions[{idx}].{i.field}"}))
    return issues


def validate_assessment(assessment: Assessment) -> List[ValidationIssue]:
    """Publish-time checks for an assessment and all of its questions."""
    issues: List[ValidationIssue] = []
    if not assessment.title.strip():
        issues.append(_issue("title", "required", "title is required"))
    if not MIN_DURATION <= assessment.duration <= MAX_DURATION:
        issues.append(_issue("duration", "range", f"must be between {MIN_DURATION} and {MAX_DURATION} minutes", assessment.duration))
    if not 0 <= assessment.passing_score <= 100:
        issues.append(_issue("passing_score", "range", "must be between 0 and 100", assessment.passing_score))
    if not MIN_ATTEMPTS <= assessment.max_attempts <= MAX_ATTEMPTS:
        issues.append(_issue("max_attempts", "range", f"must be between {MIN_ATTEMPTS} and {MAX_ATTEMPTS}", assessment.max_attempts))
    for dup in _duplicates(q.id for q in assessment.questions):
        issues.append(_issue("questions", "unique_ids", f"duplicate question id '{dup}'", dup))
    issues.extend(validate_questions(assessment.questions))
    return issues


# ---------------------------------------------------------------------------
# Answer shape
# ---------------------------------------------------------------------------

def parse_payload(
    question_type: QuestionType,
    payload: Optional[Mapping[str, Any]],
    question_id: Optional[str] = None,
) -> Optional[BaseModel]:
    """Parse a raw answer payload into the answer model for `question_type` (None stays None)."""
    if payload is None:
        return None
    qtype = QuestionType(question_type)
    try:
        return ANSWER_MODELS[qtype].model_validate(dict(payload))
    except (ValidationError, TypeError, ValueError) as e:
        raise AnswerValidationError(
            f"answer does not match {qtype.value} shape: {e}",
            question_id=question_id,
        ) from e


def parse_answer(question: Question, payload: Optional[Mapping[str, Any]]) -> Optional[BaseModel]:
    return parse_payload(question.type, payload, question.id)


def validate_answer(question: Question, payload: Optional[Mapping[str, Any]]) -> Optional[BaseModel]:
    """Check that a submitted answer refers only to the question's own ids.

    Returns the parsed answer model. Raises `AnswerValidationError` on the first problem.
    """
    answer = parse_answer(question, payload)
    if answer is None:
        return None
    content = question.content

    def reject(msg: str) -> None:
        raise AnswerValidationError(msg, question_id=question.id)

    if isinstance(answer, MultipleChoiceAnswer):
        known = {o.id for o in content.options}
        unknown = [s for s in answer.selected_options if s not in known]
        if unknown:
            reject(f"unknown option ids: {', '.join(unknown)}")
        if len(set(answer.selected_options)) > 1 and not content.multiple_correct:
            reject("only one option may be selected")
    elif isinstance(answer, FillBlankAnswer):
        unknown = [b for b in answer.answers if b not in content.blanks]
        if unknown:
            reject(f"unknown blank ids: {', '.join(unknown)}")
    elif isinstance(answer, MatchingAnswer):
        left = {i.id for i in content.left_items}
        right = {i.id for i in content.right_items}
        for pair in answer.pairs:
            if pair.left_id not in left or pair.right_id not in right:
                reject(f"pair ({pair.left_id}, {pair.right_id}) references unknown items")
        dups = _duplicates(p.left_id for p in answer.pairs)
        if dups:
            reject(f"left items matched more than once: {', '.join(dups)}")
    elif isinstance(answer, OrderingAnswer):
        known = {i.id for i in content.items}
        unknown = [o for o in answer.order if o not in known]
        if unknown:
            reject(f"unknown item ids: {', '.join(unknown)}")
        dups = _duplicates(answer.order)
        if dups:
            reject(f"items repeated in order: {', '.join(dups)}")
    elif isinstance(answer, ShortAnswerAnswer):
        if len(answer.text) > content.max_length:
            reject(f"answer exceeds max length of {content.max_length}")
    return answer
