"""Per-question answer grading.

Functions:
- grade: score one answer payload against a question's content.
- grade_question: convenience wrapper taking a `Question`.

Policies:
- multiple_choice: exact set of selected ids, all-or-nothing.
- true_false: boolean equality.
- essay: never auto-gradable; only word-count warnings.
- fill_blank: per-blank normalized membership; score = sum of matched blank points,
  capped at the question's points.
- matching: matched correct pairs / declared correct pairs x points.
- ordering: exact sequence, all-or-nothing.
- short_answer: normalized membership in the accepted list.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel

from packages.schemas.assessment import (
    EssayAnswer,
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
    TrueFalseAnswer,
    TrueFalseContent,
)

from .validator import parse_content, parse_payload


class GradeResult(BaseModel):
    """Outcome of grading one answer.

    `gradable=False` means score/correct are deferred to a human; callers must not
    read it as zero.
    """
    score: float = 0.0
    max_score: float = 0.0
    correct: Optional[bool] = None
    gradable: bool = True
    feedback: Optional[str] = None
    warnings: List[str] = []


def normalize(text: str) -> str:
    """Trim surrounding whitespace and case-fold."""
    return (text or "").strip().casefold()


def _round(x: float) -> float:
    return round(x, 2)


def _all_or_nothing(ok: bool, points: float, feedback: Optional[str] = None) -> GradeResult:
    return GradeResult(
        score=float(points) if ok else 0.0,
        max_score=float(points),
        correct=ok,
        feedback=feedback or ("Correct" if ok else "Incorrect"),
    )


def _grade_multiple_choice(c: MultipleChoiceContent, a: MultipleChoiceAnswer, points: float) -> GradeResult:
    return _all_or_nothing(set(a.selected_options) == set(c.correct_answers), points)


def _grade_true_false(c: TrueFalseContent, a: TrueFalseAnswer, points: float) -> GradeResult:
    return _all_or_nothing(a.answer == c.correct_answer, points)


def _grade_essay(c: EssayContent, a: EssayAnswer, points: float) -> GradeResult:
    words = len(a.text.split())
    warnings = []
    if c.min_words is not None and words < c.min_words:
        warnings.append(f"word count {words} is below the minimum of {c.min_words}")
    if c.max_words is not None and words > c.max_words:
        warnings.append(f"word count {words} exceeds the maximum of {c.max_words}")
    return GradeResult(max_score=float(points), gradable=False, feedback="Awaiting manual grading", warnings=warnings)


def _grade_fill_blank(c: FillBlankContent, a: FillBlankAnswer, points: float) -> GradeResult:
    earned = 0.0
    matched = 0
    for blank_id, blank in c.blanks.items():
        given = a.answers.get(blank_id)
        if given is None:
            continue
        if normalize(given) in {normalize(x) for x in blank.accepted_answers}:
            earned += blank.points
            matched += 1
    total = len(c.blanks)
    return GradeResult(
        score=_round(min(earned, float(points))),
        max_score=float(points),
        correct=matched == total,
        feedback=f"{matched}/{total} blanks correct",
    )


def _grade_matching(c: MatchingContent, a: MatchingAnswer, points: float) -> GradeResult:
    declared = set(c.correct_pairs)
    submitted = set(a.pairs)
    matched = len(submitted & declared)
    wrong = len(submitted - declared)
    score = matched / len(declared) * points if declared else 0.0
    return GradeResult(
        score=_round(score),
        max_score=float(points),
        correct=matched == len(declared) and wrong == 0,
        feedback=f"{matched}/{len(declared)} pairs matched",
    )


def _grade_ordering(c: OrderingContent, a: OrderingAnswer, points: float) -> GradeResult:
    return _all_or_nothing(list(a.order) == list(c.correct_order), points)


def _grade_short_answer(c: ShortAnswerContent, a: ShortAnswerAnswer, points: float) -> GradeResult:
    accepted = {normalize(x) for x in c.accepted_answers}
    return _all_or_nothing(normalize(a.text) in accepted, points)


_GRADERS: Dict[QuestionType, Callable[[Any, Any, float], GradeResult]] = {
    QuestionType.MULTIPLE_CHOICE: _grade_multiple_choice,
    QuestionType.TRUE_FALSE: _grade_true_false,
    QuestionType.ESSAY: _grade_essay,
    QuestionType.FILL_BLANK: _grade_fill_blank,
    QuestionType.MATCHING: _grade_matching,
    QuestionType.ORDERING: _grade_ordering,
    QuestionType.SHORT_ANSWER: _grade_short_answer,
}

assert set(_GRADERS) == set(QuestionType), "every question type needs a grader"


def grade(
    question_type: QuestionType,
    content: Any,
    payload: Optional[Mapping[str, Any]],
    points: float,
    manual_review: bool = False,
) -> GradeResult:
    """Grade one answer payload.

    Args:
        question_type: The question's declared type.
        content: Typed content variant or its raw mapping.
        payload: The raw answer payload, or None if the student never answered.
        points: The question's point value.
        manual_review: Defer every type to a human grader.

    Returns:
        GradeResult with score/correct, or `gradable=False` when deferred.

    Raises:
        ContentValidationError: content does not fit `question_type`.
        AnswerValidationError: payload does not fit the type's answer shape.
    """
    qtype = QuestionType(question_type)
    typed = parse_content(qtype, content)
    answer = parse_payload(qtype, payload)

    if qtype is QuestionType.ESSAY or manual_review:
        if answer is None:
            return GradeResult(max_score=float(points), gradable=False, feedback="Awaiting manual grading", warnings=["no answer submitted"])
        if qtype is not QuestionType.ESSAY:
            return GradeResult(max_score=float(points), gradable=False, feedback="Flagged for manual review")

    if answer is None:
        return GradeResult(score=0.0, max_score=float(points), correct=False, feedback="No answer submitted")

    return _GRADERS[qtype](typed, answer, float(points))


def grade_question(question: Question, payload: Optional[Mapping[str, Any]]) -> GradeResult:
    """Grade `payload` against `question` using its points and review flag."""
    return grade(question.type, question.content, payload, question.points, question.manual_review)
