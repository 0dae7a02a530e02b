"""Tests for per-type answer grading."""

import pytest

from services.assessment.errors import AnswerValidationError
from services.assessment.grader import grade, grade_question, normalize

from .factories import essay_question, mc_question

MC = {
    "options": [{"id": "A", "text": "a"}, {"id": "B", "text": "b"}, {"id": "C", "text": "c"}],
    "correct_answers": ["A", "C"],
    "multiple_correct": True,
}


@pytest.mark.parametrize(
    "selected,expected",
    [
        (["A", "C"], 10.0),
        (["C", "A"], 10.0),
        (["A"], 0.0),
        (["A", "B", "C"], 0.0),
        ([], 0.0),
    ],
)
def test_multiple_choice_is_all_or_nothing(selected, expected) -> None:
    result = grade("multiple_choice", MC, {"selected_options": selected}, 10)
    assert result.score == expected
    assert result.correct is (expected == 10.0)


def test_true_false() -> None:
    assert grade("true_false", {"correct_answer": False}, {"answer": False}, 5).score == 5.0
    assert grade("true_false", {"correct_answer": False}, {"answer": True}, 5).score == 0.0


def test_fill_blank_ignores_case_and_whitespace() -> None:
    content = {"template": "Capital of France: {b1}", "blanks": {"b1": {"accepted_answers": ["Paris"], "points": 4}}}
    result = grade("fill_blank", content, {"answers": {"b1": "  paris "}}, 4)
    assert result.score == 4.0
    assert result.correct is True


def test_fill_blank_partial_and_capped() -> None:
    content = {
        "template": "{a} and {b}",
        "blanks": {"a": {"accepted_answers": ["x"], "points": 2}, "b": {"accepted_answers": ["y"], "points": 2}},
    }
    partial = grade("fill_blank", content, {"answers": {"a": "X", "b": "nope"}}, 4)
    assert partial.score == 2.0
    assert partial.correct is False
    assert partial.feedback == "1/2 blanks correct"

    generous = {"template": "{a}", "blanks": {"a": {"accepted_answers": ["x"], "points": 10}}}
    assert grade("fill_blank", generous, {"answers": {"a": "x"}}, 5).score == 5.0


def test_matching_gives_proportional_credit() -> None:
    content = {
        "left_items": [{"id": f"l{i}", "text": str(i)} for i in range(1, 5)],
        "right_items": [{"id": f"r{i}", "text": str(i)} for i in range(1, 5)],
        "correct_pairs": [{"left_id": f"l{i}", "right_id": f"r{i}"} for i in range(1, 5)],
    }
    submitted = [
        {"left_id": "l1", "right_id": "r1"},
        {"left_id": "l2", "right_id": "r2"},
        {"left_id": "l3", "right_id": "r3"},
        {"left_id": "l4", "right_id": "r1"},
    ]
    result = grade("matching", content, {"pairs": submitted}, 10)
    assert result.score == pytest.approx(3 / 4 * 10)
    assert result.correct is False


def test_ordering_requires_exact_sequence() -> None:
    content = {
        "items": [{"id": "1", "text": "a"}, {"id": "2", "text": "b"}, {"id": "3", "text": "c"}],
        "correct_order": ["2", "1", "3"],
    }
    assert grade("ordering", content, {"order": ["2", "1", "3"]}, 6).score == 6.0
    assert grade("ordering", content, {"order": ["1", "2", "3"]}, 6).score == 0.0


def test_short_answer_normalized_membership() -> None:
    content = {"accepted_answers": ["Photosynthesis"], "max_length": 50}
    assert grade("short_answer", content, {"text": " PHOTOSYNTHESIS\n"}, 3).correct is True
    assert grade("short_answer", content, {"text": "respiration"}, 3).score == 0.0


def test_essay_is_never_auto_graded() -> None:
    result = grade_question(essay_question(), {"text": "too short"})
    assert result.gradable is False
    assert result.correct is None
    assert result.max_score == 20.0
    assert result.warnings == ["word count 2 is below the minimum of 3"]


def test_manual_review_defers_any_type() -> None:
    q = mc_question().model_copy(update={"manual_review": True})
    result = grade_question(q, {"selected_options": ["B"]})
    assert result.gradable is False


def test_unanswered_question_scores_zero() -> None:
    result = grade_question(mc_question(), None)
    assert (result.score, result.correct, result.gradable) == (0.0, False, True)


def test_malformed_payload_raises() -> None:
    with pytest.raises(AnswerValidationError):
        grade_question(mc_question(), {"selected": "B"})


def test_normalize() -> None:
    assert normalize("  Straße ") == "strasse"
