"""Tests for attempt-level score aggregation."""

from services.assessment.aggregator import GradedItem, aggregate
from services.assessment.grader import GradeResult


def auto(qid, score, points):
    return GradedItem(qid, points, result=GradeResult(score=score, max_score=points, correct=score == points))


def deferred(qid, points):
    return GradedItem(qid, points, result=GradeResult(max_score=points, gradable=False))


def test_all_auto_gradable_is_final() -> None:
    summary = aggregate([auto("q1", 10, 10), auto("q2", 0, 10)], passing_score=50)
    assert summary.final
    assert (summary.total_score, summary.max_score, summary.percentage) == (10, 20, 50.0)
    assert summary.passed is True


def test_deferred_items_are_excluded_not_zeroed() -> None:
    summary = aggregate([auto("q1", 10, 10), deferred("essay", 90)], passing_score=60)
    assert not summary.final
    assert summary.percentage == 100.0
    assert summary.max_score == 10
    assert summary.passed is None
    assert summary.pending_question_ids == ["essay"]


def test_manual_scores_count_in_final_percentage() -> None:
    items = [auto("q1", 10, 10), GradedItem("essay", 90, manual_score=35)]
    summary = aggregate(items, passing_score=60)
    assert summary.final
    assert summary.percentage == 45.0
    assert summary.passed is False


def test_failures_keep_summary_pending() -> None:
    items = [auto("q1", 5, 5), GradedItem("q2", 5, error="bad payload")]
    summary = aggregate(items, passing_score=50)
    assert not summary.final
    assert summary.failures == {"q2": "bad payload"}
    assert summary.pending_question_ids == ["q2"]
    assert summary.graded_count == 1


def test_empty_attempt() -> None:
    summary = aggregate([], passing_score=60)
    assert summary.percentage == 0.0
    assert summary.passed is False
