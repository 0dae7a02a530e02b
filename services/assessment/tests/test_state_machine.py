"""Tests for attempt lifecycle transitions."""

from datetime import timedelta

import pytest

from packages.schemas.assessment import Assessment, AssessmentStatus, Attempt, AttemptStatus, EndReason
from services.assessment.errors import BadRequestError, EligibilityError, StateError, TimeExpiredError
from services.assessment.state_machine import (
    AttemptStateMachine,
    can_transition,
    check_start_eligibility,
    is_terminal,
    seconds_remaining,
)

from .factories import T0, mc_question

S = AttemptStatus


@pytest.fixture
def assessment() -> Assessment:
    return Assessment(id="a1", title="t", status=AssessmentStatus.ACTIVE, duration=30, questions=[mc_question()])


@pytest.fixture
def started(assessment) -> Attempt:
    return AttemptStateMachine.start(assessment, "s1", T0).model_copy(update={"id": 1})


def test_start_sets_end_time(started) -> None:
    assert started.status is S.IN_PROGRESS
    assert started.time_limit_seconds == 30 * 60
    assert started.end_time == T0 + timedelta(minutes=30)
    assert started.end_time >= started.started_at


def test_transition_table() -> None:
    assert can_transition(S.IN_PROGRESS, "submit")
    assert can_transition(S.PENDING_MANUAL_GRADING, "resolve_manual")
    assert not can_transition(S.GRADED, "start")
    assert not can_transition(S.TIMED_OUT, "submit")
    assert is_terminal(S.TIMED_OUT) and not is_terminal(S.IN_PROGRESS)


def test_submit_allowed_until_end_time(started) -> None:
    submitted = AttemptStateMachine.submit(started, started.end_time)
    assert submitted.status is S.SUBMITTED
    assert submitted.end_reason is EndReason.USER_SUBMIT
    assert submitted.time_spent == 30 * 60


def test_submit_after_end_time_fails(started) -> None:
    with pytest.raises(TimeExpiredError):
        AttemptStateMachine.submit(started, started.end_time + timedelta(seconds=1))


def test_submit_twice_fails(started) -> None:
    submitted = AttemptStateMachine.submit(started, T0)
    with pytest.raises(StateError):
        AttemptStateMachine.submit(submitted, T0)


def test_timeout_only_after_current_end_time(started) -> None:
    assert AttemptStateMachine.timeout(started, started.end_time) is started
    timed_out = AttemptStateMachine.timeout(started, started.end_time + timedelta(seconds=1))
    assert timed_out.status is S.TIMED_OUT
    assert timed_out.end_reason is EndReason.TIMEOUT
    assert AttemptStateMachine.timeout(timed_out, T0 + timedelta(hours=5)) is timed_out


def test_extend_moves_end_time_forward(started) -> None:
    extended = AttemptStateMachine.extend(started, 15)
    assert extended.end_time == started.end_time + timedelta(minutes=15)
    assert extended.end_time - extended.started_at == timedelta(seconds=extended.time_limit_seconds)


def test_extend_rejections(started) -> None:
    with pytest.raises(BadRequestError):
        AttemptStateMachine.extend(started, 0)
    timed_out = AttemptStateMachine.timeout(started, T0 + timedelta(hours=1))
    with pytest.raises(StateError):
        AttemptStateMachine.extend(timed_out, 10)


def test_abandon_only_from_in_progress(started) -> None:
    assert AttemptStateMachine.abandon(started, T0).status is S.ABANDONED
    with pytest.raises(StateError):
        AttemptStateMachine.abandon(AttemptStateMachine.submit(started, T0), T0)


def test_seconds_remaining_never_negative(started) -> None:
    assert seconds_remaining(started, T0 + timedelta(minutes=10)) == 20 * 60
    assert seconds_remaining(started, T0 + timedelta(hours=2)) == 0


def _grade(attempt, pending):
    return AttemptStateMachine.complete_grading(
        attempt, pending=pending, total_score=1, max_score=1, percentage=100.0,
        passed=None if pending else True, failures={}, now=T0,
    )


def test_grading_transitions(started) -> None:
    submitted = AttemptStateMachine.submit(started, T0)
    pending = _grade(submitted, pending=True)
    assert pending.status is S.PENDING_MANUAL_GRADING
    assert pending.graded_at is None
    assert _grade(pending, pending=True).status is S.PENDING_MANUAL_GRADING

    graded = _grade(pending, pending=False)
    assert graded.status is S.GRADED
    assert graded.graded_at == T0
    regraded = AttemptStateMachine.complete_grading(
        graded, pending=False, total_score=1, max_score=1, percentage=100.0, passed=True,
        failures={}, now=T0 + timedelta(days=1),
    )
    assert regraded.graded_at == T0


def test_cannot_grade_in_progress(started) -> None:
    with pytest.raises(StateError):
        _grade(started, pending=False)


class TestEligibility:
    def test_ok(self, assessment) -> None:
        check_start_eligibility(assessment, 0, None, T0)

    @pytest.mark.parametrize(
        "changes,count,reason",
        [
            ({"status": AssessmentStatus.DRAFT}, 0, "not_active"),
            ({"due_date": T0 - timedelta(days=1)}, 0, "past_due"),
            ({}, 1, "max_attempts"),
            ({"questions": []}, 0, "empty"),
        ],
    )
    def test_rejections(self, assessment, changes, count, reason) -> None:
        with pytest.raises(EligibilityError) as exc:
            check_start_eligibility(assessment.model_copy(update=changes), count, None, T0)
        assert exc.value.context["reason"] == reason

    def test_active_attempt(self, assessment, started) -> None:
        with pytest.raises(EligibilityError):
            check_start_eligibility(assessment, 0, started, T0)
