"""Attempt lifecycle state machine.

    not_started -> in_progress -> {submitted, timed_out} -> {graded, pending_manual_grading}
    pending_manual_grading -> graded
    in_progress -> abandoned            (administrative only)

Transitions are pure: each operation takes an `Attempt` and returns an updated copy,
leaving persistence (and the optimistic version check) to the caller.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from packages.schemas.assessment import (
    Assessment,
    AssessmentStatus,
    Attempt,
    AttemptStatus,
    EndReason,
)

from .errors import BadRequestError, EligibilityError, StateError, TimeExpiredError

S = AttemptStatus

TRANSITIONS: Dict[Tuple[AttemptStatus, str], AttemptStatus] = {
    (S.NOT_STARTED, "start"): S.IN_PROGRESS,
    (S.IN_PROGRESS, "submit"): S.SUBMITTED,
    (S.IN_PROGRESS, "timeout"): S.TIMED_OUT,
    (S.IN_PROGRESS, "abandon"): S.ABANDONED,
    (S.SUBMITTED, "grade_complete"): S.GRADED,
    (S.TIMED_OUT, "grade_complete"): S.GRADED,
    (S.SUBMITTED, "grade_pending"): S.PENDING_MANUAL_GRADING,
    (S.TIMED_OUT, "grade_pending"): S.PENDING_MANUAL_GRADING,
    (S.PENDING_MANUAL_GRADING, "resolve_manual"): S.GRADED,
}

TERMINAL = frozenset({S.SUBMITTED, S.TIMED_OUT, S.PENDING_MANUAL_GRADING, S.GRADED, S.ABANDONED})
GRADABLE = frozenset({S.SUBMITTED, S.TIMED_OUT, S.PENDING_MANUAL_GRADING, S.GRADED})
TAKEABLE = frozenset({AssessmentStatus.ACTIVE})


def can_transition(status: AttemptStatus, event: str) -> bool:
    return (status, event) in TRANSITIONS


def next_status(status: AttemptStatus, event: str) -> AttemptStatus:
    """Resolve the target state or raise `StateError`."""
    try:
        return TRANSITIONS[(status, event)]
    except KeyError:
        raise StateError(f"cannot {event} an attempt in status {status.value}", status=status.value, event=event) from None


def is_terminal(status: AttemptStatus) -> bool:
    return status in TERMINAL


def compute_end_time(started_at: datetime, time_limit_seconds: int) -> datetime:
    if time_limit_seconds < 0:
        raise BadRequestError("time limit cannot be negative", time_limit_seconds=time_limit_seconds)
    return started_at + timedelta(seconds=time_limit_seconds)


def is_expired(attempt: Attempt, now: datetime) -> bool:
    """True once `now` is strictly past the attempt's end_time."""
    return attempt.end_time is not None and now > attempt.end_time


def seconds_remaining(attempt: Attempt, now: datetime) -> int:
    """`max(0, end_time - now)` in whole seconds; 0 once expired."""
    if attempt.end_time is None:
        return 0
    return max(0, int((attempt.end_time - now).total_seconds()))


def check_start_eligibility(
    assessment: Assessment,
    attempt_count: int,
    active_attempt: Optional[Attempt],
    now: datetime,
) -> None:
    """Guard for the `start` transition; raises `EligibilityError` with the reason."""
    if assessment.status not in TAKEABLE:
        raise EligibilityError("assessment is not active", assessment_id=assessment.id, reason="not_active")
    if assessment.due_date is not None and now > assessment.due_date:
        raise EligibilityError("assessment is past its due date", assessment_id=assessment.id, reason="past_due")
    if active_attempt is not None and active_attempt.status is S.IN_PROGRESS:
        raise EligibilityError("an attempt is already in progress", assessment_id=assessment.id, reason="active_attempt")
    if attempt_count >= assessment.max_attempts:
        raise EligibilityError("maximum attempts exceeded", assessment_id=assessment.id, reason="max_attempts")
    if not assessment.questions:
        raise EligibilityError("assessment has no questions", assessment_id=assessment.id, reason="empty")


class AttemptStateMachine:
    """Transition operations over `Attempt` values."""

    @staticmethod
    def start(assessment: Assessment, student_id: str, now: datetime) -> Attempt:
        """Create a fresh in-progress attempt; the time limit is copied from the assessment."""
        limit = assessment.duration * 60
        attempt = Attempt(assessment_id=assessment.id, student_id=student_id)
        return attempt.model_copy(update={
            "status": next_status(attempt.status, "start"),
            "started_at": now,
            "time_limit_seconds": limit,
            "end_time": compute_end_time(now, limit),
        })

    @staticmethod
    def submit(attempt: Attempt, now: datetime, time_spent: Optional[int] = None) -> Attempt:
        if attempt.status is not S.IN_PROGRESS:
            raise StateError(f"attempt already {attempt.status.value}", attempt_id=attempt.id, status=attempt.status.value)
        if is_expired(attempt, now):
            raise TimeExpiredError("attempt time has expired", attempt_id=attempt.id)
        if time_spent is None and attempt.started_at is not None:
            time_spent = int((now - attempt.started_at).total_seconds())
        return attempt.model_copy(update={
            "status": next_status(attempt.status, "submit"),
            "submitted_at": now,
            "completed_at": now,
            "end_reason": EndReason.USER_SUBMIT,
            "time_spent": time_spent,
        })

    @staticmethod
    def timeout(attempt: Attempt, now: datetime) -> Attempt:
        """Move an expired in-progress attempt to timed_out.

        Terminal attempts and attempts whose current end_time has not passed are
        returned unchanged.
        """
        if attempt.status is not S.IN_PROGRESS or not is_expired(attempt, now):
            return attempt
        return attempt.model_copy(update={
            "status": next_status(attempt.status, "timeout"),
            "completed_at": now,
            "end_reason": EndReason.TIMEOUT,
            "time_spent": attempt.time_limit_seconds,
        })

    @staticmethod
    def extend(attempt: Attempt, minutes: int) -> Attempt:
        """Push end_time forward; only while in progress."""
        if minutes <= 0:
            raise BadRequestError("extension must be a positive number of minutes", minutes=minutes)
        if attempt.status is not S.IN_PROGRESS:
            raise StateError("attempt is not active", attempt_id=attempt.id, status=attempt.status.value)
        seconds = minutes * 60
        return attempt.model_copy(update={
            "time_limit_seconds": attempt.time_limit_seconds + seconds,
            "end_time": compute_end_time(attempt.started_at, attempt.time_limit_seconds + seconds),
        })

    @staticmethod
    def abandon(attempt: Attempt, now: datetime) -> Attempt:
        return attempt.model_copy(update={
            "status": next_status(attempt.status, "abandon"),
            "completed_at": now,
        })

    @staticmethod
    def complete_grading(
        attempt: Attempt,
        *,
        pending: bool,
        total_score: float,
        max_score: float,
        percentage: float,
        passed: Optional[bool],
        failures: Dict[str, str],
        now: datetime,
    ) -> Attempt:
        """Record aggregate scores and move to graded / pending_manual_grading.

        Re-grading a graded attempt refreshes the scores without a transition; a
        pending attempt stays pending until nothing is outstanding.
        """
        status = attempt.status
        if status not in GRADABLE:
            raise StateError(f"cannot grade an attempt in status {status.value}", attempt_id=attempt.id, status=status.value)
        if status is S.GRADED:
            target = S.GRADED
        elif status is S.PENDING_MANUAL_GRADING:
            target = S.PENDING_MANUAL_GRADING if pending else next_status(status, "resolve_manual")
        else:
            target = next_status(status, "grade_pending" if pending else "grade_complete")
        update = {
            "status": target,
            "total_score": total_score,
            "max_score": max_score,
            "percentage": percentage,
            "passed": passed,
            "grading_failures": dict(failures),
        }
        if target is S.GRADED and attempt.graded_at is None:
            update["graded_at"] = now
        return attempt.model_copy(update=update)
