"""Attempt lifecycle notifications.

Events are fire-and-forget: a publishing failure is logged and never propagates into
the operation that triggered it.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from packages.common.events import Publisher
from packages.schemas.assessment import Attempt

log = logging.getLogger(__name__)

ATTEMPT_STARTED = "attempt.started"
ATTEMPT_SUBMITTED = "attempt.submitted"
ATTEMPT_GRADED = "attempt.graded"
ATTEMPT_TIME_WARNING = "attempt.time_warning"
MANUAL_GRADING_REQUIRED = "grading.manual_required"


def attempt_payload(attempt: Attempt, **extra: Any) -> Dict[str, Any]:
    """Common fields for every attempt event, plus scores once they exist."""
    body: Dict[str, Any] = {
        "attempt_id": attempt.id,
        "assessment_id": attempt.assessment_id,
        "student_id": attempt.student_id,
        "status": attempt.status.value,
    }
    for key in ("total_score", "max_score", "percentage", "passed"):
        value = getattr(attempt, key)
        if value is not None:
            body[key] = value
    body.update({k: v for k, v in extra.items() if v is not None})
    return body


class AttemptNotifier:
    """Builds attempt event payloads and hands them to a `Publisher`."""

    def __init__(self, publisher: Publisher) -> None:
        self._publisher = publisher

    def _emit(self, topic: str, attempt: Attempt, **extra: Any) -> None:
        try:
            self._publisher.publish(topic, str(attempt.id), attempt_payload(attempt, **extra))
        except Exception:
            log.exception("failed to publish %s", topic, extra={"attempt_id": attempt.id})

    def started(self, attempt: Attempt) -> None:
        self._emit(
            ATTEMPT_STARTED,
            attempt,
            started_at=attempt.started_at.isoformat() if attempt.started_at else None,
            end_time=attempt.end_time.isoformat() if attempt.end_time else None,
            time_limit_seconds=attempt.time_limit_seconds,
        )

    def submitted(self, attempt: Attempt, grading_required: bool = False) -> None:
        self._emit(
            ATTEMPT_SUBMITTED,
            attempt,
            end_reason=attempt.end_reason.value if attempt.end_reason else None,
            grading_required=grading_required,
        )

    def graded(self, attempt: Attempt, grader_id: Optional[str] = None) -> None:
        self._emit(ATTEMPT_GRADED, attempt, grader_id=grader_id)

    def manual_grading_required(self, attempt: Attempt, pending_question_ids: list[str]) -> None:
        self._emit(MANUAL_GRADING_REQUIRED, attempt, pending_question_ids=pending_question_ids)

    def time_warning(self, attempt: Attempt, seconds_remaining: int) -> None:
        self._emit(ATTEMPT_TIME_WARNING, attempt, seconds_remaining=seconds_remaining)
