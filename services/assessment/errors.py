"""Error taxonomy for the assessment service.

Every error carries a stable `code` so the HTTP layer (and any other caller) can turn
it into a structured rejection without string matching.
"""

from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel


class ValidationIssue(BaseModel):
    """One violated rule."""
    field: str
    rule: str
    message: str
    value: Any = None


class AssessmentError(Exception):
    """Base class for all service-level rejections."""

    code = "assessment_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        context = {k: v for k, v in self.context.items() if v is not None}
        return {"error": self.code, "message": self.message, "details": [context] if context else []}


class ContentValidationError(AssessmentError):
    """Question content is malformed; one issue per violated rule."""

    code = "content_invalid"

    def __init__(self, issues: List[ValidationIssue], message: Optional[str] = None, **context: Any) -> None:
        if message is None:
            if len(issues) == 1:
                message = f"validation failed: {issues[0].field} {issues[0].message}"
            else:
                message = f"validation failed: {len(issues)} errors"
        super().__init__(message, **context)
        self.issues = list(issues)

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["details"] = [i.model_dump() for i in self.issues]
        return body


class AnswerValidationError(AssessmentError):
    """The answer payload does not fit the question's type or items."""

    code = "answer_invalid"


class StateError(AssessmentError):
    """The requested transition is not allowed from the attempt's current status."""

    code = "invalid_state"


class TimeExpiredError(AssessmentError):
    """The attempt's end_time has passed."""

    code = "time_expired"


class EligibilityError(AssessmentError):
    """The student may not start an attempt (limits, status, due date, active attempt)."""

    code = "not_eligible"


class PermissionDeniedError(AssessmentError):
    """The actor does not own the attempt or lacks the required role."""

    code = "permission_denied"

    def __init__(self, actor_id: str, action: str, resource: str, resource_id: Any, reason: str) -> None:
        super().__init__(
            f"permission denied: {actor_id} cannot {action} {resource} {resource_id} - {reason}",
            actor_id=actor_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
        )


class NotFoundError(AssessmentError):
    code = "not_found"


class BadRequestError(AssessmentError):
    code = "bad_request"


class StaleAttemptError(AssessmentError):
    """An optimistic update lost the race; re-read and retry."""

    code = "conflict"


class DuplicateActiveAttemptError(AssessmentError):
    """The store refused a second in-progress attempt for the same student and assessment."""

    code = "conflict"
