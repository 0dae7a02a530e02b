"""Repository layer for the assessment service.

`AttemptRepository` is the storage contract the orchestrator consumes.
`InMemoryRepository` is a thread-safe implementation used by tests and single-node
deployments; `sql_repo.SqlAttemptRepository` is the SQLAlchemy-backed one.

Both enforce the same rules:
- at most one in-progress attempt per (student, assessment) -> DuplicateActiveAttemptError
- attempt updates are compare-and-set on `version` -> StaleAttemptError
- answers are unique per (attempt_id, question_id) and written by upsert; a write
  given `open_at` only lands while the attempt is in progress and not past its
  end_time at that instant -> StaleAttemptError otherwise
"""

from __future__ import annotations

import itertools
import threading
from datetime import datetime
from typing import Collection, Dict, List, Optional, Protocol, Tuple

from packages.schemas.assessment import (
    AnswerRecord,
    Assessment,
    Attempt,
    AttemptStatus,
    Question,
)

from .errors import DuplicateActiveAttemptError, NotFoundError, StaleAttemptError


class AttemptRepository(Protocol):
    """Storage operations used by the orchestrator and grading service."""

    def save_assessment(self, assessment: Assessment) -> Assessment: ...

    def get_assessment_with_questions(self, assessment_id: str) -> Assessment: ...

    def get_question(self, question_id: str) -> Question: ...

    def create_attempt(self, attempt: Attempt, answers: List[AnswerRecord]) -> Tuple[Attempt, List[AnswerRecord]]: ...

    def get_attempt(self, attempt_id: int) -> Attempt: ...

    def update_attempt(self, attempt: Attempt) -> Attempt: ...

    def get_active_attempt(self, student_id: str, assessment_id: str) -> Optional[Attempt]: ...

    def count_attempts(self, student_id: str, assessment_id: str) -> int: ...

    def list_attempts(
        self,
        student_id: Optional[str] = None,
        assessment_id: Optional[str] = None,
        statuses: Optional[Collection[AttemptStatus]] = None,
    ) -> List[Attempt]: ...

    def list_answers(self, attempt_id: int) -> List[AnswerRecord]: ...

    def get_answer(self, attempt_id: int, question_id: str) -> Optional[AnswerRecord]: ...

    def upsert_answer(self, answer: AnswerRecord, open_at: Optional[datetime] = None) -> AnswerRecord: ...

    def list_in_progress(self) -> List[Attempt]: ...


class InMemoryRepository:
    """Dict-backed store guarded by a single re-entrant lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._assessments: Dict[str, Assessment] = {}
        self._questions: Dict[str, Question] = {}
        self._attempts: Dict[int, Attempt] = {}
        self._answers: Dict[Tuple[int, str], AnswerRecord] = {}
        self._attempt_ids = itertools.count(1)
        self._answer_ids = itertools.count(1)

    # ---- assessments / questions ----
    def save_assessment(self, assessment: Assessment) -> Assessment:
        with self._lock:
            previous = self._assessments.get(assessment.id)
            if previous is not None:
                kept = {q.id for q in assessment.questions}
                for q in previous.questions:
                    if q.id not in kept:
                        self._questions.pop(q.id, None)
            self._assessments[assessment.id] = assessment.model_copy(deep=True)
            for q in assessment.questions:
                self._questions[q.id] = q.model_copy(deep=True)
            return assessment

    def get_assessment_with_questions(self, assessment_id: str) -> Assessment:
        with self._lock:
            a = self._assessments.get(assessment_id)
            if a is None:
                raise NotFoundError("assessment not found", assessment_id=assessment_id)
            return a.model_copy(deep=True)

    def get_question(self, question_id: str) -> Question:
        with self._lock:
            q = self._questions.get(question_id)
            if q is None:
                raise NotFoundError("question not found", question_id=question_id)
            return q.model_copy(deep=True)

    # ---- attempts ----
    def create_attempt(self, attempt: Attempt, answers: List[AnswerRecord]) -> Tuple[Attempt, List[AnswerRecord]]:
        """Insert the attempt and its blank answers atomically."""
        with self._lock:
            if attempt.status is AttemptStatus.IN_PROGRESS and self._find_active(attempt.student_id, attempt.assessment_id):
                raise DuplicateActiveAttemptError(
                    "an in-progress attempt already exists",
                    student_id=attempt.student_id,
                    assessment_id=attempt.assessment_id,
                )
            stored = attempt.model_copy(update={"id": next(self._attempt_ids), "version": 1})
            self._attempts[stored.id] = stored
            created = []
            for ans in answers:
                row = ans.model_copy(update={"id": next(self._answer_ids), "attempt_id": stored.id})
                self._answers[(stored.id, row.question_id)] = row
                created.append(row.model_copy())
            return stored.model_copy(), created

    def get_attempt(self, attempt_id: int) -> Attempt:
        with self._lock:
            a = self._attempts.get(attempt_id)
            if a is None:
                raise NotFoundError("attempt not found", attempt_id=attempt_id)
            return a.model_copy(deep=True)

    def update_attempt(self, attempt: Attempt) -> Attempt:
        """Compare-and-set on `attempt.version`; returns the stored row with the bumped version."""
        with self._lock:
            current = self._attempts.get(attempt.id)
            if current is None:
                raise NotFoundError("attempt not found", attempt_id=attempt.id)
            if current.version != attempt.version:
                raise StaleAttemptError(
                    "attempt was modified concurrently",
                    attempt_id=attempt.id,
                    expected=attempt.version,
                    actual=current.version,
                )
            stored = attempt.model_copy(update={"version": attempt.version + 1}, deep=True)
            self._attempts[attempt.id] = stored
            return stored.model_copy(deep=True)

    def _find_active(self, student_id: str, assessment_id: str) -> Optional[Attempt]:
        return next(
            (a for a in self._attempts.values()
             if a.student_id == student_id and a.assessment_id == assessment_id and a.status is AttemptStatus.IN_PROGRESS),
            None,
        )

    def get_active_attempt(self, student_id: str, assessment_id: str) -> Optional[Attempt]:
        with self._lock:
            a = self._find_active(student_id, assessment_id)
            return a.model_copy(deep=True) if a else None

    def count_attempts(self, student_id: str, assessment_id: str) -> int:
        with self._lock:
            return sum(1 for a in self._attempts.values() if a.student_id == student_id and a.assessment_id == assessment_id)

    def list_attempts(
        self,
        student_id: Optional[str] = None,
        assessment_id: Optional[str] = None,
        statuses: Optional[Collection[AttemptStatus]] = None,
    ) -> List[Attempt]:
        """Attempts matching every given filter, oldest first."""
        with self._lock:
            return [
                a.model_copy(deep=True)
                for a in sorted(self._attempts.values(), key=lambda a: a.id)
                if (student_id is None or a.student_id == student_id)
                and (assessment_id is None or a.assessment_id == assessment_id)
                and (statuses is None or a.status in statuses)
            ]

    def list_in_progress(self) -> List[Attempt]:
        with self._lock:
            return [a.model_copy(deep=True) for a in self._attempts.values() if a.status is AttemptStatus.IN_PROGRESS]

    # ---- answers ----
    def list_answers(self, attempt_id: int) -> List[AnswerRecord]:
        with self._lock:
            rows = [r for (aid, _), r in self._answers.items() if aid == attempt_id]
            return [r.model_copy(deep=True) for r in sorted(rows, key=lambda r: r.id or 0)]

    def get_answer(self, attempt_id: int, question_id: str) -> Optional[AnswerRecord]:
        with self._lock:
            r = self._answers.get((attempt_id, question_id))
            return r.model_copy(deep=True) if r else None

    def upsert_answer(self, answer: AnswerRecord, open_at: Optional[datetime] = None) -> AnswerRecord:
        with self._lock:
            if open_at is not None:
                attempt = self._attempts.get(answer.attempt_id)
                if attempt is None:
                    raise NotFoundError("attempt not found", attempt_id=answer.attempt_id)
                if attempt.status is not AttemptStatus.IN_PROGRESS or (
                    attempt.end_time is not None and open_at > attempt.end_time
                ):
                    raise StaleAttemptError("attempt closed before the answer was written", attempt_id=attempt.id)
            key = (answer.attempt_id, answer.question_id)
            existing = self._answers.get(key)
            row_id = existing.id if existing else next(self._answer_ids)
            stored = answer.model_copy(update={"id": row_id}, deep=True)
            self._answers[key] = stored
            return stored.model_copy(deep=True)
