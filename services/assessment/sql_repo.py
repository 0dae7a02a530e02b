"""SQLAlchemy-backed `AttemptRepository`.

Each call runs in its own short transaction. The in-progress uniqueness rule is a
partial unique index, so concurrent starts across processes surface as
`DuplicateActiveAttemptError`; attempt updates are version compare-and-set. Guarded
answer writes touch the attempt row in the same transaction, so they serialize with
submit and timeout.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Collection, Iterator, List, Optional, Tuple

from sqlalchemy import create_engine, delete, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload, sessionmaker
from sqlalchemy.pool import StaticPool

from packages.schemas.assessment import (
    AnswerRecord,
    Assessment,
    Attempt,
    AttemptStatus,
    Question,
)

from .errors import DuplicateActiveAttemptError, NotFoundError, StaleAttemptError
from .models import AnswerRow, AssessmentRow, AttemptRow, Base, QuestionRow

log = logging.getLogger(__name__)

_ATTEMPT_FIELDS = (
    "assessment_id", "student_id", "status", "started_at", "time_limit_seconds", "end_time",
    "submitted_at", "completed_at", "end_reason", "time_spent", "total_score", "max_score",
    "percentage", "passed", "graded_at", "grading_failures",
)
_ANSWER_FIELDS = (
    "payload", "time_spent", "skipped", "flagged", "graded", "manually_graded", "score", "max_score",
    "is_correct", "feedback", "grading_error", "graded_by", "created_at", "updated_at",
)


def make_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if url.startswith("sqlite") and ":memory:" in url:
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    return create_engine(url, echo=echo, pool_pre_ping=True)


def _question_from_row(row: QuestionRow) -> Question:
    return Question(
        id=row.id,
        type=row.type,
        text=row.text,
        content=row.content,
        points=row.points,
        time_limit=row.time_limit,
        manual_review=row.manual_review,
    )


def _attempt_from_row(row: AttemptRow) -> Attempt:
    data = {f: getattr(row, f) for f in _ATTEMPT_FIELDS}
    data["grading_failures"] = data["grading_failures"] or {}
    return Attempt(id=row.id, version=row.version, **data)


def _answer_from_row(row: AnswerRow) -> AnswerRecord:
    return AnswerRecord(
        id=row.id,
        attempt_id=row.attempt_id,
        question_id=row.question_id,
        **{f: getattr(row, f) for f in _ANSWER_FIELDS},
    )


def _attempt_values(attempt: Attempt) -> dict:
    data = attempt.model_dump(mode="python", include=set(_ATTEMPT_FIELDS))
    data["status"] = attempt.status.value
    data["end_reason"] = attempt.end_reason.value if attempt.end_reason else None
    return data


class SqlAttemptRepository:
    """Relational store for assessments, attempts and answers."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._sessions = sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, create_schema: bool = True) -> "SqlAttemptRepository":
        repo = cls(make_engine(url))
        if create_schema:
            repo.init_db()
        return repo

    def init_db(self) -> None:
        """Create database schema if it doesn't exist."""
        Base.metadata.create_all(self.engine)

    @contextmanager
    def _tx(self) -> Iterator[Session]:
        with self._sessions() as session, session.begin():
            yield session

    # ---- assessments / questions ----
    def save_assessment(self, assessment: Assessment) -> Assessment:
        with self._tx() as s:
            row = s.get(AssessmentRow, assessment.id) or AssessmentRow(id=assessment.id)
            row.title = assessment.title
            row.status = assessment.status.value
            row.duration = assessment.duration
            row.passing_score = assessment.passing_score
            row.max_attempts = assessment.max_attempts
            row.due_date = assessment.due_date
            row.time_warning = assessment.time_warning
            s.add(row)
            s.execute(
                delete(QuestionRow)
                .where(QuestionRow.assessment_id == assessment.id, QuestionRow.id.not_in([q.id for q in assessment.questions]))
                .execution_options(synchronize_session=False)
            )
            for pos, q in enumerate(assessment.questions):
                qrow = s.get(QuestionRow, q.id) or QuestionRow(id=q.id)
                qrow.assessment_id = assessment.id
                qrow.position = pos
                qrow.type = q.type.value
                qrow.text = q.text
                qrow.content = q.content.model_dump(mode="json")
                qrow.points = q.points
                qrow.time_limit = q.time_limit
                qrow.manual_review = q.manual_review
                s.add(qrow)
        return assessment

    def get_assessment_with_questions(self, assessment_id: str) -> Assessment:
        with self._tx() as s:
            row = s.execute(
                select(AssessmentRow).options(selectinload(AssessmentRow.questions)).where(AssessmentRow.id == assessment_id)
            ).scalar_one_or_none()
            if row is None:
                raise NotFoundError("assessment not found", assessment_id=assessment_id)
            return Assessment(
                id=row.id,
                title=row.title,
                status=row.status,
                duration=row.duration,
                passing_score=row.passing_score,
                max_attempts=row.max_attempts,
                due_date=row.due_date,
                time_warning=row.time_warning,
                questions=[_question_from_row(q) for q in row.questions],
            )

    def get_question(self, question_id: str) -> Question:
        with self._tx() as s:
            row = s.get(QuestionRow, question_id)
            if row is None:
                raise NotFoundError("question not found", question_id=question_id)
            return _question_from_row(row)

    # ---- attempts ----
    def create_attempt(self, attempt: Attempt, answers: List[AnswerRecord]) -> Tuple[Attempt, List[AnswerRecord]]:
        try:
            with self._tx() as s:
                row = AttemptRow(version=1, **_attempt_values(attempt))
                s.add(row)
                s.flush()
                answer_rows = []
                for ans in answers:
                    arow = AnswerRow(
                        attempt_id=row.id,
                        question_id=ans.question_id,
                        **ans.model_dump(mode="python", include=set(_ANSWER_FIELDS)),
                    )
                    s.add(arow)
                    answer_rows.append(arow)
                s.flush()
                return _attempt_from_row(row), [_answer_from_row(a) for a in answer_rows]
        except IntegrityError as e:
            log.info("in-progress attempt conflict student=%s assessment=%s", attempt.student_id, attempt.assessment_id)
            raise DuplicateActiveAttemptError(
                "an in-progress attempt already exists",
                student_id=attempt.student_id,
                assessment_id=attempt.assessment_id,
            ) from e

    def get_attempt(self, attempt_id: int) -> Attempt:
        with self._tx() as s:
            row = s.get(AttemptRow, attempt_id)
            if row is None:
                raise NotFoundError("attempt not found", attempt_id=attempt_id)
            return _attempt_from_row(row)

    def update_attempt(self, attempt: Attempt) -> Attempt:
        with self._tx() as s:
            res = s.execute(
                update(AttemptRow)
                .where(AttemptRow.id == attempt.id, AttemptRow.version == attempt.version)
                .values(version=attempt.version + 1, **_attempt_values(attempt))
            )
            if res.rowcount == 0:
                if s.get(AttemptRow, attempt.id) is None:
                    raise NotFoundError("attempt not found", attempt_id=attempt.id)
                raise StaleAttemptError("attempt was modified concurrently", attempt_id=attempt.id, expected=attempt.version)
        return attempt.model_copy(update={"version": attempt.version + 1})

    def get_active_attempt(self, student_id: str, assessment_id: str) -> Optional[Attempt]:
        with self._tx() as s:
            row = s.execute(
                select(AttemptRow).where(
                    AttemptRow.student_id == student_id,
                    AttemptRow.assessment_id == assessment_id,
                    AttemptRow.status == AttemptStatus.IN_PROGRESS.value,
                )
            ).scalar_one_or_none()
            return _attempt_from_row(row) if row else None

    def count_attempts(self, student_id: str, assessment_id: str) -> int:
        with self._tx() as s:
            return s.execute(
                select(func.count(AttemptRow.id)).where(
                    AttemptRow.student_id == student_id, AttemptRow.assessment_id == assessment_id
                )
            ).scalar_one()

    def list_attempts(
        self,
        student_id: Optional[str] = None,
        assessment_id: Optional[str] = None,
        statuses: Optional[Collection[AttemptStatus]] = None,
    ) -> List[Attempt]:
        stmt = select(AttemptRow).order_by(AttemptRow.id)
        if student_id is not None:
            stmt = stmt.where(AttemptRow.student_id == student_id)
        if assessment_id is not None:
            stmt = stmt.where(AttemptRow.assessment_id == assessment_id)
        if statuses is not None:
            stmt = stmt.where(AttemptRow.status.in_([AttemptStatus(st).value for st in statuses]))
        with self._tx() as s:
            return [_attempt_from_row(r) for r in s.execute(stmt).scalars()]

    def list_in_progress(self) -> List[Attempt]:
        with self._tx() as s:
            rows = s.execute(select(AttemptRow).where(AttemptRow.status == AttemptStatus.IN_PROGRESS.value)).scalars()
            return [_attempt_from_row(r) for r in rows]

    # ---- answers ----
    def list_answers(self, attempt_id: int) -> List[AnswerRecord]:
        with self._tx() as s:
            rows = s.execute(select(AnswerRow).where(AnswerRow.attempt_id == attempt_id).order_by(AnswerRow.id)).scalars()
            return [_answer_from_row(r) for r in rows]

    def get_answer(self, attempt_id: int, question_id: str) -> Optional[AnswerRecord]:
        with self._tx() as s:
            row = s.execute(
                select(AnswerRow).where(AnswerRow.attempt_id == attempt_id, AnswerRow.question_id == question_id)
            ).scalar_one_or_none()
            return _answer_from_row(row) if row else None

    def upsert_answer(self, answer: AnswerRecord, open_at: Optional[datetime] = None) -> AnswerRecord:
        with self._tx() as s:
            if open_at is not None:
                # no-op write that locks the attempt row until this transaction ends
                res = s.execute(
                    update(AttemptRow)
                    .where(
                        AttemptRow.id == answer.attempt_id,
                        AttemptRow.status == AttemptStatus.IN_PROGRESS.value,
                        AttemptRow.end_time >= open_at,
                    )
                    .values(version=AttemptRow.version)
                )
                if res.rowcount == 0:
                    if s.get(AttemptRow, answer.attempt_id) is None:
                        raise NotFoundError("attempt not found", attempt_id=answer.attempt_id)
                    raise StaleAttemptError("attempt closed before the answer was written", attempt_id=answer.attempt_id)
            row = s.execute(
                select(AnswerRow).where(AnswerRow.attempt_id == answer.attempt_id, AnswerRow.question_id == answer.question_id)
            ).scalar_one_or_none()
            if row is None:
                row = AnswerRow(attempt_id=answer.attempt_id, question_id=answer.question_id)
                s.add(row)
            for f in _ANSWER_FIELDS:
                setattr(row, f, getattr(answer, f))
            s.flush()
            return _answer_from_row(row)
