"""Attempt grading service.

`auto_grade_attempt` is a recomputation, not an append: every run re-grades each answer
from its stored payload (keeping manual grades), re-aggregates, and writes the same
result for the same inputs. Notifications fire only on the first transition into
graded / pending_manual_grading.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from packages.common.resilience import KeyedLocks, RetryConfig, retry
from packages.schemas.assessment import AnswerRecord, Attempt, AttemptStatus, Question

from . import metrics
from .aggregator import GradedItem, GradingSummary, aggregate
from .errors import BadRequestError, NotFoundError, StaleAttemptError, StateError
from .grader import grade_question
from .notifier import AttemptNotifier
from .repo import AttemptRepository
from .state_machine import GRADABLE, AttemptStateMachine

log = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ManualGrade(BaseModel):
    """One human score for one answer."""
    attempt_id: int
    question_id: str
    score: float = Field(ge=0)
    feedback: Optional[str] = None


class BatchGradingResult(BaseModel):
    """Outcome of grading many attempts: summaries by attempt id, and the ones that failed."""
    graded: Dict[int, GradingSummary] = {}
    failed: Dict[int, str] = {}


class GradingService:
    """Scores attempts and drives the grading transitions."""

    def __init__(
        self,
        repo: AttemptRepository,
        notifier: AttemptNotifier,
        locks: Optional[KeyedLocks] = None,
        clock: Callable[[], datetime] = utcnow,
        stale_retries: int = 3,
    ) -> None:
        self.repo = repo
        self.notifier = notifier
        self.locks = locks or KeyedLocks()
        self.clock = clock
        self._retry = RetryConfig(attempts=stale_retries, base_delay=0.01, retry_on=(StaleAttemptError,))

    def auto_grade_attempt(self, attempt_id: int) -> GradingSummary:
        """Grade every answer of a submitted / timed-out attempt and store the aggregate."""
        with metrics.grading_seconds.time(), self.locks.hold(("attempt", attempt_id)):
            return retry(self._retry)(self._grade)(attempt_id)

    def grade_manually(
        self,
        attempt_id: int,
        question_id: str,
        score: float,
        feedback: Optional[str],
        grader_id: str,
    ) -> GradingSummary:
        """Record a human score for one answer, then re-aggregate.

        Once no item is outstanding the attempt moves pending_manual_grading -> graded.
        """
        grade = ManualGrade(attempt_id=attempt_id, question_id=question_id, score=score, feedback=feedback)
        return self.grade_answers(attempt_id, [grade], grader_id)

    def grade_answers(self, attempt_id: int, grades: Sequence[ManualGrade], grader_id: str) -> GradingSummary:
        """Record several human scores on one attempt and re-aggregate once.

        Every grade is checked before any is written, so a bad one leaves the attempt untouched.
        """
        with self.locks.hold(("attempt", attempt_id)):
            attempt = self.repo.get_attempt(attempt_id)
            if attempt.status not in GRADABLE:
                raise StateError(
                    f"cannot grade an attempt in status {attempt.status.value}",
                    attempt_id=attempt_id,
                    status=attempt.status.value,
                )
            assessment = self.repo.get_assessment_with_questions(attempt.assessment_id)
            checked = []
            for g in grades:
                question = assessment.question(g.question_id)
                if question is None:
                    raise NotFoundError("question is not part of this attempt", attempt_id=attempt_id, question_id=g.question_id)
                if not 0 <= g.score <= question.points:
                    raise BadRequestError(f"score must be between 0 and {question.points}", score=g.score, question_id=g.question_id)
                checked.append((question, g))

            now = self.clock()
            for question, g in checked:
                answer = self.repo.get_answer(attempt_id, question.id) or AnswerRecord(attempt_id=attempt_id, question_id=question.id)
                self.repo.upsert_answer(answer.model_copy(update={
                    "graded": True,
                    "manually_graded": True,
                    "score": float(g.score),
                    "max_score": float(question.points),
                    "is_correct": g.score >= question.points,
                    "feedback": g.feedback,
                    "grading_error": None,
                    "graded_by": grader_id,
                    "updated_at": now,
                }))
                log.info("answer graded manually", extra={"attempt_id": attempt_id, "question_id": question.id, "actor_id": grader_id})
            return retry(self._retry)(self._grade)(attempt_id, grader_id)

    # ---- internals ----
    def _grade_one(self, question: Question, answer: AnswerRecord) -> tuple[GradedItem, AnswerRecord]:
        points = float(question.points)
        if answer.manually_graded and answer.score is not None:
            return GradedItem(question.id, points, manual_score=answer.score), answer
        try:
            result = grade_question(question, None if answer.skipped else answer.payload)
        except Exception as e:
            log.warning(
                "answer could not be auto-graded: %s", e,
                extra={"attempt_id": answer.attempt_id, "question_id": question.id},
            )
            metrics.grading_failures.inc()
            return GradedItem(question.id, points, error=str(e)), answer.model_copy(update={
                "graded": False,
                "score": None,
                "is_correct": None,
                "max_score": points,
                "grading_error": str(e),
            })
        return GradedItem(question.id, points, result=result), answer.model_copy(update={
            "graded": result.gradable,
            "score": result.score if result.gradable else None,
            "is_correct": result.correct if result.gradable else None,
            "max_score": result.max_score,
            "feedback": "; ".join(x for x in [result.feedback, *result.warnings] if x) or None,
            "grading_error": None,
        })

    def _grade(self, attempt_id: int, grader_id: Optional[str] = None) -> GradingSummary:
        attempt = self.repo.get_attempt(attempt_id)
        if attempt.status not in GRADABLE:
            raise StateError(
                f"cannot grade an attempt in status {attempt.status.value}",
                attempt_id=attempt_id,
                status=attempt.status.value,
            )
        assessment = self.repo.get_assessment_with_questions(attempt.assessment_id)
        answers = {a.question_id: a for a in self.repo.list_answers(attempt_id)}

        items: List[GradedItem] = []
        for question in assessment.questions:
            answer = answers.get(question.id) or AnswerRecord(attempt_id=attempt_id, question_id=question.id)
            item, updated = self._grade_one(question, answer)
            items.append(item)
            if updated != answer or answer.id is None:
                self.repo.upsert_answer(updated)

        summary = aggregate(items, assessment.passing_score)
        self._apply(attempt, summary, grader_id)
        return summary

    def _apply(self, attempt: Attempt, summary: GradingSummary, grader_id: Optional[str]) -> Attempt:
        previous = attempt.status
        if previous is AttemptStatus.GRADED and not summary.final:
            log.warning(
                "re-grade of a graded attempt left items outstanding; keeping stored result",
                extra={"attempt_id": attempt.id},
            )
            return attempt

        updated = AttemptStateMachine.complete_grading(
            attempt,
            pending=not summary.final,
            total_score=summary.total_score,
            max_score=summary.max_score,
            percentage=summary.percentage,
            passed=summary.passed,
            failures=summary.failures,
            now=self.clock(),
        )
        saved = self.repo.update_attempt(updated) if updated != attempt else attempt
        metrics.attempts_graded.labels(saved.status.value).inc()
        log.info(
            "attempt graded score=%s/%s pct=%s", summary.total_score, summary.max_score, summary.percentage,
            extra={"attempt_id": attempt.id, "status": saved.status.value},
        )

        if saved.status is AttemptStatus.GRADED and previous is not AttemptStatus.GRADED:
            self.notifier.graded(saved, grader_id=grader_id)
        elif saved.status is AttemptStatus.PENDING_MANUAL_GRADING and previous is not AttemptStatus.PENDING_MANUAL_GRADING:
            self.notifier.manual_grading_required(saved, summary.pending_question_ids)
        return saved
