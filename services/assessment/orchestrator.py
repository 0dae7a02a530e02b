"""Attempt orchestration: the operations a student or staff member performs on an attempt.

Concurrency model
-----------------
- Starts are serialized per (student, assessment); the repository's unique
  in-progress constraint backs this up across processes, and a lost race resumes
  the winner's attempt.
- Status-changing operations on one attempt (submit, timeout, extend, abandon,
  grading) are serialized per attempt id and persisted with a version check.
- Answer upserts are independent rows and take no attempt lock; the repository
  only writes them while the attempt is still open, so an answer racing a submit
  or timeout either lands before it or is rejected.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set, Union

from packages.common.config import Settings, get_settings
from packages.common.resilience import KeyedLocks, RetryConfig, retry
from packages.schemas.assessment import (
    AnswerRecord,
    AnswerSubmission,
    Assessment,
    Attempt,
    AttemptStatus,
    AttemptView,
    Question,
    QuestionType,
)

from . import metrics
from .aggregator import GradingSummary
from .dispatcher import GradingDispatcher
from .errors import (
    BadRequestError,
    DuplicateActiveAttemptError,
    NotFoundError,
    PermissionDeniedError,
    StaleAttemptError,
    StateError,
    TimeExpiredError,
)
from .grading import BatchGradingResult, GradingService, ManualGrade, utcnow
from .notifier import AttemptNotifier
from .repo import AttemptRepository
from .state_machine import (
    GRADABLE,
    AttemptStateMachine,
    check_start_eligibility,
    is_expired,
    seconds_remaining,
)
from .validator import validate_answer

log = logging.getLogger(__name__)

STAFF_ROLES = frozenset({"teacher", "admin"})


@dataclass(frozen=True)
class Actor:
    """Who is calling: an id and a role (student, teacher, admin)."""
    id: str
    role: str = "student"

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


class AttemptOrchestrator:
    """Coordinates the state machine, validator, grader and repository."""

    def __init__(
        self,
        repo: AttemptRepository,
        notifier: AttemptNotifier,
        *,
        clock: Callable[[], datetime] = utcnow,
        settings: Optional[Settings] = None,
        dispatcher: Optional[GradingDispatcher] = None,
    ) -> None:
        self.repo = repo
        self.notifier = notifier
        self.clock = clock
        self.settings = settings or get_settings()
        self.locks = KeyedLocks()
        self.grading = GradingService(repo, notifier, locks=self.locks, clock=clock)
        self.dispatcher = dispatcher or GradingDispatcher(
            self.grading.auto_grade_attempt,
            workers=self.settings.GRADING_WORKERS,
            retries=self.settings.GRADING_RETRIES,
        )
        self._stale = RetryConfig(attempts=3, base_delay=0.01, retry_on=(StaleAttemptError,))
        self._warned: Set[int] = set()
        self._warned_lock = threading.Lock()

    # ---- helpers ----
    def _owned(self, attempt_id: int, student_id: str) -> Attempt:
        attempt = self.repo.get_attempt(attempt_id)
        if attempt.student_id != student_id:
            raise PermissionDeniedError(
                actor_id=student_id,
                action="access",
                resource="attempt",
                resource_id=attempt_id,
                reason="not the owner of this attempt",
            )
        return attempt

    @staticmethod
    def _require_staff(actor: Actor, action: str, resource_id: Union[int, str], resource: str = "attempt") -> None:
        if not actor.is_staff:
            raise PermissionDeniedError(
                actor_id=actor.id,
                action=action,
                resource=resource,
                resource_id=resource_id,
                reason=f"role {actor.role!r} may not {action}",
            )

    def _view(self, attempt: Attempt, assessment: Optional[Assessment] = None) -> AttemptView:
        assessment = assessment or self.repo.get_assessment_with_questions(attempt.assessment_id)
        now = self.clock()
        active = attempt.status is AttemptStatus.IN_PROGRESS and not is_expired(attempt, now)
        return AttemptView(
            attempt=attempt,
            questions=assessment.questions,
            answers=self.repo.list_answers(attempt.id),
            can_submit=active,
            seconds_remaining=seconds_remaining(attempt, now) if active else 0,
        )

    def _question(self, assessment: Assessment, question_id: str, attempt_id: int) -> Question:
        question = assessment.question(question_id)
        if question is None:
            raise NotFoundError("question is not part of this attempt", attempt_id=attempt_id, question_id=question_id)
        return question

    def _write_answer(self, attempt: Attempt, question: Question, sub: AnswerSubmission, now: datetime) -> AnswerRecord:
        existing = self.repo.get_answer(attempt.id, question.id) or AnswerRecord(
            attempt_id=attempt.id, question_id=question.id, max_score=float(question.points), created_at=now,
        )
        record = existing.model_copy(update={
            "payload": None if sub.skipped else sub.payload,
            "skipped": sub.skipped,
            "time_spent": sub.time_spent if sub.time_spent is not None else existing.time_spent,
            "flagged": sub.flagged if sub.flagged is not None else existing.flagged,
            "graded": False,
            "score": None,
            "is_correct": None,
            "feedback": None,
            "grading_error": None,
            "updated_at": now,
        })
        saved = self.repo.upsert_answer(record, open_at=now)
        metrics.answers_submitted.inc()
        return saved

    def _maybe_warn(self, attempt: Attempt, assessment: Assessment, now: datetime) -> None:
        remaining = seconds_remaining(attempt, now)
        if not 0 < remaining <= assessment.time_warning:
            return
        with self._warned_lock:
            if attempt.id in self._warned:
                return
            self._warned.add(attempt.id)
        self.notifier.time_warning(attempt, remaining)

    def _forget_warning(self, attempt_id: int) -> None:
        with self._warned_lock:
            self._warned.discard(attempt_id)

    def _after_end(self, attempt: Attempt, grading_required: bool) -> None:
        reason = attempt.end_reason.value if attempt.end_reason else "unknown"
        metrics.attempts_ended.labels(reason).inc()
        self._forget_warning(attempt.id)
        log.info("attempt ended (%s)", reason, extra={"attempt_id": attempt.id, "status": attempt.status.value})
        self.notifier.submitted(attempt, grading_required=grading_required)
        self.dispatcher.dispatch(attempt.id)

    @staticmethod
    def _needs_manual(assessment: Assessment) -> bool:
        return any(q.type is QuestionType.ESSAY or q.manual_review for q in assessment.questions)

    def _expire(self, attempt_id: int) -> Attempt:
        """Time out `attempt_id` if its current end_time has passed; otherwise a no-op."""
        with self.locks.hold(("attempt", attempt_id)):
            attempt = self.repo.get_attempt(attempt_id)
            timed_out = AttemptStateMachine.timeout(attempt, self.clock())
            if timed_out is attempt:
                return attempt
            saved = self.repo.update_attempt(timed_out)
        assessment = self.repo.get_assessment_with_questions(saved.assessment_id)
        self._after_end(saved, self._needs_manual(assessment))
        return saved

    # ---- start / resume ----
    def start_attempt(self, assessment_id: str, student_id: str) -> AttemptView:
        """Start a new attempt, or return the caller's current in-progress one.

        Concurrent calls for the same (student, assessment) all return the same attempt.
        """
        conflicts = RetryConfig(
            attempts=self.settings.START_CONFLICT_RETRIES,
            base_delay=0.01,
            retry_on=(DuplicateActiveAttemptError,),
        )
        with self.locks.hold(("start", student_id, assessment_id)):
            return retry(conflicts)(self._start)(assessment_id, student_id)

    def _start(self, assessment_id: str, student_id: str) -> AttemptView:
        assessment = self.repo.get_assessment_with_questions(assessment_id)
        now = self.clock()

        active = self.repo.get_active_attempt(student_id, assessment_id)
        if active is not None:
            if not is_expired(active, now):
                metrics.attempts_resumed.inc()
                log.info("resuming in-progress attempt", extra={"attempt_id": active.id, "student_id": student_id})
                return self._view(active, assessment)
            self._expire(active.id)

        check_start_eligibility(assessment, self.repo.count_attempts(student_id, assessment_id), None, now)
        attempt = AttemptStateMachine.start(assessment, student_id, now)
        blanks = [
            AnswerRecord(attempt_id=0, question_id=q.id, max_score=float(q.points), created_at=now, updated_at=now)
            for q in assessment.questions
        ]
        attempt, _ = self.repo.create_attempt(attempt, blanks)

        metrics.attempts_started.inc()
        log.info(
            "attempt started",
            extra={"attempt_id": attempt.id, "assessment_id": assessment_id, "student_id": student_id},
        )
        self.notifier.started(attempt)
        return self._view(attempt, assessment)

    def resume_attempt(self, attempt_id: int, student_id: str) -> AttemptView:
        attempt = self._owned(attempt_id, student_id)
        if attempt.status is not AttemptStatus.IN_PROGRESS:
            raise StateError("attempt is not active", attempt_id=attempt_id, status=attempt.status.value)
        if is_expired(attempt, self.clock()):
            self._expire(attempt_id)
            raise TimeExpiredError("attempt time has expired", attempt_id=attempt_id)
        return self._view(attempt)

    # ---- answering ----
    def submit_answer(self, attempt_id: int, submission: AnswerSubmission, student_id: str) -> AnswerRecord:
        """Validate and store one answer; repeated submissions overwrite until final submit.

        If a submit or timeout closes the attempt between the checks and the write, the
        write is refused and the retry reports the attempt's new state.
        """
        return retry(self._stale)(self._answer)(attempt_id, submission, student_id)

    def _answer(self, attempt_id: int, submission: AnswerSubmission, student_id: str) -> AnswerRecord:
        now = self.clock()
        attempt = self._owned(attempt_id, student_id)
        if attempt.status is not AttemptStatus.IN_PROGRESS:
            raise StateError("attempt is not active", attempt_id=attempt_id, status=attempt.status.value)
        if is_expired(attempt, now):
            self._expire(attempt_id)
            raise TimeExpiredError("attempt time has expired", attempt_id=attempt_id)

        assessment = self.repo.get_assessment_with_questions(attempt.assessment_id)
        question = self._question(assessment, submission.question_id, attempt_id)
        validate_answer(question, None if submission.skipped else submission.payload)
        record = self._write_answer(attempt, question, submission, now)
        log.debug("answer stored", extra={"attempt_id": attempt_id, "question_id": question.id})
        self._maybe_warn(attempt, assessment, now)
        return record

    def submit_attempt(
        self,
        attempt_id: int,
        remaining: List[AnswerSubmission],
        student_id: str,
        time_spent: Optional[int] = None,
    ) -> AttemptView:
        """Store any final answers, close the attempt and queue grading."""
        with self.locks.hold(("attempt", attempt_id)):
            saved = retry(self._stale)(self._submit)(attempt_id, remaining, student_id, time_spent)
        assessment = self.repo.get_assessment_with_questions(saved.assessment_id)
        self._after_end(saved, self._needs_manual(assessment))
        return self._view(saved, assessment)

    def _submit(
        self,
        attempt_id: int,
        remaining: List[AnswerSubmission],
        student_id: str,
        time_spent: Optional[int],
    ) -> Attempt:
        now = self.clock()
        attempt = self._owned(attempt_id, student_id)
        if attempt.status is not AttemptStatus.IN_PROGRESS:
            raise StateError(f"attempt already {attempt.status.value}", attempt_id=attempt_id, status=attempt.status.value)
        if is_expired(attempt, now):
            self._expire(attempt_id)
            raise TimeExpiredError("attempt time has expired", attempt_id=attempt_id)

        assessment = self.repo.get_assessment_with_questions(attempt.assessment_id)
        checked = []
        for sub in remaining:
            question = self._question(assessment, sub.question_id, attempt_id)
            validate_answer(question, None if sub.skipped else sub.payload)
            checked.append((question, sub))
        for question, sub in checked:
            self._write_answer(attempt, question, sub, now)

        return self.repo.update_attempt(AttemptStateMachine.submit(attempt, now, time_spent))

    # ---- timing ----
    def get_time_remaining(self, attempt_id: int, student_id: str) -> int:
        """Seconds left; 0 once expired or ended, whether or not the sweep has run."""
        attempt = self._owned(attempt_id, student_id)
        if attempt.status is not AttemptStatus.IN_PROGRESS:
            return 0
        return seconds_remaining(attempt, self.clock())

    def is_attempt_active(self, attempt_id: int) -> bool:
        attempt = self.repo.get_attempt(attempt_id)
        return attempt.status is AttemptStatus.IN_PROGRESS and not is_expired(attempt, self.clock())

    def extend_time(self, attempt_id: int, minutes: int, actor: Actor) -> Attempt:
        """Give an in-progress attempt more time (teacher/admin only).

        An attempt whose end_time has already passed is timed out instead, so the
        outcome never depends on whether the sweep reached it first.
        """
        self._require_staff(actor, "extend_time", attempt_id)
        if minutes > self.settings.MAX_EXTENSION_MINUTES:
            raise BadRequestError(
                f"extension may not exceed {self.settings.MAX_EXTENSION_MINUTES} minutes", minutes=minutes,
            )
        with self.locks.hold(("attempt", attempt_id)):
            attempt = self.repo.get_attempt(attempt_id)
            if attempt.status is AttemptStatus.IN_PROGRESS and is_expired(attempt, self.clock()):
                self._expire(attempt_id)
                raise TimeExpiredError("attempt time has expired", attempt_id=attempt_id)
            saved = retry(self._stale)(self._extend)(attempt_id, minutes)
        self._forget_warning(attempt_id)
        log.info("time extended by %d min", minutes, extra={"attempt_id": attempt_id, "actor_id": actor.id})
        return saved

    def _extend(self, attempt_id: int, minutes: int) -> Attempt:
        attempt = self.repo.get_attempt(attempt_id)
        return self.repo.update_attempt(AttemptStateMachine.extend(attempt, minutes))

    def handle_timeout(self, attempt_id: int) -> Attempt:
        """Time out the attempt if its current end_time has passed; otherwise no-op.

        Safe to call any number of times: the first effective call transitions and
        queues grading, later ones return the stored attempt.
        """
        return retry(self._stale)(self._expire)(attempt_id)

    def sweep_expired(self, now: Optional[datetime] = None) -> List[int]:
        """Time out every in-progress attempt past its end_time; returns their ids.

        `now` only selects candidates; each timeout re-checks the stored end_time
        against the clock, so an attempt extended meanwhile is left alone.
        """
        now = now or self.clock()
        timed_out = []
        for attempt in self.repo.list_in_progress():
            if not is_expired(attempt, now):
                continue
            try:
                result = self.handle_timeout(attempt.id)
            except Exception:
                log.exception("timeout sweep failed for attempt", extra={"attempt_id": attempt.id})
                continue
            if result.status is AttemptStatus.TIMED_OUT:
                timed_out.append(attempt.id)
        if timed_out:
            log.info("timeout sweep closed %d attempts", len(timed_out))
        return timed_out

    # ---- grading ----
    def auto_grade_attempt(self, attempt_id: int) -> GradingSummary:
        return self.grading.auto_grade_attempt(attempt_id)

    def grade_answer_manually(
        self,
        attempt_id: int,
        question_id: str,
        score: float,
        feedback: Optional[str],
        actor: Actor,
    ) -> GradingSummary:
        self._require_staff(actor, "grade", attempt_id)
        return self.grading.grade_manually(attempt_id, question_id, score, feedback, actor.id)

    def grade_answers_bulk(self, grades: List[ManualGrade], actor: Actor) -> BatchGradingResult:
        """Apply many manual grades, re-aggregating each touched attempt once.

        Grades are grouped by attempt. An attempt whose grades are rejected is reported
        under `failed` and left unchanged; the other attempts are still graded.
        """
        self._require_staff(actor, "grade", "bulk")
        if not grades:
            raise BadRequestError("no grades given")
        by_attempt: Dict[int, List[ManualGrade]] = {}
        for g in grades:
            by_attempt.setdefault(g.attempt_id, []).append(g)
        for attempt_id, group in by_attempt.items():
            seen = [g.question_id for g in group]
            if len(seen) != len(set(seen)):
                raise BadRequestError("a question is graded twice for one attempt", attempt_id=attempt_id)
        return self._grade_batch(
            by_attempt, lambda attempt_id: self.grading.grade_answers(attempt_id, by_attempt[attempt_id], actor.id),
        )

    def auto_grade_assessment(self, assessment_id: str, actor: Actor) -> BatchGradingResult:
        """Grade every submitted or timed-out attempt of an assessment that is still ungraded."""
        self._require_staff(actor, "grade", assessment_id, resource="assessment")
        self.repo.get_assessment_with_questions(assessment_id)
        attempts = self.repo.list_attempts(
            assessment_id=assessment_id, statuses={AttemptStatus.SUBMITTED, AttemptStatus.TIMED_OUT},
        )
        return self._grade_batch((a.id for a in attempts), self.grading.auto_grade_attempt)

    def regrade_assessment(self, assessment_id: str, actor: Actor) -> BatchGradingResult:
        """Re-run grading on every ended attempt, e.g. after an answer key was corrected.

        Manual scores are kept; auto-graded items are recomputed from the stored payloads.
        """
        self._require_staff(actor, "regrade", assessment_id, resource="assessment")
        self.repo.get_assessment_with_questions(assessment_id)
        attempts = self.repo.list_attempts(assessment_id=assessment_id, statuses=GRADABLE)
        log.info("regrading assessment", extra={"assessment_id": assessment_id, "actor_id": actor.id})
        return self._grade_batch((a.id for a in attempts), self.grading.auto_grade_attempt)

    def regrade_question(self, assessment_id: str, question_id: str, actor: Actor) -> BatchGradingResult:
        """Re-run grading on the attempts whose answer to `question_id` was scored automatically."""
        self._require_staff(actor, "regrade", assessment_id, resource="assessment")
        assessment = self.repo.get_assessment_with_questions(assessment_id)
        if assessment.question(question_id) is None:
            raise NotFoundError("question is not part of this assessment", assessment_id=assessment_id, question_id=question_id)
        affected = []
        for attempt in self.repo.list_attempts(assessment_id=assessment_id, statuses=GRADABLE):
            answer = self.repo.get_answer(attempt.id, question_id)
            if answer is None or not answer.manually_graded:
                affected.append(attempt.id)
        log.info(
            "regrading question on %d attempts", len(affected),
            extra={"assessment_id": assessment_id, "question_id": question_id, "actor_id": actor.id},
        )
        return self._grade_batch(affected, self.grading.auto_grade_attempt)

    def _grade_batch(self, attempt_ids: Iterable[int], grade: Callable[[int], GradingSummary]) -> BatchGradingResult:
        result = BatchGradingResult()
        for attempt_id in attempt_ids:
            try:
                result.graded[attempt_id] = grade(attempt_id)
            except Exception as e:
                log.exception("grading failed for attempt", extra={"attempt_id": attempt_id})
                result.failed[attempt_id] = str(e)
        metrics.batch_grading_failures.inc(len(result.failed))
        return result

    # ---- reads / admin ----
    def get_attempt(self, attempt_id: int, actor: Actor) -> AttemptView:
        attempt = self.repo.get_attempt(attempt_id)
        if attempt.student_id != actor.id and not actor.is_staff:
            raise PermissionDeniedError(
                actor_id=actor.id,
                action="view",
                resource="attempt",
                resource_id=attempt_id,
                reason="not the owner of this attempt",
            )
        return self._view(attempt)

    def list_attempts(
        self,
        actor: Actor,
        student_id: Optional[str] = None,
        assessment_id: Optional[str] = None,
    ) -> List[Attempt]:
        """Attempts filtered by student and/or assessment; students only see their own."""
        if not actor.is_staff:
            if student_id is not None and student_id != actor.id:
                raise PermissionDeniedError(
                    actor_id=actor.id,
                    action="list",
                    resource="attempt",
                    resource_id=student_id,
                    reason="students may only list their own attempts",
                )
            student_id = actor.id
        return self.repo.list_attempts(student_id=student_id, assessment_id=assessment_id)

    def get_current_attempt(self, assessment_id: str, student_id: str) -> AttemptView:
        """The student's open attempt on `assessment_id`; an expired one is timed out on the way."""
        active = self.repo.get_active_attempt(student_id, assessment_id)
        if active is not None and is_expired(active, self.clock()):
            self._expire(active.id)
            active = None
        if active is None:
            raise NotFoundError("no attempt in progress", assessment_id=assessment_id, student_id=student_id)
        return self._view(active)

    def abandon_attempt(self, attempt_id: int, actor: Actor) -> Attempt:
        """Administratively close an in-progress attempt without grading it."""
        self._require_staff(actor, "abandon", attempt_id)
        with self.locks.hold(("attempt", attempt_id)):
            saved = retry(self._stale)(self._abandon)(attempt_id)
        self._forget_warning(attempt_id)
        metrics.attempts_ended.labels("abandoned").inc()
        log.info("attempt abandoned", extra={"attempt_id": attempt_id, "actor_id": actor.id})
        return saved

    def _abandon(self, attempt_id: int) -> Attempt:
        attempt = self.repo.get_attempt(attempt_id)
        return self.repo.update_attempt(AttemptStateMachine.abandon(attempt, self.clock()))

    def close(self) -> None:
        self.dispatcher.shutdown()
