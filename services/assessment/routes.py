# services/assessment/routes.py
"""HTTP routes for the attempt lifecycle.

Handlers are plain `def` so FastAPI runs them on its worker threads; all state lives
in the `AttemptOrchestrator` stored on `app.state`.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from packages.common.auth import User, get_current_user
from packages.common.rbac import require_any_role
from packages.schemas.assessment import AnswerRecord, AnswerSubmission, Attempt, AttemptView

from .aggregator import GradingSummary
from .grading import BatchGradingResult, ManualGrade
from .orchestrator import Actor, AttemptOrchestrator

router = APIRouter()
staff = require_any_role("teacher", "admin")


class StartRequest(BaseModel):
    assessment_id: str


class SubmitRequest(BaseModel):
    answers: List[AnswerSubmission] = []
    time_spent: Optional[int] = Field(default=None, ge=0)


class ExtendRequest(BaseModel):
    minutes: int = Field(gt=0)


class ManualGradeRequest(BaseModel):
    score: float = Field(ge=0)
    feedback: Optional[str] = None


class BulkGradeRequest(BaseModel):
    grades: List[ManualGrade]


def get_orchestrator(request: Request) -> AttemptOrchestrator:
    return request.app.state.orchestrator


def actor_of(user: User) -> Actor:
    return Actor(id=user.sub, role=user.primary_role)


@router.get("/healthz", tags=["infra"])
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics", tags=["infra"])
def metrics() -> PlainTextResponse:
    data = generate_latest()
    return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)


@router.post("/attempts", response_model=AttemptView, status_code=status.HTTP_201_CREATED, tags=["attempts"])
def start_attempt(
    body: StartRequest,
    user: User = Depends(get_current_user),
    orch: AttemptOrchestrator = Depends(get_orchestrator),
) -> AttemptView:
    return orch.start_attempt(body.assessment_id, user.sub)


@router.get("/attempts", response_model=List[Attempt], tags=["attempts"])
def list_attempts(
    student_id: Optional[str] = None,
    assessment_id: Optional[str] = None,
    user: User = Depends(get_current_user),
    orch: AttemptOrchestrator = Depends(get_orchestrator),
) -> List[Attempt]:
    return orch.list_attempts(actor_of(user), student_id=student_id, assessment_id=assessment_id)


@router.get("/assessments/{assessment_id}/attempts/current", response_model=AttemptView, tags=["attempts"])
def current_attempt(
    assessment_id: str,
    user: User = Depends(get_current_user),
    orch: AttemptOrchestrator = Depends(get_orchestrator),
) -> AttemptView:
    return orch.get_current_attempt(assessment_id, user.sub)


@router.get("/attempts/{attempt_id}", response_model=AttemptView, tags=["attempts"])
def get_attempt(
    attempt_id: int,
    user: User = Depends(get_current_user),
    orch: AttemptOrchestrator = Depends(get_orchestrator),
) -> AttemptView:
    return orch.get_attempt(attempt_id, actor_of(user))


@router.post("/attempts/{attempt_id}/resume", response_model=AttemptView, tags=["attempts"])
def resume_attempt(
    attempt_id: int,
    user: User = Depends(get_current_user),
    orch: AttemptOrchestrator = Depends(get_orchestrator),
) -> AttemptView:
    return orch.resume_attempt(attempt_id, user.sub)


@router.put("/attempts/{attempt_id}/answers", response_model=AnswerRecord, tags=["attempts"])
def submit_answer(
    attempt_id: int,
    body: AnswerSubmission,
    user: User = Depends(get_current_user),
    orch: AttemptOrchestrator = Depends(get_orchestrator),
) -> AnswerRecord:
    return orch.submit_answer(attempt_id, body, user.sub)


@router.post("/attempts/{attempt_id}/submit", response_model=AttemptView, tags=["attempts"])
def submit_attempt(
    attempt_id: int,
    body: SubmitRequest,
    user: User = Depends(get_current_user),
    orch: AttemptOrchestrator = Depends(get_orchestrator),
) -> AttemptView:
    return orch.submit_attempt(attempt_id, body.answers, user.sub, body.time_spent)


@router.get("/attempts/{attempt_id}/time-remaining", tags=["attempts"])
def time_remaining(
    attempt_id: int,
    user: User = Depends(get_current_user),
    orch: AttemptOrchestrator = Depends(get_orchestrator),
) -> dict[str, int]:
    return {"seconds_remaining": orch.get_time_remaining(attempt_id, user.sub)}


@router.get("/attempts/{attempt_id}/active", tags=["attempts"])
def is_active(
    attempt_id: int,
    user: User = Depends(get_current_user),
    orch: AttemptOrchestrator = Depends(get_orchestrator),
) -> dict[str, bool]:
    orch.get_attempt(attempt_id, actor_of(user))
    return {"active": orch.is_attempt_active(attempt_id)}


@router.post("/attempts/{attempt_id}/timeout", response_model=Attempt, tags=["attempts"])
def handle_timeout(
    attempt_id: int,
    user: User = Depends(get_current_user),
    orch: AttemptOrchestrator = Depends(get_orchestrator),
) -> Attempt:
    orch.get_attempt(attempt_id, actor_of(user))
    return orch.handle_timeout(attempt_id)


@router.post("/attempts/{attempt_id}/extend", response_model=Attempt, tags=["staff"])
def extend_time(
    attempt_id: int,
    body: ExtendRequest,
    user: User = Depends(staff),
    orch: AttemptOrchestrator = Depends(get_orchestrator),
) -> Attempt:
    return orch.extend_time(attempt_id, body.minutes, actor_of(user))


@router.post("/attempts/{attempt_id}/abandon", response_model=Attempt, tags=["staff"])
def abandon_attempt(
    attempt_id: int,
    user: User = Depends(staff),
    orch: AttemptOrchestrator = Depends(get_orchestrator),
) -> Attempt:
    return orch.abandon_attempt(attempt_id, actor_of(user))


@router.post("/attempts/{attempt_id}/grade", response_model=GradingSummary, tags=["staff"])
def auto_grade(
    attempt_id: int,
    user: User = Depends(staff),
    orch: AttemptOrchestrator = Depends(get_orchestrator),
) -> GradingSummary:
    return orch.auto_grade_attempt(attempt_id)


@router.post("/attempts/{attempt_id}/answers/{question_id}/grade", response_model=GradingSummary, tags=["staff"])
def grade_manually(
    attempt_id: int,
    question_id: str,
    body: ManualGradeRequest,
    user: User = Depends(staff),
    orch: AttemptOrchestrator = Depends(get_orchestrator),
) -> GradingSummary:
    return orch.grade_answer_manually(attempt_id, question_id, body.score, body.feedback, actor_of(user))


@router.post("/grading/answers", response_model=BatchGradingResult, tags=["staff"])
def grade_bulk(
    body: BulkGradeRequest,
    user: User = Depends(staff),
    orch: AttemptOrchestrator = Depends(get_orchestrator),
) -> BatchGradingResult:
    return orch.grade_answers_bulk(body.grades, actor_of(user))


@router.post("/assessments/{assessment_id}/grade", response_model=BatchGradingResult, tags=["staff"])
def grade_assessment(
    assessment_id: str,
    user: User = Depends(staff),
    orch: AttemptOrchestrator = Depends(get_orchestrator),
) -> BatchGradingResult:
    return orch.auto_grade_assessment(assessment_id, actor_of(user))


@router.post("/assessments/{assessment_id}/regrade", response_model=BatchGradingResult, tags=["staff"])
def regrade_assessment(
    assessment_id: str,
    user: User = Depends(staff),
    orch: AttemptOrchestrator = Depends(get_orchestrator),
) -> BatchGradingResult:
    return orch.regrade_assessment(assessment_id, actor_of(user))


@router.post(
    "/assessments/{assessment_id}/questions/{question_id}/regrade",
    response_model=BatchGradingResult,
    tags=["staff"],
)
def regrade_question(
    assessment_id: str,
    question_id: str,
    user: User = Depends(staff),
    orch: AttemptOrchestrator = Depends(get_orchestrator),
) -> BatchGradingResult:
    return orch.regrade_question(assessment_id, question_id, actor_of(user))
