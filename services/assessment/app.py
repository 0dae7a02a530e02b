"""Assessment service FastAPI application.

Exposes `create_app`, which attaches tracing middleware, the attempt routes and the
error mapping. Without an injected orchestrator one is built on startup from settings
(SQL repository at `DATABASE_URL`, Kafka/log event bus, timeout sweeper).
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from packages.common.config import get_settings
from packages.common.events import get_event_bus
from packages.common.tracing import trace_middleware

from .errors import AssessmentError
from .notifier import AttemptNotifier
from .orchestrator import AttemptOrchestrator
from .routes import router as attempts_router
from .sql_repo import SqlAttemptRepository
from .sweeper import TimeoutSweeper

log = logging.getLogger(__name__)

STATUS_BY_CODE = {
    "content_invalid": 422,
    "answer_invalid": 422,
    "invalid_state": 409,
    "conflict": 409,
    "not_eligible": 409,
    "time_expired": 410,
    "permission_denied": 403,
    "not_found": 404,
    "bad_request": 400,
}


async def assessment_error_handler(request: Request, exc: AssessmentError) -> JSONResponse:
    """Turn a service rejection into `{"error", "message", "details"}`."""
    code = STATUS_BY_CODE.get(exc.code, 400)
    log.info("request rejected: %s", exc.message, extra={"status": exc.code})
    return JSONResponse(status_code=code, content=jsonable_encoder(exc.to_dict()))


def build_orchestrator() -> AttemptOrchestrator:
    s = get_settings()
    repo = SqlAttemptRepository.from_url(s.DATABASE_URL)
    return AttemptOrchestrator(repo, AttemptNotifier(get_event_bus()), settings=s)


def create_app(orchestrator: Optional[AttemptOrchestrator] = None, run_sweeper: bool = True) -> FastAPI:
    app = FastAPI(title="Assessment Service", version="1.0.0")
    app.middleware("http")(trace_middleware)
    app.add_exception_handler(AssessmentError, assessment_error_handler)
    app.include_router(attempts_router)
    app.state.orchestrator = orchestrator
    app.state.sweeper = None

    @app.on_event("startup")
    async def _init() -> None:
        """Build the orchestrator (if not injected) and start the timeout sweeper."""
        if app.state.orchestrator is None:
            app.state.orchestrator = build_orchestrator()
        if run_sweeper:
            app.state.sweeper = TimeoutSweeper(app.state.orchestrator, get_settings().SWEEP_INTERVAL_SEC)
            app.state.sweeper.start()

    @app.on_event("shutdown")
    async def _close() -> None:
        if app.state.sweeper is not None:
            app.state.sweeper.stop()
        app.state.orchestrator.close()
        get_event_bus().flush()

    return app
