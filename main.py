"""Assessment service entrypoint.

- `serve`: run the FastAPI app under uvicorn (the app starts its own timeout sweeper)
- `sweep`: run only the timeout sweeper, e.g. as a separate worker process
- `load`: validate assessments from a JSON file and store them
"""
from __future__ import annotations

import argparse
import json
import logging
import signal
import threading
from pathlib import Path
from typing import Any, List

import uvicorn
from dotenv import load_dotenv

from packages.common.config import get_settings
from packages.common.logging import configure_logging
from packages.schemas.assessment import Assessment
from services.assessment.app import build_orchestrator, create_app
from services.assessment.errors import ContentValidationError
from services.assessment.sql_repo import SqlAttemptRepository
from services.assessment.sweeper import TimeoutSweeper
from services.assessment.validator import validate_assessment

load_dotenv(".env", override=False)

app = create_app()


def _setup_signals(log: logging.Logger) -> threading.Event:
    """Install SIGINT/SIGTERM handlers that flip a threading.Event for graceful shutdown."""
    stop = threading.Event()

    def on_signal(sig: int, frame: Any = None) -> None:
        log.info("received signal %s, shutting down…", signal.Signals(sig).name)
        stop.set()

    for s in (getattr(signal, "SIGINT", None), getattr(signal, "SIGTERM", None)):
        if s:
            signal.signal(s, on_signal)
    return stop


def run_sweeper(log: logging.Logger) -> None:
    orchestrator = build_orchestrator()
    sweeper = TimeoutSweeper(orchestrator, get_settings().SWEEP_INTERVAL_SEC)
    stop = _setup_signals(log)
    sweeper.start()
    stop.wait()
    sweeper.stop()
    orchestrator.dispatcher.drain(timeout=30)
    orchestrator.close()
    log.info("shutdown completed")


def load_assessments(path: Path, log: logging.Logger) -> List[str]:
    """Store every assessment in `path` (a JSON object or list); all must validate first."""
    raw = json.loads(path.read_text(encoding="utf-8"))
    assessments = [Assessment.model_validate(a) for a in (raw if isinstance(raw, list) else [raw])]
    for a in assessments:
        issues = validate_assessment(a)
        if issues:
            raise ContentValidationError(issues, assessment_id=a.id)
    repo = SqlAttemptRepository.from_url(get_settings().DATABASE_URL)
    for a in assessments:
        repo.save_assessment(a)
        log.info("assessment stored (%d questions)", len(a.questions), extra={"assessment_id": a.id})
    return [a.id for a in assessments]


def main() -> None:
    """CLI entrypoint."""
    s = get_settings()
    log = configure_logging(s.LOG_LEVEL, json_logs=s.LOG_JSON)

    ap = argparse.ArgumentParser(prog="assessment", description="Assessment service")
    sub = ap.add_subparsers(dest="command", required=True)
    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    sub.add_parser("sweep", help="Run the timeout sweeper only")
    load = sub.add_parser("load", help="Load assessments from a JSON file")
    load.add_argument("path", type=Path)
    args = ap.parse_args()

    if args.command == "serve":
        uvicorn.run("main:app", host=args.host, port=args.port, log_config=None)
    elif args.command == "sweep":
        run_sweeper(log)
    else:
        try:
            ids = load_assessments(args.path, log)
        except ContentValidationError as e:
            log.error("assessment rejected: %s", json.dumps(e.to_dict(), default=str))
            raise SystemExit(1)
        log.info("loaded %d assessments: %s", len(ids), ", ".join(ids))


if __name__ == "__main__":
    main()
