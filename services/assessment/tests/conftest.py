"""Shared fixtures for the assessment service tests."""

import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Tuple

import pytest

from packages.common.config import Settings
from packages.schemas.assessment import Assessment, AssessmentStatus
from services.assessment.notifier import AttemptNotifier
from services.assessment.orchestrator import AttemptOrchestrator
from services.assessment.repo import InMemoryRepository

from .factories import T0, mc_question


class FakeClock:
    """Manually advanced clock; thread-safe so worker threads read a consistent value."""

    def __init__(self, now: datetime = T0) -> None:
        self._now = now
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **delta: float) -> datetime:
        with self._lock:
            self._now += timedelta(**delta)
            return self._now


class RecordingBus:
    """`Publisher` that keeps every event in memory."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []
        self._lock = threading.Lock()

    def publish(self, topic: str, key: str, value: Dict[str, Any]) -> None:
        with self._lock:
            self.events.append((topic, key, value))

    def topics(self) -> List[str]:
        with self._lock:
            return [t for t, _, _ in self.events]

    def payloads(self, topic: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [v for t, _, v in self.events if t == topic]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
def repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, GRADING_WORKERS=2, GRADING_RETRIES=2, MAX_EXTENSION_MINUTES=60)


@pytest.fixture
def orchestrator(repo, bus, clock, settings):
    orch = AttemptOrchestrator(repo, AttemptNotifier(bus), clock=clock, settings=settings)
    yield orch
    orch.close()


@pytest.fixture
def make_assessment(repo) -> Callable[..., Assessment]:
    """Store an active assessment; defaults to one 100-point MC question (correct B)."""

    def _make(questions=None, **fields: Any) -> Assessment:
        data: Dict[str, Any] = {
            "id": "quiz-1",
            "title": "Unit quiz",
            "status": AssessmentStatus.ACTIVE,
            "duration": 30,
            "passing_score": 60.0,
            "max_attempts": 2,
            "questions": questions if questions is not None else [mc_question()],
        }
        data.update(fields)
        return repo.save_assessment(Assessment(**data))

    return _make
