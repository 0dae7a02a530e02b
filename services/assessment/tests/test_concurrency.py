"""Races between answering, submitting, timing out and extending one attempt."""

import threading
from datetime import timedelta

import pytest

from packages.schemas.assessment import AnswerSubmission, AttemptStatus, EndReason
from services.assessment.errors import StateError, TimeExpiredError
from services.assessment.orchestrator import Actor
from services.assessment.repo import InMemoryRepository

from .factories import T0, mc_question

TEACHER = Actor("t1", "teacher")
S = AttemptStatus


def answer(qid="q1", option="B"):
    return AnswerSubmission(question_id=qid, payload={"selected_options": [option]})


def settle(orch):
    assert orch.dispatcher.drain(timeout=5)


def race(*fns):
    """Run each callable on its own thread, released together; returns results or raised errors."""
    barrier = threading.Barrier(len(fns))
    outcomes = [None] * len(fns)

    def run(i, fn):
        barrier.wait()
        try:
            outcomes[i] = fn()
        except Exception as e:
            outcomes[i] = e

    threads = [threading.Thread(target=run, args=(i, fn)) for i, fn in enumerate(fns)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    return outcomes


class InterruptingRepository(InMemoryRepository):
    """Runs `on_read` once, the next time an answer row is read before a write."""

    def __init__(self) -> None:
        super().__init__()
        self.on_read = None

    def get_answer(self, attempt_id, question_id):
        hook, self.on_read = self.on_read, None
        if hook is not None:
            hook()
        return super().get_answer(attempt_id, question_id)


class TestAnswerAgainstSubmit:
    @pytest.fixture
    def repo(self) -> InterruptingRepository:
        return InterruptingRepository()

    def test_answer_cannot_land_after_submit_and_grading(self, orchestrator, make_assessment, repo) -> None:
        make_assessment()
        attempt_id = orchestrator.start_attempt("quiz-1", "s1").attempt.id
        orchestrator.submit_answer(attempt_id, answer(option="B"), "s1")

        def submit_and_grade():
            orchestrator.submit_attempt(attempt_id, [], "s1")
            settle(orchestrator)

        repo.on_read = submit_and_grade
        with pytest.raises(StateError):
            orchestrator.submit_answer(attempt_id, answer(option="A"), "s1")

        attempt = repo.get_attempt(attempt_id)
        assert attempt.status is S.GRADED
        assert attempt.total_score == 100.0
        stored = repo.get_answer(attempt_id, "q1")
        assert stored.payload == {"selected_options": ["B"]}
        assert stored.graded and stored.score == 100.0

    def test_racing_answer_lands_before_submit_or_is_rejected(self, orchestrator, make_assessment, repo) -> None:
        make_assessment(max_attempts=1)
        for n in range(8):
            student = f"s{n}"
            attempt_id = orchestrator.start_attempt("quiz-1", student).attempt.id
            answered, submitted = race(
                lambda: orchestrator.submit_answer(attempt_id, answer(), student),
                lambda: orchestrator.submit_attempt(attempt_id, [], student),
            )
            assert not isinstance(submitted, Exception)
            settle(orchestrator)

            attempt = repo.get_attempt(attempt_id)
            stored = repo.get_answer(attempt_id, "q1")
            assert attempt.status is S.GRADED
            assert stored.graded
            if isinstance(answered, Exception):
                assert isinstance(answered, StateError)
                assert stored.payload is None
                assert attempt.total_score == 0.0
            else:
                assert stored.payload == {"selected_options": ["B"]}
                assert attempt.total_score == 100.0

    def test_parallel_answers_to_different_questions(self, orchestrator, make_assessment, repo) -> None:
        qids = [f"q{i}" for i in range(1, 7)]
        make_assessment(questions=[mc_question(q, points=10) for q in qids])
        attempt_id = orchestrator.start_attempt("quiz-1", "s1").attempt.id

        outcomes = race(*[
            (lambda q=q: orchestrator.submit_answer(attempt_id, answer(q), "s1")) for q in qids
        ])
        assert not [o for o in outcomes if isinstance(o, Exception)]
        assert {a.question_id: a.payload for a in repo.list_answers(attempt_id)} == {
            q: {"selected_options": ["B"]} for q in qids
        }

        orchestrator.submit_attempt(attempt_id, [], "s1")
        settle(orchestrator)
        assert repo.get_attempt(attempt_id).total_score == 60.0
        assert len(orchestrator.locks) == 0


class TestExtendAgainstTimeout:
    def test_extend_after_end_time_always_times_out(self, orchestrator, make_assessment, repo, clock) -> None:
        make_assessment()
        ids = [orchestrator.start_attempt("quiz-1", f"s{n}").attempt.id for n in range(6)]
        clock.advance(minutes=31)

        for attempt_id in ids:
            extended, timed_out = race(
                lambda: orchestrator.extend_time(attempt_id, 15, TEACHER),
                lambda: orchestrator.handle_timeout(attempt_id),
            )
            assert isinstance(extended, (TimeExpiredError, StateError))
            assert not isinstance(timed_out, Exception)
            assert timed_out.status in (S.TIMED_OUT, S.GRADED)

        settle(orchestrator)
        for attempt_id in ids:
            attempt = repo.get_attempt(attempt_id)
            assert attempt.status is S.GRADED
            assert attempt.end_reason is EndReason.TIMEOUT
            assert attempt.end_time == T0 + timedelta(minutes=30)

    def test_sweep_with_stale_candidates_leaves_extended_attempt(self, orchestrator, make_assessment, repo, clock) -> None:
        make_assessment()
        ids = [orchestrator.start_attempt("quiz-1", f"s{n}").attempt.id for n in range(6)]
        clock.advance(minutes=29)

        for attempt_id in ids:
            extended, swept = race(
                lambda: orchestrator.extend_time(attempt_id, 15, TEACHER),
                lambda: orchestrator.sweep_expired(now=T0 + timedelta(minutes=31)),
            )
            assert not isinstance(extended, Exception)
            assert swept == []

        for attempt_id in ids:
            attempt = repo.get_attempt(attempt_id)
            assert attempt.status is S.IN_PROGRESS
            assert attempt.end_time == T0 + timedelta(minutes=45)
