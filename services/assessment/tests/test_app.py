"""Tests for the Assessment service FastAPI app."""

import time

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient

from packages.common.config import get_settings
from services.assessment.app import create_app

from .factories import essay_question, mc_question


@pytest.fixture(scope="module")
def keypair():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private = key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
    ).decode()
    public = key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()
    return private, public


@pytest.fixture
def app(keypair, monkeypatch, orchestrator, make_assessment):
    monkeypatch.setenv("JWT_PUBLIC_KEY", keypair[1])
    monkeypatch.delenv("OIDC_AUDIENCE", raising=False)
    get_settings.cache_clear()
    make_assessment(questions=[mc_question(), essay_question()])
    yield create_app(orchestrator, run_sweeper=False)
    get_settings.cache_clear()


@pytest.fixture
def token(keypair):
    def _token(sub: str, *roles: str) -> dict:
        claims = {"sub": sub, "roles": list(roles or ("student",)), "exp": int(time.time()) + 3600}
        return {"Authorization": f"Bearer {jwt.encode(claims, keypair[0], algorithm='RS256')}"}
    return _token


def client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_openapi_ok(app) -> None:
    """OpenAPI schema endpoint should respond with HTTP 200."""
    async with client(app) as ac:
        r = await ac.get("/openapi.json")
    assert r.status_code == 200
    assert "/attempts/{attempt_id}/submit" in r.json()["paths"]


@pytest.mark.asyncio
async def test_health_and_metrics(app, token) -> None:
    async with client(app) as ac:
        await ac.post("/attempts", json={"assessment_id": "quiz-1"}, headers=token("s1"))
        health = await ac.get("/healthz")
        metrics = await ac.get("/metrics")
    assert health.json() == {"status": "ok"}
    assert "assessment_attempts_started_total" in metrics.text


@pytest.mark.asyncio
async def test_requires_bearer_token(app, token) -> None:
    async with client(app) as ac:
        missing = await ac.post("/attempts", json={"assessment_id": "quiz-1"})
        forged = await ac.post(
            "/attempts", json={"assessment_id": "quiz-1"}, headers={"Authorization": "Bearer not-a-jwt"},
        )
    assert missing.status_code == 401
    assert forged.status_code == 401


@pytest.mark.asyncio
async def test_attempt_flow(app, token, orchestrator) -> None:
    student = token("s1")
    async with client(app) as ac:
        r = await ac.post("/attempts", json={"assessment_id": "quiz-1"}, headers=student)
        assert r.status_code == 201
        body = r.json()
        attempt_id = body["attempt"]["id"]
        assert body["seconds_remaining"] == 30 * 60
        assert r.headers["X-Request-ID"]

        r = await ac.put(
            f"/attempts/{attempt_id}/answers",
            json={"question_id": "q1", "payload": {"selected_options": ["B"]}},
            headers=student,
        )
        assert r.status_code == 200
        assert r.json()["payload"] == {"selected_options": ["B"]}

        r = await ac.get(f"/attempts/{attempt_id}/time-remaining", headers=student)
        assert r.json() == {"seconds_remaining": 30 * 60}

        r = await ac.post(
            f"/attempts/{attempt_id}/submit",
            json={"answers": [{"question_id": "essay", "payload": {"text": "an essay of words"}}]},
            headers=student,
        )
        assert r.status_code == 200
        assert r.json()["attempt"]["status"] == "submitted"
        assert orchestrator.dispatcher.drain(timeout=5)

        r = await ac.post(f"/attempts/{attempt_id}/submit", json={}, headers=student)
        assert r.status_code == 409
        assert r.json()["error"] == "invalid_state"

        teacher = token("t1", "teacher")
        r = await ac.post(
            f"/attempts/{attempt_id}/answers/essay/grade", json={"score": 15, "feedback": "ok"}, headers=teacher,
        )
        assert r.status_code == 200
        assert r.json()["final"] is True

        r = await ac.get(f"/attempts/{attempt_id}", headers=student)
        assert r.json()["attempt"]["status"] == "graded"
        assert r.json()["attempt"]["percentage"] == pytest.approx(115 / 120 * 100, abs=0.01)


@pytest.mark.asyncio
async def test_error_mapping(app, token, clock) -> None:
    student = token("s1")
    async with client(app) as ac:
        attempt_id = (await ac.post("/attempts", json={"assessment_id": "quiz-1"}, headers=student)).json()["attempt"]["id"]

        r = await ac.put(
            f"/attempts/{attempt_id}/answers",
            json={"question_id": "q1", "payload": {"selected_options": ["Z"]}},
            headers=student,
        )
        assert r.status_code == 422
        assert r.json()["error"] == "answer_invalid"
        assert set(r.json()) == {"error", "message", "details"}

        r = await ac.get(f"/attempts/{attempt_id}", headers=token("s2"))
        assert r.status_code == 403

        r = await ac.get("/attempts/999", headers=student)
        assert r.status_code == 404

        r = await ac.post(f"/attempts/{attempt_id}/extend", json={"minutes": 10}, headers=student)
        assert r.status_code == 403

        clock.advance(minutes=31)
        r = await ac.put(
            f"/attempts/{attempt_id}/answers",
            json={"question_id": "q1", "payload": {"selected_options": ["B"]}},
            headers=student,
        )
        assert r.status_code == 410
        assert r.json()["error"] == "time_expired"


@pytest.mark.asyncio
async def test_staff_extend_and_timeout(app, token, clock) -> None:
    student, teacher = token("s1"), token("t1", "teacher")
    async with client(app) as ac:
        view = (await ac.post("/attempts", json={"assessment_id": "quiz-1"}, headers=student)).json()
        attempt_id = view["attempt"]["id"]

        r = await ac.post(f"/attempts/{attempt_id}/extend", json={"minutes": 10}, headers=teacher)
        assert r.status_code == 200
        clock.advance(minutes=35)
        r = await ac.get(f"/attempts/{attempt_id}/active", headers=student)
        assert r.json() == {"active": True}

        clock.advance(minutes=6)
        r = await ac.post(f"/attempts/{attempt_id}/timeout", headers=student)
        assert r.json()["status"] == "timed_out"
        r = await ac.post(f"/attempts/{attempt_id}/timeout", headers=student)
        assert r.status_code == 200
        assert r.json()["status"] in ("timed_out", "pending_manual_grading")


@pytest.mark.asyncio
async def test_listing_and_current_attempt(app, token) -> None:
    student, teacher = token("s1"), token("t1", "teacher")
    async with client(app) as ac:
        r = await ac.get("/assessments/quiz-1/attempts/current", headers=student)
        assert r.status_code == 404

        attempt_id = (await ac.post("/attempts", json={"assessment_id": "quiz-1"}, headers=student)).json()["attempt"]["id"]
        await ac.post("/attempts", json={"assessment_id": "quiz-1"}, headers=token("s2"))

        r = await ac.get("/assessments/quiz-1/attempts/current", headers=student)
        assert r.json()["attempt"]["id"] == attempt_id

        r = await ac.get("/attempts", headers=student)
        assert [a["id"] for a in r.json()] == [attempt_id]
        r = await ac.get("/attempts", params={"student_id": "s2"}, headers=student)
        assert r.status_code == 403
        r = await ac.get("/attempts", params={"assessment_id": "quiz-1"}, headers=teacher)
        assert len(r.json()) == 2


@pytest.mark.asyncio
async def test_bulk_grading_and_regrade(app, token, orchestrator) -> None:
    teacher = token("t1", "teacher")
    ids = []
    async with client(app) as ac:
        for sub in ("s1", "s2"):
            attempt_id = (await ac.post("/attempts", json={"assessment_id": "quiz-1"}, headers=token(sub))).json()["attempt"]["id"]
            await ac.post(
                f"/attempts/{attempt_id}/submit",
                json={"answers": [{"question_id": "essay", "payload": {"text": "an essay of words"}}]},
                headers=token(sub),
            )
            ids.append(attempt_id)
        assert orchestrator.dispatcher.drain(timeout=5)

        grades = [{"attempt_id": i, "question_id": "essay", "score": 10} for i in ids]
        r = await ac.post("/grading/answers", json={"grades": grades}, headers=token("s1"))
        assert r.status_code == 403
        r = await ac.post("/grading/answers", json={"grades": []}, headers=teacher)
        assert r.status_code == 400
        r = await ac.post("/grading/answers", json={"grades": grades}, headers=teacher)
        assert r.status_code == 200
        assert sorted(r.json()["graded"]) == sorted(str(i) for i in ids)
        assert r.json()["failed"] == {}

        r = await ac.post("/assessments/quiz-1/regrade", headers=teacher)
        assert sorted(r.json()["graded"]) == sorted(str(i) for i in ids)
        r = await ac.post("/assessments/quiz-1/questions/q1/regrade", headers=teacher)
        assert len(r.json()["graded"]) == 2
        r = await ac.post("/assessments/quiz-1/questions/q9/regrade", headers=teacher)
        assert r.status_code == 404
        r = await ac.post("/assessments/quiz-1/grade", headers=teacher)
        assert r.json() == {"graded": {}, "failed": {}}
