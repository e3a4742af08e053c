from __future__ import annotations

import asyncio
from typing import Iterator

import pytest
from conftest import RecordingPublisher, ScriptedProvider
from fastapi.testclient import TestClient

from trailgen.config import get_settings
from trailgen.db.session import session_scope
from trailgen.main import app
from trailgen.repositories.jobs import jobs
from trailgen.repositories.trails import trails
from trailgen.trail_routes import get_publisher
from trailgen.worker import TrailGenerationWorker

STUDENT = {"X-Student-Id": "student-1"}


@pytest.fixture
def client(seeded, publisher: RecordingPublisher) -> Iterator[TestClient]:
    app.dependency_overrides[get_publisher] = lambda: publisher
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _generate(client: TestClient, **body) -> dict:
    response = client.post("/api/trails/generate", json={"language_code": "es", "level_code": "B1", **body}, headers=STUDENT)
    assert response.status_code == 202, response.text
    return response.json()


def _run_generation(publisher: RecordingPublisher) -> None:
    worker = TrailGenerationWorker(ScriptedProvider(), publisher, worker_id="worker-test")
    for message in list(publisher.generation):
        asyncio.run(worker.process(message))


def test_get_or_create_returns_201_then_200(client, publisher) -> None:
    first = client.get("/api/trails", params={"lang": "ES"}, headers=STUDENT)
    assert first.status_code == 201
    body = first.json()
    assert body["language_code"] == "es"
    assert body["level_code"] == "A1"
    assert body["status"] == "GENERATING"
    assert body["total_modules"] == 4
    assert body["modules_ready"] == 0
    assert body["estimated_duration_hours"] == 1.5
    assert body["progress"]["total_lessons"] == 6

    second = client.get("/api/trails", params={"lang": "es"}, headers=STUDENT)
    assert second.status_code == 200
    assert second.json()["id"] == body["id"]
    assert [message.trail_id for message in publisher.generation] == [body["id"]]


def test_student_header_and_language_are_required(client) -> None:
    assert client.get("/api/trails", params={"lang": "es"}).status_code == 422
    assert client.get("/api/trails", headers=STUDENT).status_code == 422
    response = client.post("/api/trails/generate", json={"language_code": "e"}, headers=STUDENT)
    assert response.status_code == 422


def test_unknown_level_is_rejected(client) -> None:
    response = client.post("/api/trails/generate", json={"language_code": "es", "level_code": "Z9"}, headers=STUDENT)
    assert response.status_code == 400
    assert "Z9" in response.json()["detail"]


def test_generate_is_idempotent_and_force_archives(client, publisher) -> None:
    first = _generate(client)
    assert _generate(client)["id"] == first["id"]

    forced = _generate(client, force_regenerate=True)
    assert forced["id"] != first["id"]
    assert client.get(f"/api/trails/{first['id']}").json()["status"] == "ARCHIVED"
    assert len(publisher.generation) == 2

    active = client.get("/api/trails/active", headers=STUDENT).json()
    assert [trail["id"] for trail in active] == [forced["id"]]


def test_concurrent_generate_resolves_to_a_single_trail(client, publisher, monkeypatch) -> None:
    winner = _generate(client)
    original = trails.get_active
    calls = {"count": 0}

    def racing_get_active(session, student_id, language_code):
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return original(session, student_id, language_code)

    monkeypatch.setattr(trails, "get_active", racing_get_active)
    loser = _generate(client)

    assert loser["id"] == winner["id"]
    assert len(publisher.generation) == 1
    with session_scope() as session:
        assert trails.count_active(session, "student-1") == 1
        assert len(trails.list_modules(session, winner["id"])) == 3


def test_active_trail_cap_returns_409(client, monkeypatch) -> None:
    monkeypatch.setenv("TRAILGEN_MAX_ACTIVE_TRAILS", "2")
    get_settings.cache_clear()

    client.post("/api/trails/generate", json={"language_code": "es"}, headers=STUDENT)
    client.post("/api/trails/generate", json={"language_code": "fr"}, headers=STUDENT)
    response = client.post("/api/trails/generate", json={"language_code": "de"}, headers=STUDENT)

    assert response.status_code == 409
    assert "Archive a trail" in response.json()["detail"]
    assert client.post("/api/trails/generate", json={"language_code": "es"}, headers=STUDENT).status_code == 202


def test_refresh_with_level_change_links_and_archives(client, publisher) -> None:
    original = _generate(client)

    response = client.post(
        f"/api/trails/{original['id']}/refresh",
        json={"reason": "level_change", "new_level_code": "A2", "notes": "Passed the placement test"},
    )
    assert response.status_code == 202
    refreshed = response.json()
    assert refreshed["id"] != original["id"]
    assert refreshed["previous_trail_id"] == original["id"]
    assert refreshed["refresh_reason"] == "level_change"
    assert refreshed["level_code"] == "A2"
    assert publisher.generation[-1].job_type == "refresh"

    old = client.get(f"/api/trails/{original['id']}").json()
    assert old["status"] == "ARCHIVED"
    assert old["archived_at"] is not None

    again = client.post(f"/api/trails/{original['id']}/refresh", json={"reason": "manual_request"})
    assert again.status_code == 409

    assert client.delete(f"/api/trails/{original['id']}").status_code == 204
    deleted_again = client.get(f"/api/trails/{original['id']}").json()
    assert deleted_again["status"] == "ARCHIVED"
    assert deleted_again["archived_at"] == old["archived_at"]

    assert client.delete(f"/api/trails/{refreshed['id']}").status_code == 204
    archived = client.get(f"/api/trails/{refreshed['id']}").json()
    assert archived["status"] == "ARCHIVED"
    assert archived["archived_at"] is not None
    assert client.get(f"/api/trails/{refreshed['id']}/generation").json()["status"] == "CANCELLED"


def test_refresh_rejects_unknown_reason(client) -> None:
    trail = _generate(client)
    response = client.post(f"/api/trails/{trail['id']}/refresh", json={"reason": "bored"})
    assert response.status_code == 422


def test_missing_resources_return_404(client) -> None:
    trail = _generate(client)
    assert client.get("/api/trails/does-not-exist").status_code == 404
    assert client.delete("/api/trails/does-not-exist").status_code == 404
    assert client.get(f"/api/trails/{trail['id']}/modules/does-not-exist").status_code == 404
    assert client.get("/api/trails/lessons/does-not-exist").status_code == 404
    response = client.patch("/api/trails/lessons/does-not-exist/progress", json={"completed": True})
    assert response.status_code == 404


def test_generation_status_and_modules_before_content(client) -> None:
    trail = _generate(client)

    status = client.get(f"/api/trails/{trail['id']}/generation").json()
    assert status["status"] == "QUEUED"
    assert status["job_type"] == "full_generation"
    assert status["attempt_count"] == 0
    assert status["max_attempts"] == 5

    modules = client.get(f"/api/trails/{trail['id']}/modules").json()
    assert [module["competency_code"] for module in modules] == ["writing", "reading", "speaking"]
    assert all(module["status"] == "PENDING" and module["lessons"] is None for module in modules)

    detail = client.get(f"/api/trails/{trail['id']}/modules/{modules[0]['id']}").json()
    assert detail["lessons"][0]["is_placeholder"] is True
    assert detail["lessons"][0]["content"] is None
    assert detail["lessons"][0]["lesson_type"] == "exercise"

    assert client.get(f"/api/trails/{trail['id']}/next-lesson").status_code == 204


def test_lesson_progress_updates_rollup(client, publisher) -> None:
    trail = _generate(client)
    _run_generation(publisher)

    ready = client.get(f"/api/trails/{trail['id']}").json()
    assert ready["status"] == "READY"
    assert ready["modules_ready"] == 3

    lesson = client.get(f"/api/trails/{trail['id']}/next-lesson").json()
    assert lesson["content"]

    response = client.patch(
        f"/api/trails/lessons/{lesson['id']}/progress",
        json={"completed": True, "score": 87.5, "time_spent_seconds": 240},
    )
    assert response.status_code == 200
    updated = response.json()
    assert updated["completed"] is True
    assert updated["score"] == 87.5

    progress = client.get(f"/api/trails/{trail['id']}/progress").json()
    assert progress["lessons_completed"] == 1
    assert progress["progress_percentage"] == 33.33
    assert progress["average_score"] == 87.5
    assert progress["time_spent_minutes"] == 4
    assert progress["last_activity_at"] is not None

    following = client.get(f"/api/trails/{trail['id']}/next-lesson").json()
    assert following["id"] != lesson["id"]

    invalid = client.patch(f"/api/trails/lessons/{lesson['id']}/progress", json={"score": 101})
    assert invalid.status_code == 422


def test_failed_publish_marks_job_for_reaper(seeded) -> None:
    down = RecordingPublisher(fail_generation=True)
    app.dependency_overrides[get_publisher] = lambda: down
    try:
        body = _generate(TestClient(app))
    finally:
        app.dependency_overrides.clear()

    with session_scope() as session:
        job = jobs.latest_for_trail(session, body["id"])
        assert job.next_retry_at is not None
