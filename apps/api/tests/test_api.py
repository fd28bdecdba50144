from __future__ import annotations

import importlib.util
from dataclasses import replace
from pathlib import Path

import pytest
from conftest import ScriptedContentProvider, make_plan_data
from fastapi.testclient import TestClient

from lessonforge.errors import ProviderConfigurationError
from lessonforge.main import app, get_services


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


GENERATE_BODY = {
    "prompt": "Adding one more",
    "grade": "1",
    "subject": "Math",
    "options": {"questionCount": 3, "includeLessonPlan": False},
    "visualSettings": {"includeVisuals": True, "richness": "minimal"},
}


def test_health() -> None:
    response = TestClient(app).get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_generate_returns_documents(client) -> None:
    response = client.post("/generate", json=GENERATE_BODY)

    assert response.status_code == 200
    body = response.json()
    assert body["worksheetHtml"].lstrip().startswith("<!DOCTYPE html>")
    assert "ANSWER KEY" in body["answerKeyHtml"]
    assert body["lessonPlanHtml"] == ""
    assert body["imageStats"]["total"] == 2
    assert body["quality"]["passed"] is True
    assert body["billing"]["shouldCharge"] is True
    assert body["usedFallbackPlan"] is False


def test_generate_rejects_bad_question_count(client) -> None:
    body = dict(GENERATE_BODY, options={"questionCount": 0})
    assert client.post("/generate", json=body).status_code == 422


def test_generate_maps_configuration_errors_to_503(services) -> None:
    broken = replace(services, content_provider=ScriptedContentProvider([ProviderConfigurationError("bad key")]))
    app.dependency_overrides[get_services] = lambda: broken
    try:
        response = TestClient(app).post("/generate", json=GENERATE_BODY)
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 503
    assert response.json()["detail"] == "bad key"


def test_generate_without_services_is_503() -> None:
    response = TestClient(app).post("/generate", json=GENERATE_BODY)
    assert response.status_code == 503


def test_validate_plan_endpoint() -> None:
    plan = make_plan_data(3)
    plan["structure"]["sections"][0]["items"][0]["correctAnswer"] = ""
    response = TestClient(app).post(
        "/plans/validate",
        json={"plan": plan, "requirements": {"minQuestions": 3, "maxQuestions": 3, "grade": "1"}},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["valid"] is False
    assert body["autoRepairable"] is True
    assert body["issues"][0]["field"] == "sections.items.q1.correctAnswer"


def test_math_check_endpoint() -> None:
    response = TestClient(app).post("/math/check", json={"html": "<p>3 × 4 = 13</p>", "grade": "K"})

    assert response.status_code == 200
    body = response.json()
    assert body["answers"]["valid"] is False
    assert body["answers"]["issues"][0]["expected_answer"] == 12
    assert body["gradeAppropriateness"]["valid"] is False


def test_image_cache_stats(client) -> None:
    client.post("/generate", json=GENERATE_BODY)
    client.post("/generate", json=GENERATE_BODY)

    stats = client.get("/images/cache").json()
    assert stats["entries"] == 2
    assert stats["hits"] == 2
    assert stats["hitRate"] == 0.5


def test_serverless_entrypoint_mounts_app_under_api() -> None:
    path = Path(__file__).resolve().parents[3] / "api" / "index.py"
    loader_spec = importlib.util.spec_from_file_location("serverless_index", path)
    module = importlib.util.module_from_spec(loader_spec)
    loader_spec.loader.exec_module(module)

    with TestClient(module.app) as outer:
        assert outer.get("/api/health").json() == {"status": "ok"}
