"""Tests for the HTTP control surface."""

from __future__ import annotations

import pytest
from starlette.testclient import TestClient

from llamasession.api.app import create_app
from llamasession.core.config import ApiConfig, AppSettings, EngineConfig
from llamasession.session.manager import SessionLifecycleManager
from tests.fakes import MODEL_PATH, MockInferenceProvider


@pytest.fixture
def settings():
    return AppSettings(environment="test", engine=EngineConfig(model_path=MODEL_PATH))


@pytest.fixture
def provider():
    return MockInferenceProvider()


@pytest.fixture
def client(settings, provider):
    manager = SessionLifecycleManager(provider, config=settings.engine)
    with TestClient(create_app(settings, manager)) as test_client:
        yield test_client


@pytest.fixture
def loaded_client(client):
    response = client.post("/session/load", json={})
    assert response.status_code == 200
    return client


def test_health_endpoint(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_not_ready_before_load(client):
    response = client.get("/ready")
    assert response.status_code == 503
    assert response.json()["phase"] == "uninitialized"


def test_info_before_load_has_only_id(client):
    status = client.get("/status").json()
    assert client.get("/info").json() == {"id": status["id"]}


def test_load_makes_ready(loaded_client):
    assert loaded_client.get("/ready").json() == {"status": "ready"}
    info = loaded_client.get("/info").json()
    assert info["model"]["file_name"] == "mock-7b.Q4_K_M.gguf"
    assert "context" in info and "device_memory" in info


def test_load_without_model_path_is_conflict(settings, provider):
    settings.engine.model_path = ""
    manager = SessionLifecycleManager(provider, config=settings.engine)
    with TestClient(create_app(settings, manager)) as client:
        response = client.post("/session/load", json={})
    assert response.status_code == 409
    assert response.json() == {
        "kind": "precondition",
        "stage": "loadModel",
        "detail": "No model path provided",
    }


def test_load_with_seed_history(client):
    items = [
        {"type": "system", "text": "Be terse."},
        {"type": "user", "text": "2+2?"},
        {"type": "model", "response": ["4"]},
    ]
    response = client.post("/session/load", json={"system_prompt": "Be terse.", "history": items})
    assert response.status_code == 200
    assert client.get("/session/history").json() == items


def test_prompt(loaded_client):
    response = loaded_client.post("/session/prompt", json={"text": "Hello"})
    assert response.status_code == 200
    assert response.json() == {"response": "Mock LLM response"}


def test_prompt_without_session_is_conflict(client):
    response = client.post("/session/prompt", json={"text": "Hello"})
    assert response.status_code == 409
    assert client.get("/status").json()["phase"] == "error"


def test_prompt_engine_failure_is_server_error(loaded_client, provider):
    provider.fail("generate", "kernel panic")
    response = loaded_client.post("/session/prompt", json={"text": "Hello"})
    assert response.status_code == 500
    assert response.json()["kind"] == "operation"
    assert loaded_client.get("/status").json()["message"] == "prompt:kernel panic"


def test_history_round_trip(loaded_client):
    items = [
        {"type": "system", "text": "Be terse."},
        {"type": "user", "text": "2+2?"},
        {"type": "model", "response": ["4"]},
    ]
    assert loaded_client.put("/session/history", json=items).status_code == 204
    assert loaded_client.get("/session/history").json() == items


def test_clear_history(loaded_client, settings):
    loaded_client.post("/session/prompt", json={"text": "Hello"})
    assert loaded_client.delete("/session/history").status_code == 204
    assert loaded_client.get("/session/history").json() == [
        {"type": "system", "text": settings.engine.system_prompt}
    ]


def test_dispose_then_dispose_again(loaded_client):
    assert loaded_client.delete("/session").status_code == 204
    response = loaded_client.delete("/session")
    assert response.status_code == 409
    assert response.json()["kind"] == "history_guard"


def test_autoload_on_startup(provider):
    settings = AppSettings(
        engine=EngineConfig(model_path=MODEL_PATH),
        api=ApiConfig(autoload=True),
    )
    manager = SessionLifecycleManager(provider, config=settings.engine)
    with TestClient(create_app(settings, manager)) as client:
        assert client.get("/ready").status_code == 200


def test_autoload_failure_keeps_serving(provider):
    provider.fail("configure_engine", "no device")
    settings = AppSettings(
        engine=EngineConfig(model_path=MODEL_PATH),
        api=ApiConfig(autoload=True),
    )
    manager = SessionLifecycleManager(provider, config=settings.engine)
    with TestClient(create_app(settings, manager)) as client:
        status = client.get("/status").json()
    assert status["phase"] == "error"
    assert status["message"] == "loadLlama:no device"
