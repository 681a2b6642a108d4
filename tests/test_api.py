"""Tests for the session HTTP surface."""

import time
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from cast_orchestrator.api.app import create_app
from cast_orchestrator.containers import AppContainer
from cast_orchestrator.domain.errors import StoreError
from tests.conftest import FakeRendererClient, RecordingSessionStore

ADMIN_HEADERS = {"X-Admin-Token": "admin-token"}


def _poll_status(client: TestClient, session_id: str, expected: str) -> dict:
    deadline = time.monotonic() + 3.0
    while True:
        body = client.get(f"/sessions/{session_id}").json()
        if body["status"] == expected or time.monotonic() >= deadline:
            return body
        time.sleep(0.01)


def test_health(container: AppContainer) -> None:
    with TestClient(create_app(container)) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_session_lifecycle_over_http(
    container: AppContainer, renderer: FakeRendererClient
) -> None:
    with TestClient(create_app(container)) as client:
        created = client.post(
            "/sessions",
            json={
                "gameUrl": "https://example.com/cast?room=ABCD",
                "sessionData": {"room": "ABCD"},
            },
        )
        assert created.status_code == 201
        session_id = created.json()["sessionId"]
        assert created.json()["status"] == "created"

        active = _poll_status(client, session_id, "active")
        listed = client.get("/sessions").json()

        terminated = client.post(f"/sessions/{session_id}/terminate")
        assert terminated.status_code == 202
        assert terminated.json()["terminateRequested"] is True

        final = _poll_status(client, session_id, "terminated")

    assert active["status"] == "active"
    assert active["rendererInstanceId"] == "renderer-1"
    assert active["sessionData"] == {"room": "ABCD"}
    assert [item["sessionId"] for item in listed["sessions"]] == [session_id]
    assert final["status"] == "terminated"
    assert final["error"] is None
    assert renderer.terminated == ["renderer-1"]


def test_create_session_rejects_malformed_url(
    container: AppContainer, store: RecordingSessionStore
) -> None:
    with TestClient(create_app(container)) as client:
        response = client.post("/sessions", json={"gameUrl": "not-a-url"})

    assert response.status_code == 422
    assert response.json()["error"] == "InvalidInput"
    assert store.sessions == {}


def test_create_session_accepts_snake_case_fields(container: AppContainer) -> None:
    with TestClient(create_app(container)) as client:
        response = client.post(
            "/sessions", json={"game_url": "https://example.com/cast"}
        )

    assert response.status_code == 201
    assert response.json()["gameUrl"] == "https://example.com/cast"


def test_unknown_session_returns_404(container: AppContainer) -> None:
    with TestClient(create_app(container)) as client:
        fetched = client.get(f"/sessions/{uuid4()}")
        terminated = client.post(f"/sessions/{uuid4()}/terminate")

    assert fetched.status_code == 404
    assert fetched.json()["error"] == "SessionNotFound"
    assert terminated.status_code == 404


def test_admin_endpoints_require_token(container: AppContainer) -> None:
    with TestClient(create_app(container)) as client:
        unauthorized = client.post("/admin/sweep")
        swept = client.post("/admin/sweep", headers=ADMIN_HEADERS)
        health = client.get("/admin/health", headers=ADMIN_HEADERS)

    assert unauthorized.status_code == 401
    assert swept.status_code == 200
    assert swept.json() == {"resumed": []}
    assert health.json() == {"status": "ok", "running_workflows": 0}


def test_admin_delete_only_removes_terminal_sessions(
    container: AppContainer,
    renderer: FakeRendererClient,
    store: RecordingSessionStore,
) -> None:
    with TestClient(create_app(container)) as client:
        session_id = client.post(
            "/sessions", json={"gameUrl": "https://example.com/cast"}
        ).json()["sessionId"]
        _poll_status(client, session_id, "active")

        still_active = client.delete(
            f"/admin/sessions/{session_id}", headers=ADMIN_HEADERS
        )
        client.post(f"/sessions/{session_id}/terminate")
        _poll_status(client, session_id, "terminated")
        deleted = client.delete(f"/admin/sessions/{session_id}", headers=ADMIN_HEADERS)
        missing = client.get(f"/sessions/{session_id}")

    assert still_active.status_code == 422
    assert deleted.status_code == 204
    assert missing.status_code == 404
    assert store.sessions == {}


def test_store_outage_maps_to_503(
    container: AppContainer,
    store: RecordingSessionStore,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def unavailable() -> list:
        raise StoreError("Failed to list active sessions: connection refused")

    with TestClient(create_app(container)) as client:
        monkeypatch.setattr(store, "list_active", unavailable)
        response = client.get("/sessions")

    assert response.status_code == 503
    assert response.json()["error"] == "StoreError"
