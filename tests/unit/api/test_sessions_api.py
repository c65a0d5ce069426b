"""
Unit tests for the session control surface.

The orchestrator is replaced by a mock placed on app.state, so the lifespan
hook never builds a real one.
"""

import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from debugforce.api import server
from debugforce.api.server import create_app
from debugforce.core.domain.errors import InvalidTransitionError, SessionNotFoundError
from debugforce.core.domain.models import (
    ScenarioRun,
    ScenarioStatus,
    Session,
    SessionStatus,
)


@pytest.fixture
def session():
    session = Session(original_error="TypeError: x is undefined", repo_path="/repo")
    run = ScenarioRun(session_id=session.id, hypothesis="x read before init")
    run.transition(ScenarioStatus.INVESTIGATING)
    run.latest_log = "step 1: git -> ok"
    session.add_scenario(run)
    session.transition(SessionStatus.RUNNING)
    return session


@pytest.fixture
def orchestrator(session):
    mock = MagicMock()
    mock.start_session = AsyncMock(return_value=session.id)
    mock.get_status = AsyncMock(return_value=session.snapshot())
    mock.add_observation = AsyncMock(return_value=None)
    mock.cancel_session = AsyncMock(return_value=SessionStatus.CANCELLED)
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def client(orchestrator):
    app = create_app()
    app.state.orchestrator = orchestrator
    return TestClient(app)


class TestStartSession:
    """Tests for POST /api/v1/sessions."""

    def test_start(self, client, orchestrator, session):
        response = client.post(
            "/api/v1/sessions",
            json={"error": "TypeError: x is undefined", "repo_path": "/repo", "language": "typescript"},
        )

        assert response.status_code == 201
        assert response.json() == {"session_id": session.id, "status": "running"}
        orchestrator.start_session.assert_awaited_once_with(
            error="TypeError: x is undefined",
            repo_path="/repo",
            context="",
            language="typescript",
            file_path=None,
        )

    def test_missing_fields(self, client):
        response = client.post("/api/v1/sessions", json={"error": ""})
        assert response.status_code == 422

    def test_blank_error(self, client, orchestrator):
        orchestrator.start_session.side_effect = ValueError("error must not be empty")

        response = client.post("/api/v1/sessions", json={"error": "   ", "repo_path": "/repo"})

        assert response.status_code == 400


class TestGetSession:
    """Tests for GET /api/v1/sessions/{id}."""

    def test_snapshot(self, client, session):
        response = client.get(f"/api/v1/sessions/{session.id}")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "running"
        assert body["scenarios"][0]["status"] == "investigating"
        assert body["scenarios"][0]["latest_log"] == "step 1: git -> ok"
        assert body["summary"] is None

    def test_not_found(self, client, orchestrator):
        orchestrator.get_status.side_effect = SessionNotFoundError("session-x")

        response = client.get("/api/v1/sessions/session-x")

        assert response.status_code == 404


class TestObservationsAndCancel:
    """Tests for observation and cancel endpoints."""

    def test_add_observation(self, client, orchestrator, session):
        response = client.post(
            f"/api/v1/sessions/{session.id}/observations", json={"text": "only on Node 18"}
        )

        assert response.status_code == 200
        assert response.json()["acknowledged"] is True
        orchestrator.add_observation.assert_awaited_once_with(session.id, "only on Node 18")

    def test_observation_on_finished_session(self, client, orchestrator, session):
        orchestrator.add_observation.side_effect = InvalidTransitionError("observations are closed")

        response = client.post(
            f"/api/v1/sessions/{session.id}/observations", json={"text": "late"}
        )

        assert response.status_code == 409

    def test_cancel(self, client, session):
        response = client.post(f"/api/v1/sessions/{session.id}/cancel")

        assert response.status_code == 200
        assert response.json() == {"acknowledged": True, "status": "cancelled"}

    def test_cancel_concluded(self, client, orchestrator, session):
        orchestrator.cancel_session.side_effect = InvalidTransitionError("already concluded")

        response = client.post(f"/api/v1/sessions/{session.id}/cancel")

        assert response.status_code == 409

    def test_cancel_unknown(self, client, orchestrator):
        orchestrator.cancel_session.side_effect = SessionNotFoundError("session-x")

        response = client.post("/api/v1/sessions/session-x/cancel")

        assert response.status_code == 404


class TestAppLifecycle:
    """Tests for health and lifespan wiring."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_orchestrator_missing(self):
        response = TestClient(create_app()).get("/api/v1/sessions/session-x")
        assert response.status_code == 503

    @patch.dict(os.environ, {"DEBUGFORCE_PROFILE": "staging", "DEBUGFORCE_CONFIG_DIR": "/etc/debugforce"})
    def test_lifespan_builds_and_closes_orchestrator(self, orchestrator):
        with patch.object(server, "DebugForceFactory") as factory_cls:
            factory_cls.return_value.create_orchestrator.return_value = orchestrator
            app = create_app()
            with TestClient(app) as client:
                assert client.get("/health").json()["status"] == "healthy"

        factory_cls.assert_called_once_with(config_dir="/etc/debugforce")
        factory_cls.return_value.create_orchestrator.assert_called_once_with(profile="staging")
        orchestrator.close.assert_awaited_once()
