"""Tests for API routes."""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from rd_engine.agents.discovery import DiscoveryCoordinator
from rd_engine.agents.query_planner import QueryPlanner
from rd_engine.agents.synthesis import SynthesisLoop
from rd_engine.exceptions import AdapterStatusError, ResearchTimeoutError, StageFailedError
from rd_engine.models.research import REQUIRED_PERSONAS
from rd_engine.services.embeddings import EmbeddingService
from rd_engine.services.session_store import SessionManager
from rd_engine.workflow.checkpoints import MemoryCheckpointStore
from rd_engine.workflow.orchestrator import ResearchEngine
from tests.fakes import (
    FakeLLM,
    FakeSearch,
    findings_payload,
    planner_payload,
    synthesis_payload,
    verification_payload,
)


def _fake_engine(sessions: SessionManager) -> ResearchEngine:
    return ResearchEngine(
        planner=QueryPlanner(FakeLLM([planner_payload()])),
        discovery=DiscoveryCoordinator(
            FakeSearch({p.value: findings_payload(p.value) for p in REQUIRED_PERSONAS})
        ),
        synthesis=SynthesisLoop(FakeLLM([synthesis_payload(), verification_payload()])),
        embedder=EmbeddingService(),
        store=MemoryCheckpointStore(),
        sessions=sessions,
    )


@pytest.fixture
def sessions():
    return SessionManager()


@pytest.fixture
def engine(sessions):
    return _fake_engine(sessions)


@pytest.fixture
def client(engine, sessions):
    from rd_engine.main import app

    with patch("rd_engine.api.routes.research.get_engine", return_value=engine), patch(
        "rd_engine.api.routes.sessions.get_session_manager", return_value=sessions
    ):
        with TestClient(app) as test_client:
            yield test_client


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["timestamp"]


def test_run_research_and_read_status(client):
    response = client.post(
        "/api/research", json={"query": "quantum computing trends", "request_id": "research-api"}
    )
    assert response.status_code == 200
    data = response.json()
    assert data["request_id"] == "research-api"
    assert data["output"]["executive_summary"]
    assert data["output"]["metadata"]["iterations_used"] == 1
    assert all("embedding" not in source for source in data["output"]["sources"])

    status = client.get("/api/research/research-api")
    assert status.status_code == 200
    assert status.json()["status"] == "completed"
    assert status.json()["stages_completed"][-1] == "L4_output"


def test_run_research_rejects_empty_query(client):
    response = client.post("/api/research", json={"query": "  "})
    assert response.status_code == 400


def test_reused_request_id_conflicts(client):
    assert client.post("/api/research", json={"query": "q1", "request_id": "r1"}).status_code == 200
    response = client.post("/api/research", json={"query": "q2", "request_id": "r1"})
    assert response.status_code == 409


def test_unknown_research_status_is_404(client):
    assert client.get("/api/research/missing").status_code == 404


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (
            StageFailedError("L1_discovery", 3, AdapterStatusError("xai", "down", status_code=502)),
            503,
        ),
        (ResearchTimeoutError("research-x", 600, "L3_synthesis"), 504),
    ],
)
def test_infrastructure_failures_name_the_stage(error, status_code):
    from rd_engine.main import app

    failing = MagicMock()
    failing.run_research = AsyncMock(side_effect=error)
    with patch("rd_engine.api.routes.research.get_engine", return_value=failing):
        with TestClient(app) as test_client:
            response = test_client.post("/api/research", json={"query": "anything"})

    assert response.status_code == status_code
    assert response.json()["detail"]["stage"] == error.stage


def test_session_routes_round_trip(client):
    created = client.post("/api/sessions/s1")
    assert created.status_code == 200
    assert created.json()["message_count"] == 0

    client.post("/api/sessions/s1/messages", json={"role": "user", "content": "hi"})
    client.post("/api/sessions/s1/research", json={"request_id": "research-1"})

    info = client.get("/api/sessions/s1").json()
    assert info["message_count"] == 1
    assert info["research_ids"] == ["research-1"]

    history = client.get("/api/sessions/s1/history").json()
    assert [m["content"] for m in history["messages"]] == ["hi"]


def test_unknown_session_is_404(client):
    assert client.get("/api/sessions/nobody").status_code == 404
    assert client.get("/api/sessions/nobody/history").status_code == 404


def test_empty_message_is_rejected(client):
    response = client.post("/api/sessions/s1/messages", json={"role": "user", "content": " "})
    assert response.status_code == 400
