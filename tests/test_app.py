"""Tests for the FastAPI application endpoints."""
import pytest
from fastapi.testclient import TestClient
from pod_guard.app import app
from pod_guard.config import resolve_config
from pod_guard.guard import ModerationGuard
from pod_guard.results import ImageResult, NudityScores, VisualScores

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


class StubClassifier:
    def __init__(self, result):
        self.result = result

    def classify(self, payload, kind, enabled_categories, mime_type=None):
        return self.result


@pytest.fixture
def client(monkeypatch):
    """A client whose startup guard has no credentials and no audit file."""
    monkeypatch.setenv("MODERATION_AUDIT_LOG", "0")
    monkeypatch.delenv("SIGHTENGINE_API_USER", raising=False)
    monkeypatch.delenv("SIGHTENGINE_API_SECRET", raising=False)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def rejecting_client(client):
    """A client whose guard rejects every image for nudity."""
    result = ImageResult(scores=VisualScores(nudity=NudityScores(erotica=0.95)))
    app.state.guard = ModerationGuard(
        resolve_config({"audit_log_enabled": False}, environ={}),
        classifier=StubClassifier(result),
    )
    return client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_version(client):
    response = client.get("/version")
    assert response.status_code == 200
    assert "version" in response.json()


def test_lifespan_builds_guard(client):
    assert isinstance(app.state.guard, ModerationGuard)
    assert not app.state.guard.config.has_credentials


def test_moderate_rejects(rejecting_client):
    response = rejecting_client.post(
        "/moderate",
        files={"file": ("pic.png", PNG, "image/png")},
        data={"path": "http://localhost:3009/alice/pic.png", "method": "PUT"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["outcome"] == "REJECT"
    assert data["violations"][0]["category"] == "nudity"
    assert data["message"] == "Content rejected due to policy violations: nudity (score: 0.95)"
    assert data["bypassed"] is False


def test_moderate_bypasses_read_only_verbs(rejecting_client):
    response = rejecting_client.post(
        "/moderate",
        files={"file": ("pic.png", PNG, "image/png")},
        data={"path": "/alice/pic.png", "method": "GET"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["outcome"] == "ALLOW"
    assert data["bypassed"] is True


def test_moderate_without_credentials_allows(client):
    response = client.post(
        "/moderate",
        files={"file": ("pic.png", PNG, "image/png")},
        data={"path": "/alice/pic.png"},
    )
    assert response.status_code == 200
    assert response.json()["outcome"] == "ALLOW"


def test_moderate_file_too_large(client, monkeypatch):
    monkeypatch.setattr(app.state, "max_upload_size", 10)
    response = client.post(
        "/moderate",
        files={"file": ("pic.png", PNG, "image/png")},
        data={"path": "/alice/pic.png", "method": "POST"},
    )
    assert response.status_code == 413


def test_stats(rejecting_client):
    rejecting_client.post(
        "/moderate",
        files={"file": ("pic.png", PNG, "image/png")},
        data={"path": "/alice/pic.png", "method": "POST", "actor": "https://alice.example/#me"},
    )
    response = rejecting_client.get("/stats")
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    assert data["rejects"] == 1
