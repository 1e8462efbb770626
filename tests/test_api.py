"""
API Route Tests
---------------
End-to-end tests for the drift, alert and audit routes through the FastAPI
application, including the lifespan that starts the monitoring service.
"""

import pytest
from fastapi.testclient import TestClient

from driftguard.main import create_app

API = "/api"


@pytest.fixture
def client(settings, tmp_path):
    """Client running the full application lifespan against a file database"""
    settings.DATABASE_URL = f"sqlite:///{tmp_path / 'driftguard.db'}"
    settings.DRIFT_SCAN_INTERVAL = 3600
    settings.CORRELATION_SWEEP_INTERVAL = 3600
    settings.AUDIT_MAINTENANCE_INTERVAL = 3600
    with TestClient(create_app(settings)) as client:
        yield client


def alert_body(**overrides):
    body = {
        "severity": "high",
        "category": "compliance_violation",
        "title": "Unexpected admin role grant",
        "description": "Role assignment outside change window",
        "source": "api_test",
        "environment": "staging",
        "affected_resources": ["role:admin"],
        "metadata": {"detection_method": "manual", "risk_score": 60},
    }
    body.update(overrides)
    return body


# ========== HEALTH ========== #

def test_health_check(client):
    """Health reports ok once the monitoring service runs"""
    # Act
    response = client.get(f"{API}/health")

    # Assert
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["environment"] == "test"


def test_routes_unavailable_without_monitoring(settings):
    """Without the lifespan the monitoring dependencies answer 503"""
    # Arrange
    client = TestClient(create_app(settings))

    # Act
    response = client.get(f"{API}/audit/verify")

    # Assert
    assert response.status_code == 503


# ========== DRIFT ROUTES ========== #

def test_baseline_lifecycle(client):
    """Baselines can be created, fetched and listed"""
    # Act
    created = client.post(
        f"{API}/drift/baselines",
        json={"environment": "staging", "author": "alice", "description": "Release 2.0"},
    )
    baseline_id = created.json()["id"]
    fetched = client.get(f"{API}/drift/baselines/{baseline_id}")
    listed = client.get(f"{API}/drift/baselines", params={"environment": "staging"})

    # Assert
    assert created.status_code == 201
    assert fetched.status_code == 200
    assert fetched.json()["author"] == "alice"
    assert [b["id"] for b in listed.json()] == [baseline_id]


def test_unknown_baseline(client):
    """Unknown baseline ids answer 404"""
    response = client.get(f"{API}/drift/baselines/baseline_missing")
    assert response.status_code == 404


def test_detect_drift(client):
    """Detection compares against the latest baseline of the environment"""
    # Arrange
    baseline_id = client.post(
        f"{API}/drift/baselines", json={"environment": "staging", "author": "alice"}
    ).json()["id"]

    # Act
    response = client.post(f"{API}/drift/detect", json={"environment": "staging"})

    # Assert
    assert response.status_code == 200
    assert response.json()["baseline_id"] == baseline_id
    assert response.json()["environment"] == "staging"


def test_detect_drift_without_baseline(client):
    """Detection for an environment without a baseline answers 404"""
    response = client.post(f"{API}/drift/detect", json={"environment": "qa"})
    assert response.status_code == 404


def test_drift_report(client):
    """The report is served as Markdown text"""
    response = client.get(f"{API}/drift/report")
    assert response.status_code == 200
    assert response.text.startswith("# Configuration Drift Report")


def test_file_change_notification(client):
    """File change notifications are accepted and scheduled"""
    # Act
    response = client.post(f"{API}/drift/file-change", json={"path": ".env"})

    # Assert
    assert response.status_code == 202
    assert response.json() == {"path": ".env", "scheduled": True}


# ========== ALERT ROUTES ========== #

def test_alert_lifecycle(client):
    """Alerts can be created, read and moved through their status flow"""
    # Arrange
    alert_id = client.post(f"{API}/alerts", json=alert_body()).json()["id"]

    # Act
    fetched = client.get(f"{API}/alerts/{alert_id}")
    resolved = client.post(f"{API}/alerts/{alert_id}/status", json={"status": "resolved", "actor": "bob"})
    reopened = client.post(f"{API}/alerts/{alert_id}/status", json={"status": "open"})

    # Assert
    assert fetched.status_code == 200
    assert fetched.json()["status"] == "open"
    assert resolved.status_code == 200
    assert resolved.json()["status"] == "resolved"
    assert reopened.status_code == 409


def test_unknown_alert(client):
    """Unknown alert ids answer 404"""
    assert client.get(f"{API}/alerts/alert_missing").status_code == 404


def test_alert_queries_and_export(client):
    """Alerts can be filtered and exported; unknown formats are rejected"""
    # Arrange
    client.post(f"{API}/alerts", json=alert_body())

    # Act
    listed = client.get(f"{API}/alerts", params={"category": "compliance_violation"})
    exported = client.get(f"{API}/alerts/export", params={"format": "csv"})
    rejected = client.get(f"{API}/alerts/export", params={"format": "xml"})

    # Assert
    assert len(listed.json()) == 1
    assert exported.status_code == 200
    assert "Unexpected admin role grant" in exported.text
    assert rejected.status_code == 400


# ========== AUDIT ROUTES ========== #

def test_audit_trail(client):
    """Alert creation shows up in the audit entries and the chain verifies"""
    # Arrange
    alert_id = client.post(f"{API}/alerts", json=alert_body()).json()["id"]

    # Act
    entries = client.get(f"{API}/audit/entries", params={"event_type": "alert.triggered"})
    verified = client.get(f"{API}/audit/verify")

    # Assert
    assert alert_id in [e["target"]["identifier"] for e in entries.json()]
    assert verified.json()["valid"] is True


def test_compliance_report_validation(client):
    """Unsupported standards and inverted ranges are rejected"""
    # Arrange
    window = {"environment": "staging", "start": "2025-03-01T00:00:00", "end": "2025-03-31T00:00:00"}

    # Act
    unsupported = client.post(f"{API}/audit/compliance-report", json={**window, "standard": "FEDRAMP"})
    inverted = client.post(
        f"{API}/audit/compliance-report",
        json={**window, "standard": "SOC2", "start": window["end"], "end": window["start"]},
    )
    accepted = client.post(f"{API}/audit/compliance-report", json={**window, "standard": "SOC2"})

    # Assert
    assert unsupported.status_code == 400
    assert inverted.status_code == 400
    assert accepted.status_code == 200
    assert accepted.json()["standard"] == "SOC2"
