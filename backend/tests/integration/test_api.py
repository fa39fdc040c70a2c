# backend/tests/integration/test_api.py
from unittest.mock import AsyncMock

from crm_dialer.config.settings import settings


def test_root_reports_service(test_client):
    response = test_client.get("/")
    assert response.status_code == 200
    body = response.json()
    assert body["service"] == settings.service_name
    assert body["environment"] == "test"


def test_health_and_liveness(test_client):
    assert test_client.get("/health").json()["status"] == "healthy"
    assert test_client.get("/health/live").json() == {"status": "alive"}


def test_readiness_when_dependencies_answer(test_client, mocker):
    state = test_client.app.state
    mocker.patch.object(state.bus, "ping", new_callable=AsyncMock, return_value=True)
    mocker.patch.object(state.flow_repository, "ping", new_callable=AsyncMock, return_value=True)

    response = test_client.get("/health/ready")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ready"
    assert body["dispatch_queue"] == {"depth": 0, "in_flight": 0}
    assert body["lead_updates"]["state"] == "idle"


def test_readiness_fails_when_bus_is_down(test_client, mocker):
    state = test_client.app.state
    mocker.patch.object(state.bus, "ping", new_callable=AsyncMock, side_effect=ConnectionError("redis down"))
    mocker.patch.object(state.flow_repository, "ping", new_callable=AsyncMock, return_value=True)

    response = test_client.get("/health/ready")

    assert response.status_code == 503
    assert "redis down" in response.json()["detail"]


def test_metrics_endpoint_exposes_pipeline_metrics(test_client):
    response = test_client.get("/metrics")
    assert response.status_code == 200
    assert "text/plain" in response.headers["content-type"]
    assert "dispatch_queue_depth" in response.text
