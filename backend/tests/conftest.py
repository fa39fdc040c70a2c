import copy
import os

import pytest
from fastapi.testclient import TestClient
from dotenv import load_dotenv
from unittest.mock import AsyncMock

# Load the test environment FIRST, before any application imports, so the
# module-level settings object is built from it.
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), "..", ".env.test"))

from crm_dialer.main import app  # noqa: E402
from crm_dialer.models.domain import InputEvent  # noqa: E402


# start -> condition(status_id equals 5) --true--> action(send_to_dialer, bucket B) -> end
DIALER_FLOW = {
    "nodes": [
        {"id": "start-1", "type": "start", "position": {"x": 0, "y": 0}, "data": {"label": "Start"}},
        {
            "id": "cond-1",
            "type": "condition",
            "data": {"field": "status_id", "fieldType": "status", "operator": "equals", "value": "5"},
        },
        {
            "id": "action-1",
            "type": "action",
            "data": {
                "actionType": "send_to_dialer",
                "actionData": {"scheduler_id": "sched-1", "campaign_id": "camp-1", "bucket_id": "B"},
            },
        },
        {"id": "end-1", "type": "end", "data": {}},
    ],
    "edges": [
        {"id": "e1", "source": "start-1", "target": "cond-1"},
        {"id": "e2", "source": "cond-1", "target": "action-1", "sourceHandle": "true"},
        {"id": "e3", "source": "action-1", "target": "end-1"},
    ],
}


class RecordingBus:
    """In-memory stand-in for the message bus that records every publish."""

    def __init__(self):
        self.published = []

    async def publish(self, subject, payload):
        self.published.append((subject, payload))
        return 1


@pytest.fixture
def dialer_flow():
    return copy.deepcopy(DIALER_FLOW)


@pytest.fixture
def recording_bus():
    return RecordingBus()


@pytest.fixture
def make_event():
    def _make(**fields):
        return InputEvent.from_payload(fields)
    return _make


@pytest.fixture(scope="function")
def test_client(mocker):
    """
    Provides a TestClient for API integration tests.
    It prevents the bus subscriber from connecting to Redis.
    """
    mocker.patch("crm_dialer.workers.event_listener.EventListener.start_workers", new_callable=AsyncMock)
    mocker.patch("crm_dialer.workers.event_listener.EventListener.stop_workers", new_callable=AsyncMock)

    # The app's lifespan (startup/shutdown events) is managed by the TestClient
    with TestClient(app) as client:
        yield client
