# backend/tests/unit/test_models.py
import pytest
from bson import ObjectId
from pydantic import ValidationError

from crm_dialer.models.domain import InputEvent, LeadUpdate, as_int
from crm_dialer.models.flow import FlowDefinition, FlowEdge


def test_input_event_flattens_custom_fields_and_contact():
    event = InputEvent.from_payload({
        "lead_id": "42",
        "status_id": 5,
        "tags": ["hot"],
        "custom_fields": {"city": "Riga", "status_id": 99, "nested": {"a": 1}},
        "contact": {"id": 9, "phone": "+1555", "email": None},
    })

    assert event.lead_id == 42
    assert event["status_id"] == 5
    assert event["city"] == "Riga"
    assert event["contact_phone"] == "+1555"
    assert "tags" not in event
    assert "nested" not in event
    assert "contact_email" not in event
    assert dict(event.custom_fields) == {"city": "Riga", "status_id": 99}


def test_input_event_is_read_only():
    event = InputEvent.from_payload({"lead_id": 1})
    with pytest.raises(TypeError):
        event["lead_id"] = 2


@pytest.mark.parametrize("raw, expected", [
    (7, 7), ("7", 7), (" 8 ", 8), (9.0, 9), (9.5, None), ("abc", None), (True, None), (None, None),
])
def test_as_int(raw, expected):
    assert as_int(raw) == expected


def test_lead_update_rejects_non_positive_id():
    with pytest.raises(ValidationError):
        LeadUpdate(lead_id=0)


def test_lead_update_payload_shape():
    update = LeadUpdate(lead_id=3, fields={"101": "x", "utm": "ads"}, status_id=4)
    payload = update.to_crm_payload()

    assert payload["id"] == 3
    assert payload["status_id"] == 4
    assert "pipeline_id" not in payload
    assert payload["custom_fields_values"] == [
        {"field_id": 101, "values": [{"value": "x"}]},
        {"field_id": "utm", "values": [{"value": "ads"}]},
    ]
    assert isinstance(payload["updated_at"], int)


def test_flow_definition_accepts_mongo_document():
    oid = ObjectId()
    flow = FlowDefinition.model_validate({"_id": oid, "name": "Hot", "is_active": True, "flow_data": "{}"})
    assert flow.id == str(oid)


@pytest.mark.parametrize("edge, branch", [
    ({"source": "a", "target": "b", "sourceHandle": "TRUE"}, "true"),
    ({"source": "a", "target": "b", "branch": "false"}, "false"),
    ({"source": "a", "target": "b"}, "default"),
    ({"source": "a", "target": "b", "type": "default", "sourceHandle": "true"}, "true"),
    ({"source": "a", "target": "b", "type": "smoothstep", "sourceHandle": "False"}, "false"),
    ({"source": "a", "target": "b", "type": "default", "sourceHandle": "out-1"}, "default"),
])
def test_edge_branch_normalisation(edge, branch):
    assert FlowEdge.model_validate(edge).branch == branch
