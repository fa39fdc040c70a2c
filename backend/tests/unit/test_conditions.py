# backend/tests/unit/test_conditions.py
import pytest

from crm_dialer.models.domain import InputEvent
from crm_dialer.workflows.conditions import canonical_text, evaluate, resolve_key


def rule(operator, value, field="status_id", field_type=None):
    data = {"field": field, "operator": operator, "value": value}
    if field_type:
        data["fieldType"] = field_type
    return data


@pytest.mark.parametrize("actual, expected", [
    (42, "42"),
    ("42", 42),
    (42.0, "42"),
    (True, "true"),
    ("Hot", "Hot"),
])
def test_equals_uses_canonical_text(actual, expected):
    assert evaluate(rule("equals", expected), {"status_id": actual}) is True


def test_equals_mismatch_and_not_equals():
    event = {"status_id": 5}
    assert evaluate(rule("equals", "6"), event) is False
    assert evaluate(rule("not_equals", "6"), event) is True
    assert evaluate(rule("not_equals", 5), event) is False


@pytest.mark.parametrize("operator", ["equals", "not_equals", "greater_than", "less_than", "contains"])
def test_missing_field_is_false_for_every_operator(operator):
    assert evaluate(rule(operator, "anything", field="budget"), {"status_id": 1}) is False


def test_null_value_counts_as_missing():
    assert evaluate(rule("not_equals", "x", field="city"), {"city": None}) is False


def test_numeric_comparisons():
    event = {"budget": "1500.5"}
    assert evaluate(rule("greater_than", 1000, field="budget"), event) is True
    assert evaluate(rule("less_than", "2000", field="budget"), event) is True
    assert evaluate(rule("less_than", 1000, field="budget"), event) is False


def test_numeric_comparison_with_non_numeric_operand_is_false():
    assert evaluate(rule("greater_than", 10, field="city"), {"city": "Moscow"}) is False
    assert evaluate(rule("less_than", "ten", field="budget"), {"budget": 5}) is False
    assert evaluate(rule("greater_than", 0, field="flag"), {"flag": True}) is False


def test_contains_is_case_insensitive():
    event = {"source": "Website Form"}
    assert evaluate(rule("contains", "website", field="source"), event) is True
    assert evaluate(rule("contains", "FORM", field="source"), event) is True
    assert evaluate(rule("contains", "phone", field="source"), event) is False


def test_unknown_operator_is_false():
    assert evaluate(rule("starts_with", "5"), {"status_id": 5}) is False


@pytest.mark.parametrize("field_type, key", [
    ("pipeline", "pipeline_id"),
    ("status", "status_id"),
    ("bucket", "bucket_id"),
    ("scheduler", "scheduler_id"),
    ("scheduler_step", "scheduler_step"),
    ("dial_attempts", "dial_attempts"),
])
def test_field_type_maps_to_event_key(field_type, key):
    assert resolve_key({"field": "ignored", "fieldType": field_type}) == key
    assert evaluate(rule("equals", 7, field="ignored", field_type=field_type), {key: 7}) is True


def test_custom_field_type_uses_field_name():
    event = InputEvent.from_payload({"lead_id": 1, "custom_fields": {"field_555": "VIP"}})
    assert evaluate(rule("equals", "VIP", field="field_555", field_type="amocrm_field"), event) is True


def test_canonical_text_forms():
    assert canonical_text(False) == "false"
    assert canonical_text(7.0) == "7"
    assert canonical_text(7.25) == "7.25"
    assert canonical_text("abc") == "abc"
