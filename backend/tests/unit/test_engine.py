# backend/tests/unit/test_engine.py
import pytest
from unittest.mock import AsyncMock

from crm_dialer.errors import DispatchError, UnsupportedActionError
from crm_dialer.models.flow import FlowDefinition
from crm_dialer.workflows.actions import ActionDispatcher
from crm_dialer.workflows.engine import FlowEngine, FlowExecutor
from crm_dialer.workflows.graph import FlowGraph


def node(node_id, node_type, **data):
    return {"id": node_id, "type": node_type, "data": data}


def flow(flow_id, blob, name=None):
    return FlowDefinition(_id=flow_id, name=name or flow_id, is_active=True, flow_data=blob)


@pytest.fixture
def batch_processor():
    return AsyncMock()


@pytest.fixture
def executor(recording_bus, batch_processor):
    return FlowExecutor(ActionDispatcher(recording_bus, batch_processor))


@pytest.mark.asyncio
async def test_status_condition_sends_lead_to_dialer_bucket(executor, recording_bus, dialer_flow, make_event):
    graph = FlowGraph.from_blob(dialer_flow, flow_id="f1")

    result = await executor.execute(graph, make_event(lead_id=123, status_id=5))

    assert result["completed"] is True
    assert result["error"] is None
    assert result["path"] == ["start-1", "cond-1", "action-1", "end-1"]
    assert len(recording_bus.published) == 1
    subject, payload = recording_bus.published[0]
    assert subject == "dialer.send_to_dialer"
    assert payload["action_type"] == "send_to_dialer"
    assert payload["entity_ids"] == [123]
    assert payload["parameters"]["bucket_id"] == "B"


@pytest.mark.asyncio
async def test_unmatched_branch_halts_without_error(executor, recording_bus, dialer_flow, make_event):
    graph = FlowGraph.from_blob(dialer_flow)

    result = await executor.execute(graph, make_event(lead_id=123, status_id=6))

    assert result["completed"] is False
    assert result["reason"] == "no_matching_branch"
    assert result["error"] is None
    assert recording_bus.published == []


@pytest.mark.asyncio
async def test_bezier_edge_with_true_handle_routes_condition(executor, recording_bus, dialer_flow, make_event):
    dialer_flow["edges"][1]["type"] = "default"
    graph = FlowGraph.from_blob(dialer_flow)

    result = await executor.execute(graph, make_event(lead_id=123, status_id=5))

    assert result["reason"] == "end"
    assert [subject for subject, _ in recording_bus.published] == ["dialer.send_to_dialer"]


@pytest.mark.asyncio
async def test_missing_field_takes_false_branch(executor, recording_bus, make_event):
    graph = FlowGraph.from_blob({
        "nodes": [
            node("s", "start"),
            node("c", "condition", field="city", operator="not_equals", value="Paris"),
            node("note", "action", actionType="add_note", actionData={"text": "no city"}),
            node("e", "end"),
        ],
        "edges": [
            {"source": "s", "target": "c"},
            {"source": "c", "target": "note", "branch": "false"},
            {"source": "note", "target": "e"},
        ],
    })

    result = await executor.execute(graph, make_event(lead_id=9))

    assert result["completed"] is True
    assert recording_bus.published[0][0] == "crm.add_note"


@pytest.mark.asyncio
async def test_action_without_outgoing_edge_completes(executor, batch_processor, make_event):
    graph = FlowGraph.from_blob({
        "nodes": [node("s", "start"), node("u", "action", actionType="update_lead", actionData={"status_id": 42})],
        "edges": [{"source": "s", "target": "u"}],
    })

    result = await executor.execute(graph, make_event(lead_id=7))

    assert result["completed"] is True
    assert result["reason"] == "no_outgoing_edge"
    update = batch_processor.add_update.await_args.args[0]
    assert update.lead_id == 7
    assert update.status_id == 42


@pytest.mark.asyncio
async def test_start_without_edges_completes(executor, make_event):
    graph = FlowGraph.from_blob({"nodes": [node("s", "start")], "edges": []})
    result = await executor.execute(graph, make_event(lead_id=1))
    assert result["completed"] is True
    assert result["path"] == ["s"]


@pytest.mark.asyncio
async def test_unknown_action_aborts_the_flow(executor, recording_bus, make_event):
    graph = FlowGraph.from_blob({
        "nodes": [
            node("s", "start"),
            node("x", "action", actionType="send_sms"),
            node("n", "action", actionType="add_note", actionData={"text": "never"}),
        ],
        "edges": [{"source": "s", "target": "x"}, {"source": "x", "target": "n"}],
    })

    result = await executor.execute(graph, make_event(lead_id=1))

    assert result["completed"] is False
    assert result["reason"] == "action_failed"
    assert "send_sms" in result["error"]
    assert recording_bus.published == []


@pytest.mark.asyncio
@pytest.mark.parametrize("lead_id", [0, -5])
async def test_update_for_non_positive_lead_fails_the_action(recording_bus, batch_processor, make_event, lead_id):
    blob = {
        "nodes": [node("s", "start"), node("u", "action", actionType="update_lead", actionData={"status_id": 42})],
        "edges": [{"source": "s", "target": "u"}],
    }
    engine = FlowEngine(AsyncMock(), FlowExecutor(ActionDispatcher(recording_bus, batch_processor)))
    engine.flow_source.list_active_flows.return_value = [flow("f-zero", blob)]

    (result,) = await engine.process_event(make_event(lead_id=lead_id))

    assert result["completed"] is False
    assert result["reason"] == "action_failed"
    assert "positive lead_id" in result["error"]
    assert result["path"] == ["s", "u"]
    batch_processor.add_update.assert_not_awaited()


@pytest.mark.asyncio
async def test_engine_runs_every_active_flow_in_isolation(dialer_flow, recording_bus, batch_processor, make_event):
    broken = {"nodes": [node("e", "end")], "edges": []}
    failing = {
        "nodes": [node("s", "start"), node("x", "action", actionType="teleport")],
        "edges": [{"source": "s", "target": "x"}],
    }
    source = AsyncMock()
    source.list_active_flows.return_value = [flow("broken", broken), flow("failing", failing), flow("dialer", dialer_flow)]
    engine = FlowEngine(source, FlowExecutor(ActionDispatcher(recording_bus, batch_processor)))

    results = await engine.process_event(make_event(lead_id=123, status_id=5))

    by_id = {result["flow_id"]: result for result in results}
    assert by_id["broken"]["reason"] == "invalid_graph"
    assert by_id["failing"]["reason"] == "action_failed"
    assert by_id["dialer"]["completed"] is True
    assert [subject for subject, _ in recording_bus.published] == ["dialer.send_to_dialer"]


@pytest.mark.asyncio
async def test_engine_isolates_unexpected_exceptions(dialer_flow, make_event, mocker):
    dispatcher = mocker.Mock()
    dispatcher.dispatch = AsyncMock(side_effect=RuntimeError("boom"))
    source = AsyncMock()
    source.list_active_flows.return_value = [flow("a", dialer_flow), flow("b", dialer_flow)]
    engine = FlowEngine(source, FlowExecutor(dispatcher))

    results = await engine.process_event(make_event(lead_id=1, status_id=5))

    assert [result["reason"] for result in results] == ["internal_error", "internal_error"]
    assert dispatcher.dispatch.await_count == 2


@pytest.mark.asyncio
async def test_engine_with_no_active_flows_returns_empty(make_event):
    source = AsyncMock()
    source.list_active_flows.return_value = []
    engine = FlowEngine(source, FlowExecutor(AsyncMock()))
    assert await engine.process_event(make_event(lead_id=1)) == []


@pytest.mark.asyncio
async def test_dispatch_error_is_reported_in_result(dialer_flow, make_event):
    dispatcher = AsyncMock()
    dispatcher.dispatch.side_effect = DispatchError("bus down", action_type="send_to_dialer")
    result = await FlowExecutor(dispatcher).execute(FlowGraph.from_blob(dialer_flow), make_event(lead_id=1, status_id=5))
    assert result == {
        "completed": False,
        "reason": "action_failed",
        "error": "bus down",
        "path": ["start-1", "cond-1", "action-1"],
    }


def test_unsupported_action_error_message():
    assert "fly" in str(UnsupportedActionError("fly"))
