# /crm_dialer/workflows/engine.py

"""
Flow execution.

FlowExecutor walks one compiled FlowGraph for one event, following exactly one
path from the start node:

- start: advance through its first outgoing edge
- condition: evaluate the rule and take the first edge labelled with the result
- action: dispatch, then advance through the first outgoing edge
- end: stop, the run is complete

A condition without a matching edge halts the run as incomplete; that is a
normal outcome, not an error. A failed action aborts only the current run.

FlowEngine runs every active flow against each incoming event, concurrently
and in isolation from each other.
"""

import asyncio
from typing import List, Optional, Protocol, TypedDict

import structlog

from crm_dialer.errors import DispatchError, GraphError, UnsupportedActionError
from crm_dialer.models.domain import InputEvent
from crm_dialer.models.flow import FlowDefinition
from crm_dialer.utils.metrics import flow_runs_counter
from crm_dialer.workflows.actions import ActionDispatcher
from crm_dialer.workflows.conditions import evaluate
from crm_dialer.workflows.graph import FlowGraph

logger = structlog.get_logger(__name__)


class ExecutionResult(TypedDict):
    """Outcome of walking one flow graph for one event."""
    completed: bool
    reason: str
    error: Optional[str]
    path: List[str]


class FlowRunResult(ExecutionResult):
    flow_id: str
    flow_name: str


class FlowSource(Protocol):
    async def list_active_flows(self) -> List[FlowDefinition]: ...


def _result(completed: bool, reason: str, path: List[str], error: Optional[str] = None) -> ExecutionResult:
    return {"completed": completed, "reason": reason, "error": error, "path": path}


class FlowExecutor:
    def __init__(self, dispatcher: ActionDispatcher):
        self.dispatcher = dispatcher

    async def execute(self, graph: FlowGraph, event: InputEvent) -> ExecutionResult:
        path: List[str] = []
        visited = set()
        node = graph.start_node

        while node is not None:
            if node.id in visited:
                # Compiled graphs are acyclic; this only guards hand-built ones.
                return _result(False, "cycle_detected", path, f"Node '{node.id}' visited twice")
            visited.add(node.id)
            path.append(node.id)

            if node.type == "start":
                node = graph.next_node(node.id)

            elif node.type == "condition":
                matched = evaluate(node.condition, event)
                target = graph.branch_target(node.id, matched)
                if target is None:
                    return _result(False, "no_matching_branch", path)
                node = target

            elif node.type == "action":
                try:
                    await self.dispatcher.dispatch(node.action_type, node.action_parameters, event)
                except (UnsupportedActionError, DispatchError) as e:
                    return _result(False, "action_failed", path, str(e))
                node = graph.next_node(node.id)

            elif node.type == "end":
                return _result(True, "end", path)

            else:
                raise GraphError(f"Unknown node type '{node.type}'", flow_id=graph.flow_id)

        # A start or action node without an outgoing edge ends the flow normally.
        return _result(True, "no_outgoing_edge", path)


class FlowEngine:
    def __init__(self, flow_source: FlowSource, executor: FlowExecutor):
        self.flow_source = flow_source
        self.executor = executor

    async def process_event(self, event: InputEvent) -> List[FlowRunResult]:
        """Runs every active flow against the event; one flow's failure never affects another."""
        flows = await self.flow_source.list_active_flows()
        if not flows:
            logger.debug("no_active_flows", lead_id=event.lead_id)
            return []
        return list(await asyncio.gather(*(self.run_flow(flow, event) for flow in flows)))

    async def run_flow(self, flow: FlowDefinition, event: InputEvent) -> FlowRunResult:
        log = logger.bind(flow_id=flow.id, flow_name=flow.name, lead_id=event.lead_id)
        try:
            graph = FlowGraph.from_blob(flow.flow_data, flow_id=flow.id)
            unreachable = graph.unreachable_nodes()
            if unreachable:
                log.warning("flow_has_unreachable_nodes", node_ids=list(unreachable))
            result = await self.executor.execute(graph, event)
        except GraphError as e:
            flow_runs_counter.labels(outcome="invalid").inc()
            log.warning("flow_skipped_invalid_graph", error=str(e))
            return self._run_result(flow, _result(False, "invalid_graph", [], str(e)))
        except Exception as e:
            flow_runs_counter.labels(outcome="error").inc()
            log.error("flow_execution_crashed", error=str(e), exc_info=True)
            return self._run_result(flow, _result(False, "internal_error", [], str(e)))

        if result["error"]:
            flow_runs_counter.labels(outcome="failed").inc()
            failed_node = graph.nodes[result["path"][-1]] if result["path"] else None
            log.error(
                "flow_execution_failed",
                reason=result["reason"],
                error=result["error"],
                node_id=failed_node.id if failed_node else None,
                action_type=failed_node.action_type if failed_node else None,
                path=result["path"],
            )
        elif result["completed"]:
            flow_runs_counter.labels(outcome="completed").inc()
            log.info("flow_execution_completed", path=result["path"])
        else:
            flow_runs_counter.labels(outcome="incomplete").inc()
            log.info("flow_execution_incomplete", reason=result["reason"], path=result["path"])
        return self._run_result(flow, result)

    @staticmethod
    def _run_result(flow: FlowDefinition, result: ExecutionResult) -> FlowRunResult:
        return {**result, "flow_id": flow.id, "flow_name": flow.name}
