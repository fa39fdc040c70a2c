# /crm_dialer/workflows/validator.py

"""
Pure structural validation for flow graphs.

Each check returns a ValidationResult instead of raising so callers can
collect or report problems; `ensure_valid` is the raising entry point used
when a graph is compiled for execution.

All functions are:
- Pure (no side effects)
- Deterministic (same input = same output)
- No database access
- No logging
"""

from typing import Dict, List, Optional, TypedDict

from crm_dialer.errors import GraphError
from crm_dialer.models.flow import FlowConfig, FlowEdge
from crm_dialer.workflows.definitions import DEFAULT_BRANCH


class ValidationResult(TypedDict):
    """Result of a validation check."""
    is_valid: bool
    error_code: Optional[str]
    message: Optional[str]


VALID: ValidationResult = {"is_valid": True, "error_code": None, "message": None}


def _invalid(error_code: str, message: str) -> ValidationResult:
    return {"is_valid": False, "error_code": error_code, "message": message}


def validate_unique_ids(config: FlowConfig) -> ValidationResult:
    seen = set()
    for node in config.nodes:
        if node.id in seen:
            return _invalid("DUPLICATE_NODE", f"Node id '{node.id}' is declared more than once")
        seen.add(node.id)
    return VALID


def validate_start_node(config: FlowConfig) -> ValidationResult:
    """Exactly one node of type `start` must exist."""
    starts = [node.id for node in config.nodes if node.type == "start"]
    if not starts:
        return _invalid("MISSING_START", "Flow has no start node")
    if len(starts) > 1:
        return _invalid("MULTIPLE_START", f"Flow has {len(starts)} start nodes: {', '.join(starts)}")
    return VALID


def validate_edges(config: FlowConfig) -> ValidationResult:
    """
    Edges must reference existing nodes, and a condition node may have at
    most one outgoing edge per branch value.
    """
    node_types = {node.id: node.type for node in config.nodes}
    branches_seen: Dict[str, set] = {}

    for edge in config.edges:
        for endpoint in (edge.source, edge.target):
            if endpoint not in node_types:
                return _invalid(
                    "DANGLING_EDGE",
                    f"Edge '{edge.id or edge.source + '->' + edge.target}' references unknown node '{endpoint}'"
                )
        if node_types[edge.source] == "condition" and edge.branch != DEFAULT_BRANCH:
            seen = branches_seen.setdefault(edge.source, set())
            if edge.branch in seen:
                return _invalid(
                    "DUPLICATE_BRANCH",
                    f"Condition node '{edge.source}' has more than one '{edge.branch}' edge"
                )
            seen.add(edge.branch)
    return VALID


def find_cycle(node_ids: List[str], outgoing: Dict[str, List[FlowEdge]]) -> Optional[List[str]]:
    """
    Iterative depth-first search over every node.

    Returns the node ids forming the first cycle found, or None.
    """
    visiting, visited = set(), set()

    for root in node_ids:
        if root in visited:
            continue
        path: List[str] = []
        stack = [(root, iter(outgoing.get(root, ())))]
        visiting.add(root)
        path.append(root)
        while stack:
            node_id, edges = stack[-1]
            edge = next(edges, None)
            if edge is None:
                stack.pop()
                path.pop()
                visiting.discard(node_id)
                visited.add(node_id)
                continue
            target = edge.target
            if target in visiting:
                return path[path.index(target):] + [target]
            if target not in visited:
                visiting.add(target)
                path.append(target)
                stack.append((target, iter(outgoing.get(target, ()))))
    return None


def validate_acyclic(config: FlowConfig) -> ValidationResult:
    outgoing: Dict[str, List[FlowEdge]] = {}
    for edge in config.edges:
        outgoing.setdefault(edge.source, []).append(edge)
    cycle = find_cycle([node.id for node in config.nodes], outgoing)
    if cycle:
        return _invalid("CYCLE", f"Flow contains a cycle: {' -> '.join(cycle)}")
    return VALID


def validate_flow_config(config: FlowConfig) -> ValidationResult:
    """Runs every structural check, returning the first failure."""
    for check in (validate_unique_ids, validate_start_node, validate_edges, validate_acyclic):
        result = check(config)
        if not result["is_valid"]:
            return result
    return VALID


def ensure_valid(config: FlowConfig, flow_id: Optional[str] = None) -> None:
    result = validate_flow_config(config)
    if not result["is_valid"]:
        raise GraphError(f"[{result['error_code']}] {result['message']}", flow_id=flow_id)
