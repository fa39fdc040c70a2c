# /crm_dialer/workflows/graph.py

"""
Compiled, immutable flow graph.

Nodes live in an arena keyed by id and edges are kept as per-node adjacency
lists in declaration order, so a single FlowGraph can be shared by any number
of concurrent executions.
"""

from types import MappingProxyType
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from crm_dialer.errors import GraphError
from crm_dialer.models.flow import FlowConfig, FlowEdge, FlowNode
from crm_dialer.workflows.definitions import FALSE_BRANCH, TRUE_BRANCH
from crm_dialer.workflows.validator import ensure_valid

GraphBlob = Union[str, bytes, bytearray, Dict[str, Any], FlowConfig]


class FlowGraph:
    __slots__ = ("flow_id", "nodes", "outgoing", "start_node")

    def __init__(self, config: FlowConfig, flow_id: Optional[str] = None):
        ensure_valid(config, flow_id=flow_id)

        adjacency: Dict[str, List[FlowEdge]] = {node.id: [] for node in config.nodes}
        for edge in config.edges:
            adjacency[edge.source].append(edge)

        self.flow_id = flow_id
        self.nodes: MappingProxyType = MappingProxyType({node.id: node for node in config.nodes})
        self.outgoing: MappingProxyType = MappingProxyType(
            {node_id: tuple(edges) for node_id, edges in adjacency.items()}
        )
        self.start_node: FlowNode = next(node for node in config.nodes if node.type == "start")

    @classmethod
    def from_blob(cls, blob: GraphBlob, flow_id: Optional[str] = None) -> "FlowGraph":
        """Parses a stored `{nodes, edges}` blob (JSON text or mapping) and validates it."""
        if blob is None:
            raise GraphError("Flow has no graph data", flow_id=flow_id)
        if isinstance(blob, FlowConfig):
            return cls(blob, flow_id=flow_id)
        try:
            if isinstance(blob, (str, bytes, bytearray)):
                config = FlowConfig.model_validate_json(blob)
            else:
                config = FlowConfig.model_validate(blob)
        except ValidationError as e:
            raise GraphError(f"Invalid flow graph: {e.error_count()} validation error(s): {_first_error(e)}", flow_id=flow_id) from e
        except (TypeError, ValueError) as e:
            raise GraphError(f"Invalid flow graph: {e}", flow_id=flow_id) from e
        return cls(config, flow_id=flow_id)

    def node(self, node_id: str) -> FlowNode:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise GraphError(f"Unknown node '{node_id}'", flow_id=self.flow_id) from None

    def next_node(self, node_id: str) -> Optional[FlowNode]:
        """Target of the first outgoing edge, for start and action nodes."""
        edges = self.outgoing.get(node_id, ())
        if not edges:
            return None
        return self.nodes[edges[0].target]

    def branch_target(self, node_id: str, result: bool) -> Optional[FlowNode]:
        """Target of the first edge whose branch matches `result`, if any."""
        wanted = TRUE_BRANCH if result else FALSE_BRANCH
        for edge in self.outgoing.get(node_id, ()):
            if edge.branch == wanted:
                return self.nodes[edge.target]
        return None

    def unreachable_nodes(self) -> Tuple[str, ...]:
        """Nodes that no traversal from the start node can ever visit."""
        seen = {self.start_node.id}
        stack = [self.start_node.id]
        while stack:
            for edge in self.outgoing.get(stack.pop(), ()):
                if edge.target not in seen:
                    seen.add(edge.target)
                    stack.append(edge.target)
        return tuple(node_id for node_id in self.nodes if node_id not in seen)

    def __len__(self) -> int:
        return len(self.nodes)

    def __repr__(self) -> str:
        edge_count = sum(len(edges) for edges in self.outgoing.values())
        return f"FlowGraph(flow_id={self.flow_id!r}, nodes={len(self.nodes)}, edges={edge_count})"


def _first_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
