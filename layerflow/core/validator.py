"""Static validation of workflow graphs.

Runs synchronously when a definition is activated. Violations block the
transition to ``active`` but never block saving a draft; only unparseable
configs and unregistered kinds are rejected at save time
(see :func:`check_savable`).
"""

from __future__ import annotations

import networkx as nx
from pydantic import BaseModel, Field

from layerflow.core.behaviors import BehaviorRegistry
from layerflow.core.graph_schema import (
    BehaviorConfig,
    NodeCategory,
    WorkflowGraph,
)

# Limit cycle enumeration to prevent DoS on complex graphs
MAX_CYCLES_TO_REPORT = 100


class Violation(BaseModel):
    """A single validation failure."""

    code: str
    message: str
    node_id: str | None = None
    edge_id: str | None = None


class ValidationResult(BaseModel):
    ok: bool
    violations: list[Violation] = Field(default_factory=list)

    def messages(self) -> list[str]:
        return [v.message for v in self.violations]


def check_savable(
    graph: WorkflowGraph, registry: BehaviorRegistry, max_handler_timeout: float | None = None
) -> list[Violation]:
    """Checks that block even a draft save.

    Every action kind must be registered with valid params, and a node's
    handler timeout must end before the worker lease does.
    """
    violations = []
    for node in graph.nodes:
        if node.category != NodeCategory.ACTION:
            continue
        if node.kind not in registry:
            violations.append(
                Violation(
                    code="unregistered_kind",
                    message=f"Node '{node.id}': no behavior registered for kind '{node.kind}'",
                    node_id=node.id,
                )
            )
            continue
        if isinstance(node.config, BehaviorConfig):
            timeout = node.config.timeout_seconds
            if max_handler_timeout and timeout and timeout >= max_handler_timeout:
                violations.append(
                    Violation(
                        code="timeout_exceeds_lease",
                        message=(
                            f"Node '{node.id}': timeout_seconds ({timeout}) must be shorter "
                            f"than the worker lease ({max_handler_timeout}s)"
                        ),
                        node_id=node.id,
                    )
                )
            for error in registry.check_params(node.kind, node.config.params):
                violations.append(
                    Violation(
                        code="invalid_params",
                        message=f"Node '{node.id}': invalid params ({error})",
                        node_id=node.id,
                    )
                )
    return violations


class GraphValidator:
    """Structural checks a graph must pass before activation."""

    def __init__(self, registry: BehaviorRegistry, max_handler_timeout: float | None = None):
        self.registry = registry
        self.max_handler_timeout = max_handler_timeout

    def validate(self, graph: WorkflowGraph) -> ValidationResult:
        violations: list[Violation] = []

        def add(code: str, message: str, node_id: str | None = None, edge_id: str | None = None):
            violations.append(Violation(code=code, message=message, node_id=node_id, edge_id=edge_id))

        # Duplicate ids would corrupt step identity
        nodes = {}
        for node in graph.nodes:
            if node.id in nodes:
                add("duplicate_node", f"Duplicate node ID: '{node.id}'", node_id=node.id)
            nodes[node.id] = node

        seen_edge_ids = set()
        for edge in graph.edges:
            if edge.id in seen_edge_ids:
                add("duplicate_edge", f"Duplicate edge ID: '{edge.id}'", edge_id=edge.id)
            seen_edge_ids.add(edge.id)

        # Edge endpoints and handles
        valid_edges = []
        for edge in graph.edges:
            source = nodes.get(edge.source_node_id)
            target = nodes.get(edge.target_node_id)
            if source is None:
                add(
                    "unknown_node",
                    f"Edge {edge.id}: source '{edge.source_node_id}' not found",
                    edge_id=edge.id,
                )
            if target is None:
                add(
                    "unknown_node",
                    f"Edge {edge.id}: target '{edge.target_node_id}' not found",
                    edge_id=edge.id,
                )
            if source is None or target is None:
                continue
            if edge.source_handle not in source.handles.outputs:
                add(
                    "unknown_handle",
                    f"Edge {edge.id}: '{source.kind}' node '{source.id}' has no output handle "
                    f"'{edge.source_handle}' (declares {list(source.handles.outputs)})",
                    node_id=source.id,
                    edge_id=edge.id,
                )
            if edge.target_handle not in target.handles.inputs:
                add(
                    "unknown_handle",
                    f"Edge {edge.id}: '{target.kind}' node '{target.id}' has no input handle "
                    f"'{edge.target_handle}' (declares {list(target.handles.inputs)})",
                    node_id=target.id,
                    edge_id=edge.id,
                )
            valid_edges.append(edge)

        # Triggers: exactly the declared trigger nodes have no incoming edges
        declared = {t.node_id for t in graph.triggers}
        if not declared:
            add("no_triggers", "Workflow declares no triggers")
        for spec in graph.triggers:
            node = nodes.get(spec.node_id)
            if node is None:
                add("unknown_node", f"Trigger references unknown node '{spec.node_id}'")
            elif node.category != NodeCategory.TRIGGER:
                add(
                    "not_a_trigger",
                    f"Trigger references '{node.kind}' node '{node.id}', which is not a trigger",
                    node_id=node.id,
                )

        incoming = {node_id: 0 for node_id in nodes}
        outgoing = {node_id: 0 for node_id in nodes}
        for edge in valid_edges:
            incoming[edge.target_node_id] += 1
            outgoing[edge.source_node_id] += 1

        for node_id, node in nodes.items():
            if node_id in declared and incoming[node_id] > 0:
                add(
                    "trigger_has_incoming",
                    f"Trigger node '{node_id}' must not have incoming edges",
                    node_id=node_id,
                )
            if node_id not in declared and incoming[node_id] == 0:
                if node.category == NodeCategory.TRIGGER:
                    message = f"Trigger node '{node_id}' is not declared in the trigger list"
                else:
                    message = f"Node '{node_id}' has no incoming edges"
                add("missing_incoming", message, node_id=node_id)

            # Behaviors are sinks; routing nodes must lead somewhere or opt out
            if (
                node.category != NodeCategory.ACTION
                and outgoing[node_id] == 0
                and not node.terminal
            ):
                add(
                    "dead_end",
                    f"Node '{node_id}' has no outgoing edges and is not marked terminal",
                    node_id=node_id,
                )

        # Every merge input must be wired, or a wait_all merge could never fire
        for node in nodes.values():
            if node.kind != "merge":
                continue
            wired = {e.target_handle for e in valid_edges if e.target_node_id == node.id}
            for handle in node.handles.inputs:
                if handle not in wired:
                    add(
                        "merge_input_unconnected",
                        f"Merge node '{node.id}' has no edge into input '{handle}'",
                        node_id=node.id,
                    )

        G = nx.DiGraph()
        G.add_nodes_from(nodes)
        G.add_edges_from((e.source_node_id, e.target_node_id) for e in valid_edges)

        # Loop nodes are the only iteration construct, so any cycle is invalid
        try:
            for cycle_count, cycle in enumerate(nx.simple_cycles(G), start=1):
                if cycle_count > MAX_CYCLES_TO_REPORT:
                    add(
                        "cycle",
                        f"Too many cycles to report (>{MAX_CYCLES_TO_REPORT}). "
                        f"Simplify graph structure.",
                    )
                    break
                add("cycle", f"Cycle detected: {' -> '.join(cycle + cycle[:1])}")
        except nx.NetworkXError as e:
            add("cycle", f"Could not perform cycle detection: {e}")

        reachable: set[str] = set()
        for trigger_id in declared & set(nodes):
            reachable.add(trigger_id)
            reachable |= nx.descendants(G, trigger_id)
        for node_id in nodes:
            if declared and node_id not in reachable:
                add(
                    "unreachable",
                    f"Node '{node_id}' is not reachable from any trigger",
                    node_id=node_id,
                )

        violations.extend(check_savable(graph, self.registry, self.max_handler_timeout))
        return ValidationResult(ok=not violations, violations=violations)
