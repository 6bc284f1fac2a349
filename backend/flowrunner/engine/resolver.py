# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Graph Resolver

Validates a workflow graph and builds the dispatch plan the coordinator
walks. DAG validation uses topological sort (Kahn's algorithm).
"""

from collections import deque
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

from .models import Edge, GraphErrorCode, Node, Workflow
from .exceptions import GraphError
from .registry import HandlerRegistry


@dataclass(frozen=True)
class DispatchPlan:
    """
    Resolved, read-only view of a workflow graph.

    Computed once per run so readiness can be checked incrementally.
    """
    workflow: Workflow
    nodes: Mapping[str, Node]
    order: Tuple[str, ...]  # Topological order
    triggers: Tuple[str, ...]  # Nodes with no incoming edges, in topological order
    predecessors: Mapping[str, FrozenSet[str]]
    successors: Mapping[str, FrozenSet[str]]
    incoming: Mapping[str, Tuple[Edge, ...]]

    def node(self, node_id: str) -> Node:
        return self.nodes[node_id]

    @property
    def sinks(self) -> Tuple[str, ...]:
        return tuple(node_id for node_id in self.order if not self.successors[node_id])

    def descendants(self, node_id: str) -> Set[str]:
        """All transitive successors of a node"""
        seen: Set[str] = set()
        queue = deque(self.successors[node_id])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self.successors[current])
        return seen


def resolve_workflow(workflow: Workflow, registry: Optional[HandlerRegistry] = None) -> DispatchPlan:
    """
    Validate workflow structure and handler availability.

    Returns the dispatch plan for execution.

    Raises GraphError if validation fails. Pure: the workflow is not touched.
    """
    # 1. Empty workflow check
    if len(workflow.nodes) == 0:
        raise GraphError(
            GraphErrorCode.EMPTY_GRAPH,
            f"Workflow '{workflow.workflow_id}' must have at least one node"
        )

    # 2. Duplicate node IDs
    seen_ids: Set[str] = set()
    for node in workflow.nodes:
        if node.node_id in seen_ids:
            raise GraphError(
                GraphErrorCode.DUPLICATE_NODE,
                f"Duplicate node ID: {node.node_id}",
                subject=node.node_id
            )
        seen_ids.add(node.node_id)

    # 3. Invalid edge references and duplicate channels
    seen_edges = set()
    for edge in workflow.edges:
        for endpoint in (edge.source, edge.target):
            if endpoint not in seen_ids:
                raise GraphError(
                    GraphErrorCode.DANGLING_EDGE,
                    f"Edge {edge} references non-existent node: {endpoint}",
                    subject=str(edge)
                )
        if edge.key in seen_edges:
            raise GraphError(
                GraphErrorCode.DUPLICATE_EDGE,
                f"Duplicate edge: {edge}",
                subject=str(edge)
            )
        seen_edges.add(edge.key)

    # 4. Handler availability; disabled nodes never reach a handler
    if registry is not None:
        for node in workflow.nodes:
            if not node.disabled and not registry.has_handler(node.type):
                raise GraphError(
                    GraphErrorCode.UNKNOWN_NODE_TYPE,
                    f"No handler registered for node type '{node.type}' (node '{node.node_id}')",
                    subject=node.node_id
                )

    # 5. DAG validation (topological sort)
    order = topological_sort(workflow)

    predecessors: Dict[str, Set[str]] = {node_id: set() for node_id in order}
    successors: Dict[str, Set[str]] = {node_id: set() for node_id in order}
    incoming: Dict[str, List[Edge]] = {node_id: [] for node_id in order}
    for edge in workflow.edges:
        predecessors[edge.target].add(edge.source)
        successors[edge.source].add(edge.target)
        incoming[edge.target].append(edge)

    return DispatchPlan(
        workflow=workflow,
        nodes={node.node_id: node for node in workflow.nodes},
        order=tuple(order),
        triggers=tuple(node_id for node_id in order if not predecessors[node_id]),
        predecessors={k: frozenset(v) for k, v in predecessors.items()},
        successors={k: frozenset(v) for k, v in successors.items()},
        incoming={k: tuple(v) for k, v in incoming.items()},
    )


def topological_sort(workflow: Workflow) -> List[str]:
    """
    Perform topological sort using Kahn's algorithm.

    Detects self-loops and cycles. Ties keep the workflow's node order.

    Returns list of node IDs in topological order.

    Raises GraphError(CYCLE) if the graph is not a DAG.
    """
    # Build adjacency list and in-degree count
    graph: Dict[str, List[str]] = {node.node_id: [] for node in workflow.nodes}
    in_degree: Dict[str, int] = {node.node_id: 0 for node in workflow.nodes}

    for edge in workflow.edges:
        if edge.source == edge.target:
            raise GraphError(
                GraphErrorCode.CYCLE,
                f"Self-loop not allowed: {edge}",
                subject=edge.source
            )

        graph[edge.source].append(edge.target)
        in_degree[edge.target] += 1

    # Start nodes (no incoming edges)
    queue = deque([node_id for node_id, degree in in_degree.items() if degree == 0])

    topological_order = []

    while queue:
        node_id = queue.popleft()
        topological_order.append(node_id)

        # Reduce in-degree for neighbors
        for neighbor in graph[node_id]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    # Anything left still has incoming edges from inside a cycle
    if len(topological_order) != len(workflow.nodes):
        remaining = [node.node_id for node in workflow.nodes if in_degree[node.node_id] > 0]
        raise GraphError(
            GraphErrorCode.CYCLE,
            f"Cycle detected in workflow graph involving nodes: {remaining}",
            subject=", ".join(remaining)
        )

    return topological_order
