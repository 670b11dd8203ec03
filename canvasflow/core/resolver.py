"""Dependency resolution for workflow graphs.

Computes execution order, parallel execution layers and reachability over a
graph snapshot. Every function takes the node and edge lists directly so the
resolver never holds state between calls.

ORDERING:
    Kahn's algorithm seeds the ready queue in original node-list order and
    enqueues successors in edge-list order, so two nodes that become ready at
    the same time always come out in the same relative order.

EDGES:
    Edges whose source or target is not in the node list are ignored here;
    WorkflowGraph.validate_graph() reports them.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field

import networkx as nx

from canvasflow.core.graph_schema import Edge, Node

logger = logging.getLogger(__name__)


@dataclass
class SortResult:
    """Outcome of a topological sort."""

    order: list[str]
    has_cycle: bool
    cycle_path: list[str] = field(default_factory=list)  # First element repeats at the end


def _adjacency(
    nodes: Sequence[Node], edges: Sequence[Edge]
) -> tuple[dict[str, list[str]], dict[str, list[str]]]:
    """Build successor and predecessor lists, dropping dangling edges."""
    successors: dict[str, list[str]] = {n.id: [] for n in nodes}
    predecessors: dict[str, list[str]] = {n.id: [] for n in nodes}
    for edge in edges:
        if edge.source not in successors or edge.target not in successors:
            continue
        successors[edge.source].append(edge.target)
        predecessors[edge.target].append(edge.source)
    return successors, predecessors


def topo_sort(nodes: Sequence[Node], edges: Sequence[Edge]) -> SortResult:
    """Topologically sort nodes so that every dependency comes first.

    Returns:
        SortResult with the order of every node that could be placed. When the
        graph has a cycle, ``order`` is partial and ``cycle_path`` holds one
        concrete cycle for error reporting.
    """
    successors, predecessors = _adjacency(nodes, edges)
    in_degree = {node_id: len(preds) for node_id, preds in predecessors.items()}

    queue = deque(n.id for n in nodes if in_degree[n.id] == 0)
    order: list[str] = []

    while queue:
        current = queue.popleft()
        order.append(current)
        for neighbor in successors[current]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    if len(order) != len(successors):
        cycle_path = find_cycle(nodes, edges)
        logger.debug(f"Cycle detected: {' -> '.join(cycle_path)}")
        return SortResult(order=order, has_cycle=True, cycle_path=cycle_path)

    return SortResult(order=order, has_cycle=False)


def find_cycle(nodes: Sequence[Node], edges: Sequence[Edge]) -> list[str]:
    """Find one cycle using depth-first search with a recursion stack.

    Returns:
        The cycle as a path whose first and last element are the same node
        (``[a, b, a]``; a self-loop gives ``[a, a]``), or an empty list.
    """
    successors, _ = _adjacency(nodes, edges)
    visited: set[str] = set()

    for root in successors:
        if root in visited:
            continue

        # Iterative DFS: stack of (node, iterator over its successors)
        path = [root]
        on_path = {root}
        visited.add(root)
        stack = [iter(successors[root])]

        while stack:
            neighbor = next(stack[-1], None)
            if neighbor is None:
                stack.pop()
                on_path.discard(path.pop())
                continue
            if neighbor in on_path:
                start = path.index(neighbor)
                return path[start:] + [neighbor]
            if neighbor not in visited:
                visited.add(neighbor)
                path.append(neighbor)
                on_path.add(neighbor)
                stack.append(iter(successors[neighbor]))

    return []


def get_execution_layers(nodes: Sequence[Node], edges: Sequence[Edge]) -> list[list[str]]:
    """Group nodes into layers that can run concurrently.

    A node's layer is one more than the deepest layer among its
    predecessors, and 0 for nodes without predecessors. Two nodes share a
    layer only when neither depends on the other.

    Returns:
        Layers in ascending order, each listing node IDs in topological
        order. Empty when the graph has a cycle.
    """
    result = topo_sort(nodes, edges)
    if result.has_cycle:
        return []

    _, predecessors = _adjacency(nodes, edges)
    node_layer: dict[str, int] = {}
    for node_id in result.order:
        parents = predecessors[node_id]
        node_layer[node_id] = 1 + max(node_layer[p] for p in parents) if parents else 0

    layers: list[list[str]] = []
    for node_id in result.order:
        layer = node_layer[node_id]
        while len(layers) <= layer:
            layers.append([])
        layers[layer].append(node_id)
    return layers


def _bfs(start: str, adjacency: dict[str, list[str]]) -> list[str]:
    reached: list[str] = []
    seen = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for neighbor in adjacency.get(current, []):
            if neighbor not in seen:
                seen.add(neighbor)
                reached.append(neighbor)
                queue.append(neighbor)
    return reached


def get_upstream_nodes(node_id: str, nodes: Sequence[Node], edges: Sequence[Edge]) -> list[str]:
    """All nodes the given node depends on, directly or transitively."""
    _, predecessors = _adjacency(nodes, edges)
    return _bfs(node_id, predecessors)


def get_downstream_nodes(node_id: str, nodes: Sequence[Node], edges: Sequence[Edge]) -> list[str]:
    """All nodes that depend on the given node, directly or transitively."""
    successors, _ = _adjacency(nodes, edges)
    return _bfs(node_id, successors)


def get_execution_order_from_node(
    start_node_id: str, nodes: Sequence[Node], edges: Sequence[Edge]
) -> SortResult:
    """Sort only the start node and everything downstream of it."""
    relevant = {start_node_id, *get_downstream_nodes(start_node_id, nodes, edges)}
    relevant_nodes = [n for n in nodes if n.id in relevant]
    relevant_edges = [e for e in edges if e.source in relevant and e.target in relevant]
    return topo_sort(relevant_nodes, relevant_edges)


def find_critical_path(nodes: Sequence[Node], edges: Sequence[Edge]) -> list[str]:
    """Find the longest dependency chain (the run's critical path)."""
    G = nx.DiGraph()
    G.add_nodes_from(n.id for n in nodes)
    known = set(G.nodes)
    G.add_edges_from((e.source, e.target) for e in edges if e.source in known and e.target in known)
    try:
        return nx.dag_longest_path(G)
    except nx.NetworkXUnfeasible:
        return []  # Has cycles
