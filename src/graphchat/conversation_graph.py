"""
Branch-graph primitives: adjacency maps, cycle guard, topological ordering
and reachability helpers.

Every function here is pure. Reply nodes never appear in the adjacency maps;
they are threaded through ``parent_node_id`` only.
"""
from __future__ import annotations

from collections import deque
from typing import Iterable, Mapping, NamedTuple

from .models import ConversationEdge, ConversationNode, CycleCheckResult, NodeId

Adjacency = dict[NodeId, list[NodeId]]

_UNVISITED = 0
_VISITING = 1
_VISITED = 2


class AdjacencyMaps(NamedTuple):
    forward: Adjacency
    reverse: Adjacency


def sort_edges(edges: Iterable[ConversationEdge]) -> list[ConversationEdge]:
    """Orders edges by creation time, then id, so fan-in order survives rebuilds."""
    return sorted(edges, key=lambda edge: (edge.created_at, edge.id))


def build_adjacency(
    edges: Iterable[ConversationEdge],
    nodes_by_id: Mapping[NodeId, ConversationNode] | None = None,
) -> AdjacencyMaps:
    """
    Derives forward (parent -> children) and reverse (child -> parents) maps.
    When a node map is supplied, edges touching a reply node are left out.
    """
    forward: Adjacency = {}
    reverse: Adjacency = {}
    for edge in sort_edges(edges):
        if nodes_by_id is not None and (
            _is_reply(nodes_by_id.get(edge.source)) or _is_reply(nodes_by_id.get(edge.target))
        ):
            continue
        forward.setdefault(edge.source, []).append(edge.target)
        reverse.setdefault(edge.target, []).append(edge.source)
    return AdjacencyMaps(forward, reverse)


def _is_reply(node: ConversationNode | None) -> bool:
    return bool(node is not None and node.is_reply)


def get_children(node_id: NodeId, forward: Adjacency) -> list[NodeId]:
    return forward.get(node_id, [])


def get_parents(node_id: NodeId, reverse: Adjacency) -> list[NodeId]:
    return reverse.get(node_id, [])


def would_create_cycle(forward: Adjacency, source: NodeId, target: NodeId) -> bool:
    """True when adding ``source -> target`` closes a loop back to ``source``."""
    if source == target:
        return True

    visited: set[NodeId] = set()
    stack = [target]
    while stack:
        current = stack.pop()
        if current == source:
            return True
        if current in visited:
            continue
        visited.add(current)
        for child in forward.get(current, []):
            if child not in visited:
                stack.append(child)
    return False


def detect_cycles(forward: Adjacency) -> CycleCheckResult:
    """
    Three-color depth-first audit of a loaded graph.

    Stops at the first back edge and reports the nodes on that cycle, in
    traversal order starting from the node the back edge points to.
    """
    state: dict[NodeId, int] = {}

    for start in list(forward.keys()):
        if state.get(start, _UNVISITED) != _UNVISITED:
            continue

        path: list[NodeId] = [start]
        path_index: dict[NodeId, int] = {start: 0}
        state[start] = _VISITING
        iterators = [iter(forward.get(start, []))]

        while iterators:
            child = next(iterators[-1], None)
            if child is None:
                finished = path.pop()
                path_index.pop(finished, None)
                state[finished] = _VISITED
                iterators.pop()
                continue

            child_state = state.get(child, _UNVISITED)
            if child_state == _VISITING:
                return CycleCheckResult(has_cycle=True, cycle_nodes=tuple(path[path_index[child]:]))
            if child_state == _VISITED:
                continue

            state[child] = _VISITING
            path_index[child] = len(path)
            path.append(child)
            iterators.append(iter(forward.get(child, [])))

    return CycleCheckResult(has_cycle=False)


def topological_sort(forward: Adjacency, nodes: Iterable[NodeId]) -> list[NodeId]:
    """
    Kahn's algorithm restricted to ``nodes``.

    Only edges with both endpoints inside the subset count toward in-degree.
    Zero in-degree nodes are queued in input order and dequeued FIFO, so the
    result is fully determined by the input order and the edge order.
    """
    ordered_nodes = list(dict.fromkeys(nodes))
    node_set = set(ordered_nodes)
    in_degree = {node: 0 for node in ordered_nodes}

    for node in ordered_nodes:
        for child in forward.get(node, []):
            if child in node_set:
                in_degree[child] += 1

    queue = deque(node for node in ordered_nodes if in_degree[node] == 0)
    result: list[NodeId] = []
    while queue:
        current = queue.popleft()
        result.append(current)
        for child in forward.get(current, []):
            if child not in node_set:
                continue
            in_degree[child] -= 1
            if in_degree[child] == 0:
                queue.append(child)
    return result


def collect_ancestors(node_id: NodeId, reverse: Adjacency) -> list[NodeId]:
    """Breadth-first ancestor walk including ``node_id`` itself, in discovery order."""
    seen: dict[NodeId, None] = {}
    queue = deque([node_id])
    while queue:
        current = queue.popleft()
        if current in seen:
            continue
        seen[current] = None
        for parent in reverse.get(current, []):
            if parent not in seen:
                queue.append(parent)
    return list(seen)


def get_descendants(node_id: NodeId, forward: Adjacency) -> set[NodeId]:
    descendants: set[NodeId] = set()
    queue = deque([node_id])
    while queue:
        current = queue.popleft()
        for child in forward.get(current, []):
            if child not in descendants:
                descendants.add(child)
                queue.append(child)
    return descendants


def get_ancestors(node_id: NodeId, reverse: Adjacency) -> set[NodeId]:
    ancestors: set[NodeId] = set()
    queue = deque([node_id])
    while queue:
        current = queue.popleft()
        for parent in reverse.get(current, []):
            if parent not in ancestors:
                ancestors.add(parent)
                queue.append(parent)
    return ancestors


def get_path_to_node(node_id: NodeId, root_id: NodeId, reverse: Adjacency) -> list[NodeId]:
    """Root-to-node path following the first recorded parent at each step."""
    path: list[NodeId] = []
    seen: set[NodeId] = set()
    current: NodeId | None = node_id
    while current is not None and current not in seen:
        seen.add(current)
        path.append(current)
        if current == root_id:
            break
        parents = reverse.get(current, [])
        current = parents[0] if parents else None
    path.reverse()
    return path


def find_orphaned_nodes(
    root_id: NodeId,
    nodes_by_id: Mapping[NodeId, ConversationNode],
    forward: Adjacency,
) -> list[NodeId]:
    """Non-reply nodes that have no path back to the root."""
    reachable = get_descendants(root_id, forward)
    reachable.add(root_id)
    return sorted(
        node_id
        for node_id, node in nodes_by_id.items()
        if not node.is_reply and node_id not in reachable
    )
