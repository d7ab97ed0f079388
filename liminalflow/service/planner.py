from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set

from liminalflow.service.errors import FlowValidationError
from liminalflow.storage.models import Edge, Flow, Node


def _edge_order(edge: Edge) -> tuple:
    return (edge.priority, edge.id)


def start_nodes(flow: Flow) -> List[Node]:
    """Enabled nodes without incoming enabled edges, in declaration order."""
    targets = {edge.target_node_id for edge in flow.enabled_edges}
    return [node for node in flow.enabled_nodes if node.id not in targets]


def reachable_node_ids(flow: Flow, roots: Sequence[Node]) -> Set[str]:
    outgoing: Dict[str, List[str]] = {}
    for edge in flow.enabled_edges:
        outgoing.setdefault(edge.source_node_id, []).append(edge.target_node_id)
    seen: Set[str] = set()
    queue = deque(node.id for node in roots)
    while queue:
        node_id = queue.popleft()
        if node_id in seen:
            continue
        seen.add(node_id)
        queue.extend(outgoing.get(node_id, []))
    return seen


def find_cycle(flow: Flow, node_ids: Set[str]) -> Optional[List[str]]:
    """Return one cycle among ``node_ids`` as a list of node ids, if any.

    Iterative depth-first search so deep graphs cannot hit the recursion
    limit.
    """
    outgoing: Dict[str, List[str]] = {}
    for edge in flow.enabled_edges:
        if edge.source_node_id in node_ids and edge.target_node_id in node_ids:
            outgoing.setdefault(edge.source_node_id, []).append(edge.target_node_id)

    white, grey, black = 0, 1, 2
    color: Dict[str, int] = {node_id: white for node_id in node_ids}
    for root in sorted(node_ids):
        if color[root] != white:
            continue
        path: List[str] = [root]
        stack = [(root, iter(outgoing.get(root, [])))]
        color[root] = grey
        while stack:
            node_id, children = stack[-1]
            advanced = False
            for child in children:
                if color[child] == grey:
                    return path[path.index(child) :] + [child]
                if color[child] == white:
                    color[child] = grey
                    path.append(child)
                    stack.append((child, iter(outgoing.get(child, []))))
                    advanced = True
                    break
            if not advanced:
                color[node_id] = black
                path.pop()
                stack.pop()
    return None


@dataclass
class ExecutionPlan:
    """Topologically ordered view of the nodes reachable from the start nodes."""

    flow: Flow
    order: List[str]
    nodes: Dict[str, Node]
    inbound: Dict[str, List[Edge]] = field(default_factory=dict)
    outbound: Dict[str, List[Edge]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.position = {node_id: index for index, node_id in enumerate(self.order)}

    @property
    def keys(self) -> List[str]:
        return [self.nodes[node_id].key for node_id in self.order]


def build_plan(flow: Flow) -> ExecutionPlan:
    """Order reachable nodes with Kahn's algorithm.

    Ties are broken by declaration order so the same flow always yields the
    same plan. Nodes unreachable from every start node are left out.
    """
    roots = start_nodes(flow)
    reachable = reachable_node_ids(flow, roots)
    declared = {node.id: index for index, node in enumerate(flow.nodes)}
    nodes = {node.id: node for node in flow.enabled_nodes if node.id in reachable}

    inbound: Dict[str, List[Edge]] = {node_id: [] for node_id in nodes}
    outbound: Dict[str, List[Edge]] = {node_id: [] for node_id in nodes}
    for edge in flow.enabled_edges:
        if edge.source_node_id in nodes and edge.target_node_id in nodes:
            outbound[edge.source_node_id].append(edge)
            inbound[edge.target_node_id].append(edge)
    for edges in outbound.values():
        edges.sort(key=_edge_order)

    in_degree = {node_id: len(edges) for node_id, edges in inbound.items()}
    ready = sorted(
        (node_id for node_id, degree in in_degree.items() if degree == 0),
        key=declared.__getitem__,
    )
    queue = deque(ready)
    order: List[str] = []
    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        released = []
        for edge in outbound[node_id]:
            in_degree[edge.target_node_id] -= 1
            if in_degree[edge.target_node_id] == 0:
                released.append(edge.target_node_id)
        for target in sorted(set(released), key=declared.__getitem__):
            queue.append(target)

    if len(order) != len(nodes):
        cycle = find_cycle(flow, set(nodes))
        raise FlowValidationError(
            "flow contains a cycle", detail={"cycle": cycle or sorted(set(nodes) - set(order))}
        )
    return ExecutionPlan(flow=flow, order=order, nodes=nodes, inbound=inbound, outbound=outbound)
