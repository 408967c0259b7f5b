from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Literal

from gatekit.errors import ConfigurationError


NodeType = Literal[
    "function",
    "log_group",
    "authorizer",
    "gateway",
    "validator",
    "deployment_stage",
    "route",
    "method",
    "parameter",
]
EdgeType = Literal[
    "CHILD_OF", "ON", "INVOKES", "AUTHORIZED_BY", "VALIDATED_BY", "LOGS_FOR", "DEPLOYS", "PUBLISHES", "ATTACHED_TO"
]


@dataclass(frozen=True)
class GraphNode:
    id: str
    type: NodeType
    label: str
    props: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class GraphEdge:
    # src depends on dst
    src: str
    dst: str
    type: EdgeType


class ResourceArena:
    """
    Named resources plus the dependency edges between them.

    Everything that points at a resource (bindings, other nodes) holds its id,
    never a copy, so one authorizer node can back any number of methods.
    """

    def __init__(self) -> None:
        self.nodes: dict[str, GraphNode] = {}
        self.edges: list[GraphEdge] = []
        self._edge_seen: set[tuple[str, str, str]] = set()

    def __contains__(self, handle: object) -> bool:
        return handle in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def add_node(self, node: GraphNode) -> str:
        if node.id in self.nodes:
            raise ConfigurationError(f"Duplicate resource id: {node.id}")
        self.nodes[node.id] = node
        return node.id

    def ensure_node(self, node: GraphNode) -> str:
        # resolve-or-create: first declaration wins
        if node.id not in self.nodes:
            self.nodes[node.id] = node
        return node.id

    def get(self, handle: str) -> GraphNode:
        try:
            return self.nodes[handle]
        except KeyError:
            raise ConfigurationError(f"Unknown resource: {handle}") from None

    def add_edge(self, src: str, dst: str, type: EdgeType) -> None:
        for h in (src, dst):
            if h not in self.nodes:
                raise ConfigurationError(f"Edge {src} -> {dst} references unknown resource {h}")
        key = (src, dst, type)
        if key in self._edge_seen:
            return
        self._edge_seen.add(key)
        self.edges.append(GraphEdge(src=src, dst=dst, type=type))

    def nodes_of_type(self, type: NodeType) -> Iterator[GraphNode]:
        return (n for n in self.nodes.values() if n.type == type)

    def dependencies(self, handle: str) -> list[str]:
        return sorted({e.dst for e in self.edges if e.src == handle})

    def topological_order(self) -> list[str]:
        """
        Dependencies first. Ties are broken by id so the order is stable.
        Raises ConfigurationError if the graph has a cycle.
        """
        remaining: dict[str, set[str]] = {h: set() for h in self.nodes}
        for e in self.edges:
            remaining[e.src].add(e.dst)

        order: list[str] = []
        ready = sorted(h for h, deps in remaining.items() if not deps)
        while ready:
            h = ready.pop(0)
            order.append(h)
            del remaining[h]
            newly = []
            for other, deps in remaining.items():
                if h in deps:
                    deps.discard(h)
                    if not deps:
                        newly.append(other)
            ready = sorted(ready + newly)

        if remaining:
            raise ConfigurationError(
                "Resource graph has a cycle through: " + ", ".join(sorted(remaining))
            )
        return order
