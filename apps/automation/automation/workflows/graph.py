from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

import networkx as nx

from automation.workflows.models import WorkflowGraph
from automation.workflows.schemas import NodeType


@dataclass(frozen=True)
class Node:
    id: str
    node_type: NodeType
    label: str = ""
    config: dict[str, Any] = field(default_factory=dict)
    is_enabled: bool = True

    @property
    def is_trigger(self) -> bool:
        return self.node_type.is_trigger


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    source_port: str = "output"
    target_port: str = "input"
    label: str | None = None


@dataclass
class Graph:
    """Detached, read-only view of a stored graph used by the executor."""

    id: str
    tenant_id: str
    nodes: list[Node]
    edges: list[Edge]
    is_enabled: bool = True
    name: str = ""

    def __post_init__(self) -> None:
        self._nodes_by_id = {node.id: node for node in self.nodes}
        self._positions = {node.id: index for index, node in enumerate(self.nodes)}

    def node(self, node_id: str) -> Node | None:
        return self._nodes_by_id.get(node_id)

    def position(self, node_id: str) -> int:
        return self._positions.get(node_id, len(self._positions))

    def outgoing(self, node_id: str) -> list[Edge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming(self, node_id: str) -> list[Edge]:
        return [edge for edge in self.edges if edge.target == node_id]

    def trigger_nodes(self) -> list[Node]:
        return [node for node in self.nodes if node.is_trigger and node.is_enabled]

    def to_digraph(self) -> nx.DiGraph:
        digraph = nx.DiGraph()
        digraph.add_nodes_from(node.id for node in self.nodes)
        digraph.add_edges_from((edge.source, edge.target) for edge in self.edges)
        return digraph

    @classmethod
    def from_model(cls, row: WorkflowGraph) -> Graph:
        nodes = [
            Node(
                id=str(item.id),
                node_type=NodeType(item.node_type),
                label=item.label or "",
                config=dict(item.config or {}),
                is_enabled=item.is_enabled,
            )
            for item in row.nodes
        ]
        edges = [
            Edge(
                source=str(item.source_node_id),
                target=str(item.target_node_id),
                source_port=item.source_port,
                target_port=item.target_port,
                label=item.label,
            )
            for item in row.edges
        ]
        return cls(
            id=str(row.id),
            tenant_id=str(row.tenant_id),
            nodes=nodes,
            edges=edges,
            is_enabled=row.is_enabled,
            name=row.name,
        )

    @classmethod
    def build(
        cls,
        nodes: list[Node],
        edges: list[Edge] | None = None,
        *,
        tenant_id: str | None = None,
        graph_id: str | None = None,
    ) -> Graph:
        return cls(
            id=graph_id or str(uuid.uuid4()),
            tenant_id=tenant_id or str(uuid.uuid4()),
            nodes=nodes,
            edges=edges or [],
        )


def find_cycle(graph: Graph, sources: list[str] | None = None) -> str | None:
    """Return the node id where a cycle starts, searching from `sources` or the whole graph."""
    try:
        cycle = nx.find_cycle(graph.to_digraph(), source=sources)
    except nx.NetworkXNoCycle:
        return None
    return cycle[0][0]
