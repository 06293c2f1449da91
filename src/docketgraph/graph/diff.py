"""Pure diff between two graph states.

A GraphState is a mapping of node business keys to their props plus an
ordered list of edges. ``diff(before, after)`` classifies nodes into
add/remove/update and edges into add/remove; edges present on both sides
are never updated here (edge property changes go through
``upsert_edge_with_diff``).

Edge identity is the explicit id when one is set, otherwise the composite
``(from, to, kind)``. When an input holds the same identity twice the
first occurrence wins and later ones are ignored. Outputs follow input
order, so the same inputs always produce the same delta.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class EdgeView:
    """An edge as seen by the diff engine."""

    from_id: str
    to_id: str
    kind: str
    id: str | None = None
    props: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def composite_key(self) -> tuple[str, str, str]:
        return (self.from_id, self.to_id, self.kind)

    @property
    def key(self) -> str:
        """Identity key: ``ID::<id>`` or ``CK::<from>|<to>|<kind>``."""
        if self.id and self.id.strip():
            return f"ID::{self.id}"
        return f"CK::{self.from_id}|{self.to_id}|{self.kind}"


@dataclass
class GraphState:
    """Nodes keyed by business key, plus edges in input order."""

    nodes: dict[str, dict[str, Any]] = field(default_factory=dict)
    edges: list[EdgeView] = field(default_factory=list)

    def unique_edges(self) -> dict[str, EdgeView]:
        """Edges keyed by identity, keeping the first of any duplicates."""
        result: dict[str, EdgeView] = {}
        for edge in self.edges:
            result.setdefault(edge.key, edge)
        return result


@dataclass(frozen=True)
class NodeView:
    """A node key with the props relevant to the change."""

    key: str
    props: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class NodeUpdate:
    """A node present on both sides whose props differ."""

    key: str
    before: dict[str, Any] = field(hash=False, compare=False)
    after: dict[str, Any] = field(hash=False, compare=False)

    @property
    def removed_keys(self) -> list[str]:
        return [k for k in self.before if k not in self.after]


@dataclass
class Delta:
    """Structural changes turning one graph state into another."""

    add_nodes: list[NodeView] = field(default_factory=list)
    remove_nodes: list[NodeView] = field(default_factory=list)
    update_nodes: list[NodeUpdate] = field(default_factory=list)
    add_edges: list[EdgeView] = field(default_factory=list)
    remove_edges: list[EdgeView] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.add_nodes
            or self.remove_nodes
            or self.update_nodes
            or self.add_edges
            or self.remove_edges
        )

    def summary(self) -> dict[str, int]:
        return {
            "nodes_added": len(self.add_nodes),
            "nodes_removed": len(self.remove_nodes),
            "nodes_updated": len(self.update_nodes),
            "edges_added": len(self.add_edges),
            "edges_removed": len(self.remove_edges),
        }


def diff(before: GraphState, after: GraphState) -> Delta:
    """Compute the delta that turns *before* into *after*."""
    delta = Delta()

    for key, props in after.nodes.items():
        if key not in before.nodes:
            delta.add_nodes.append(NodeView(key, dict(props)))
        elif before.nodes[key] != props:
            delta.update_nodes.append(NodeUpdate(key, dict(before.nodes[key]), dict(props)))
    for key, props in before.nodes.items():
        if key not in after.nodes:
            delta.remove_nodes.append(NodeView(key, dict(props)))

    before_edges = before.unique_edges()
    after_edges = after.unique_edges()
    delta.add_edges = [edge for key, edge in after_edges.items() if key not in before_edges]
    delta.remove_edges = [edge for key, edge in before_edges.items() if key not in after_edges]
    return delta
