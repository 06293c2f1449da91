"""Typed graph operations on top of a gateway.

TypedOpsService saves and reads cases and dockets as star subgraphs,
reconciles edge properties, and applies JSON Patch documents to both
typed entities and edge property maps. Writing a star never deletes the
shared person or case nodes it points at; only the star's own edges are
added or removed. Person nodes in a star are written whole, so a changed
kind or a cleared court or firm does not linger from an earlier write.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from docketgraph.graph.delta import EdgeDiff, upsert_edge_with_diff
from docketgraph.graph.diff import EdgeView, GraphState, diff
from docketgraph.graph.errors import InvalidArgumentError, NotFoundError
from docketgraph.graph.gateway import BatchOp, Statement
from docketgraph.graph.generic import GenericGraph, GenericNode
from docketgraph.graph.patch import apply_patch, apply_patch_to_map
from docketgraph.mapper import (
    ASSIGNED_TO,
    CASE_LABEL,
    CONTAINS,
    DOCKET_LABEL,
    PERSON_LABEL,
    REVIEWS,
    person_from_node,
    person_node,
    stale_fields,
    to_generic,
    to_typed,
)
from docketgraph.models.typed import Case, Docket, Person
from docketgraph.observability.logging import get_logger

if TYPE_CHECKING:
    from docketgraph.graph.gateway import GraphGateway

log = get_logger(__name__)

_CASE_HOPS: list[tuple[str, ...]] = [(ASSIGNED_TO, REVIEWS)]
_DOCKET_HOPS: list[tuple[str, ...]] = [(CONTAINS,), (ASSIGNED_TO, REVIEWS)]


def _edge_state(graph: GenericGraph) -> GraphState:
    edges = [
        EdgeView(
            from_id=graph.nodes[rel.from_index].id or "",
            to_id=graph.nodes[rel.to_index].id or "",
            kind=rel.type,
        )
        for rel in graph.relationships
    ]
    return GraphState(edges=edges)


class TypedOpsService:
    """Typed CRUD and reconciliation for cases, dockets, persons and edges."""

    def __init__(self, gateway: GraphGateway) -> None:
        self._gateway = gateway

    # -- Generic nodes and graphs ------------------------------------------------------

    def upsert_node(self, node: GenericNode) -> GenericNode:
        return self._gateway.upsert_node(node)

    def delete_node(self, node_id: str) -> None:
        self._gateway.delete_node(node_id)

    def save_graph(self, graph: GenericGraph) -> list[str]:
        """Persist every node, then relate by index. Returns the node ids in order."""
        return self._write_graph(graph, clear_stale=False)

    def _write_graph(self, graph: GenericGraph, *, clear_stale: bool) -> list[str]:
        """Merge *graph* in one batch; with *clear_stale*, typed nodes are written whole."""
        ids = [node.id or str(uuid.uuid4()) for node in graph.nodes]
        node_rows: list[dict[str, Any]] = []
        for index, node in enumerate(graph.nodes):
            row: dict[str, Any] = {
                "id": ids[index],
                "labels": list(node.labels),
                "props": dict(node.props),
            }
            if clear_stale:
                row["remove_labels"], cleared = stale_fields(node)
                row["props"] = {**cleared, **node.props}
            node_rows.append(row)
        edge_rows = [
            {
                "from": ids[rel.from_index],
                "to": ids[rel.to_index],
                "type": rel.type,
                "props": dict(rel.props),
            }
            for rel in graph.relationships
        ]
        self._gateway.run_batch(
            [Statement(BatchOp.MERGE_NODES, node_rows), Statement(BatchOp.MERGE_EDGES, edge_rows)]
        )
        log.debug("graph_saved", nodes=len(ids), relationships=len(edge_rows))
        return ids

    def _read_star(
        self, root_id: str, label: str, hops: list[tuple[str, ...]]
    ) -> GenericGraph:
        root = self._gateway.get_node(root_id)
        if root is None or not root.has_label(label):
            raise NotFoundError(label, root_id)
        graph = GenericGraph(nodes=[root])
        positions = {root_id: 0}
        frontier = [root_id]
        for rel_types in hops:
            reached: list[str] = []
            for source, edge, node in self._gateway.expand(frontier):
                if edge.type not in rel_types or not node.id:
                    continue
                if node.id not in positions:
                    positions[node.id] = graph.add_node(node)
                graph.relate(positions[source], edge.type, positions[node.id], edge.props)
                reached.append(node.id)
            frontier = list(dict.fromkeys(reached))
        return graph

    def _reconcile_star(self, current: GenericGraph | None, desired: GenericGraph) -> None:
        """Save *desired* and drop the star edges that only *current* has.

        Only edges leaving a node of *desired* are dropped: a case removed
        from a docket keeps its own assignees and reviewers.
        """
        with self._gateway.transaction():
            self._write_graph(desired, clear_stale=True)
            if current is None:
                return
            described = {node.id for node in desired.nodes}
            stale = [
                edge
                for edge in diff(_edge_state(current), _edge_state(desired)).remove_edges
                if edge.from_id in described
            ]
            for edge in stale:
                self._gateway.delete_edge(edge.from_id, edge.kind, edge.to_id)
        log.debug("star_reconciled", removed_edges=len(stale))

    # -- Persons -------------------------------------------------------------------

    def upsert_person(self, person: Person) -> Person:
        """Write *person* whole; switching kind drops the old label and property."""
        with self._gateway.transaction():
            [person_id] = self._write_graph(
                GenericGraph(nodes=[person_node(person)]), clear_stale=True
            )
            return self.get_person(person_id)

    def get_person(self, person_id: str) -> Person:
        node = self._gateway.get_node(person_id)
        if node is None or not node.has_label(PERSON_LABEL):
            raise NotFoundError(PERSON_LABEL, person_id)
        return person_from_node(node)

    # -- Cases ---------------------------------------------------------------------

    def get_case(self, case_id: str) -> Case:
        return to_typed(self._read_star(case_id, CASE_LABEL, _CASE_HOPS), Case)

    def post_case(self, case: Case) -> Case:
        """Create or overwrite a case's star (assignees and reviewers)."""
        with self._gateway.transaction():
            current = self._existing_star(case.id, CASE_LABEL, _CASE_HOPS)
            self._reconcile_star(current, to_generic(case))
            return self.get_case(case.id)

    def patch_case(self, case_id: str, patch_doc: Any) -> Case:
        """Apply a JSON Patch to a case's typed form and reconcile the star."""
        with self._gateway.transaction():
            current = self.get_case(case_id)
            desired = apply_patch(patch_doc, current, Case)
            if desired.id != case_id:
                raise InvalidArgumentError("id", "a patch cannot change the case id")
            self._reconcile_star(to_generic(current), to_generic(desired))
            return self.get_case(case_id)

    # -- Dockets -------------------------------------------------------------------

    def get_docket(self, docket_id: str) -> Docket:
        return to_typed(self._read_star(docket_id, DOCKET_LABEL, _DOCKET_HOPS), Docket)

    def post_docket(self, docket: Docket) -> Docket:
        """Create or overwrite a docket's star (cases and their persons)."""
        with self._gateway.transaction():
            current = self._existing_star(docket.id, DOCKET_LABEL, _DOCKET_HOPS)
            self._reconcile_star(current, to_generic(docket))
            return self.get_docket(docket.id)

    def patch_docket(self, docket_id: str, patch_doc: Any) -> Docket:
        with self._gateway.transaction():
            current = self.get_docket(docket_id)
            desired = apply_patch(patch_doc, current, Docket)
            if desired.id != docket_id:
                raise InvalidArgumentError("id", "a patch cannot change the docket id")
            self._reconcile_star(to_generic(current), to_generic(desired))
            return self.get_docket(docket_id)

    def _existing_star(
        self, root_id: str, label: str, hops: list[tuple[str, ...]]
    ) -> GenericGraph | None:
        try:
            return self._read_star(root_id, label, hops)
        except NotFoundError:
            return None

    # -- Edges -----------------------------------------------------------------------

    def put_edge(
        self, from_id: str, rel_type: str, to_id: str, props: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Merge an edge, overlay *props*, and return the stored props."""
        with self._gateway.transaction():
            self._gateway.relate(from_id, rel_type, to_id, props)
            return self._gateway.read_edge_props(from_id, rel_type, to_id)

    def delete_edge(self, from_id: str, rel_type: str, to_id: str) -> None:
        self._gateway.delete_edge(from_id, rel_type, to_id)

    def get_edge_props(self, from_id: str, rel_type: str, to_id: str) -> dict[str, Any]:
        return self._gateway.read_edge_props(from_id, rel_type, to_id)

    def upsert_edge_with_diff(
        self,
        from_id: str,
        rel_type: str,
        to_id: str,
        props: dict[str, Any],
        *,
        replace: bool = False,
    ) -> EdgeDiff:
        return upsert_edge_with_diff(
            self._gateway, from_id, rel_type, to_id, props, replace=replace
        )

    def patch_edge_props(
        self, from_id: str, rel_type: str, to_id: str, patch_doc: Any
    ) -> EdgeDiff:
        """Apply a JSON Patch to an edge's props.

        The patched map is merged back with ``None`` for every key the
        patch removed, so ``remove`` operations take effect.
        """
        with self._gateway.transaction():
            current = self._gateway.read_edge_props(from_id, rel_type, to_id)
            patched = apply_patch_to_map(patch_doc, current)
            desired: dict[str, Any] = {k: None for k in current if k not in patched}
            desired.update(patched)
            return upsert_edge_with_diff(
                self._gateway, from_id, rel_type, to_id, desired, replace=False
            )
