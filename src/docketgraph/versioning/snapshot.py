"""Append-only snapshot versions of a docket's case graph.

Layout::

    (Docket)-[:HAS_VERSION]->(DocketVersion)-[:CONTAINS_CASE]->(CaseSnapshot)
    (CaseSnapshot)-[:SNAPSHOT_OF]->(Case)
    (CaseSnapshot)-[:<kind>]->(CaseSnapshot)

Cases are shared across versions; each version owns its snapshots, whose
ids derive from ``(versionId, caseId)``. A snapshot freezes the member
props it was written with, so older versions keep reporting the names
they had. Removing a case from a version deletes only its snapshot.
Case-to-case edges use the edge kind as the relationship type, so a pair of
snapshots holds at most one edge per kind; when several desired edges share
``(from, to, kind)`` the first one listed is kept.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from docketgraph.graph.delta import overlay_props
from docketgraph.graph.diff import Delta
from docketgraph.graph.errors import InvalidArgumentError
from docketgraph.graph.gateway import BatchOp, Statement, require_token
from docketgraph.models.versioning import VersionGraph
from docketgraph.observability.logging import get_logger
from docketgraph.versioning.base import (
    VersionedGraphStore,
    as_utc,
    derived_id,
    edge_from_record,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from docketgraph.graph.diff import EdgeView, NodeUpdate, NodeView
    from docketgraph.models.versioning import VersionEdge, VersionInfo

CONTAINS_CASE = "CONTAINS_CASE"
SNAPSHOT_OF = "SNAPSHOT_OF"
RELATED_TO_CASE = "RELATED_TO_CASE"
SNAPSHOT_LABEL = "CaseSnapshot"
CASE_LABEL = "Case"

_RESERVED_KINDS = {CONTAINS_CASE, SNAPSHOT_OF}

log = get_logger(__name__)


def snapshot_id(version_id: str, case_id: str) -> str:
    return derived_id("snapshot", version_id, case_id)


class _SnapshotStatements:
    """Writes a docket version's delta as snapshot wrappers."""

    def __init__(self, info: VersionInfo, now: Callable[[], datetime]) -> None:
        self._version_id = info.version_id
        self._now = now

    def _snap(self, case_id: str) -> str:
        return snapshot_id(self._version_id, case_id)

    @staticmethod
    def _kind(kind: str) -> str:
        kind = require_token(kind, "edge kind")
        if kind in _RESERVED_KINDS:
            raise InvalidArgumentError("edge kind", f"{kind} is reserved")
        return kind

    def add_nodes(self, nodes: list[NodeView]) -> list[Statement]:
        created = as_utc(self._now()).isoformat()
        cases = [
            {
                "id": n.key,
                "labels": [CASE_LABEL],
                "props": dict(n.props),
                "on_create": {"createdAt": created},
            }
            for n in nodes
        ]
        snapshots = [
            {
                "id": self._snap(n.key),
                "labels": [SNAPSHOT_LABEL],
                "props": {
                    **n.props,
                    "caseId": n.key,
                    "versionId": self._version_id,
                    "createdAt": created,
                },
            }
            for n in nodes
        ]
        contains = [
            {"from": self._version_id, "to": self._snap(n.key), "type": CONTAINS_CASE}
            for n in nodes
        ]
        snapshot_of = [{"from": self._snap(n.key), "to": n.key, "type": SNAPSHOT_OF} for n in nodes]
        return [
            Statement(BatchOp.MERGE_NODES, cases),
            Statement(BatchOp.MERGE_NODES, snapshots),
            Statement(BatchOp.MERGE_EDGES, contains + snapshot_of),
        ]

    def add_edges(self, edges: list[EdgeView]) -> list[Statement]:
        rows = [
            {
                "from": self._snap(e.from_id),
                "to": self._snap(e.to_id),
                "type": self._kind(e.kind),
                "props": {"relId": e.id} if e.id else {},
            }
            for e in edges
        ]
        return [Statement(BatchOp.MERGE_EDGES, rows)]

    def remove_edges(self, edges: list[EdgeView]) -> list[Statement]:
        rows = [
            {"from": self._snap(e.from_id), "to": self._snap(e.to_id), "type": self._kind(e.kind)}
            for e in edges
        ]
        return [Statement(BatchOp.DELETE_EDGES, rows)]

    def remove_nodes(self, nodes: list[NodeView]) -> list[Statement]:
        return [
            Statement(BatchOp.DETACH_DELETE_NODES, [{"id": self._snap(n.key)} for n in nodes])
        ]

    def update_nodes(self, updates: list[NodeUpdate]) -> list[Statement]:
        snapshots = [{"id": self._snap(u.key), "props": overlay_props(u)} for u in updates]
        cases = [{"id": u.key, "props": overlay_props(u)} for u in updates]
        return [Statement(BatchOp.UPDATE_NODES, snapshots + cases)]


class SnapshotVersionStore(VersionedGraphStore):
    """Snapshot-per-version strategy scoped to a docket."""

    scope_label = "Docket"
    version_label = "DocketVersion"
    scope_key = "docketId"

    def _load(self, info: VersionInfo) -> VersionGraph:
        snapshots = self._gateway.expand([info.version_id], CONTAINS_CASE)
        case_of: dict[str, str] = {}
        member_props: dict[str, dict[str, object]] = {}
        for _src, _edge, snap in snapshots:
            case_id = snap.props.get("caseId")
            if not snap.id or not case_id:
                continue
            case_of[snap.id] = case_id
            member_props[case_id] = {
                k: v
                for k, v in snap.props.items()
                if k not in ("caseId", "versionId", "createdAt")
            }

        edges = [
            edge_from_record(
                edge.props.get("relId"), case_of[src], case_of[edge.to_id], edge.type
            )
            for src, edge, _node in self._gateway.expand(list(case_of))
            if edge.type != SNAPSHOT_OF and edge.to_id in case_of
        ]
        return VersionGraph(
            member_ids=list(dict.fromkeys(case_of.values())),
            edges=edges,
            member_props=member_props,
        )

    def _normalize(
        self, info: VersionInfo, current: VersionGraph, desired: VersionGraph
    ) -> VersionGraph:
        # A snapshot pair holds one relationship per kind; the first edge
        # listed for a (from, to, kind) wins
        graph = super()._normalize(info, current, desired)
        edges: dict[tuple[str, str, str], VersionEdge] = {}
        for edge in graph.edges:
            edges.setdefault((edge.from_id, edge.to_id, edge.kind), edge)
        if len(edges) < len(graph.edges):
            log.debug(
                "duplicate_edges_dropped",
                scope=info.scope_id,
                dropped=len(graph.edges) - len(edges),
            )
        return graph.model_copy(update={"edges": list(edges.values())})

    def _builder(self, info: VersionInfo, current: VersionGraph) -> _SnapshotStatements:
        return _SnapshotStatements(info, self._clock)

    def _refine(self, delta: Delta) -> Delta:
        # One edge per (from, to, kind) exists in the store; re-keying an edge
        # must not delete the edge the add just merged
        added = {e.composite_key for e in delta.add_edges}
        delta.remove_edges = [e for e in delta.remove_edges if e.composite_key not in added]
        return delta
