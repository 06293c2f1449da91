"""Patch-edited versions of a case's team graph.

Layout::

    (Case)-[:HAS_VERSION]->(CaseVersion)-[:ASSIGNED_TEAM]->(Team)
    (CaseVersion)-[:TEAM_REL]->(TeamRel)-[:FROM]->(Team)
                               (TeamRel)-[:TO]->(Team)

Teams are shared entities; membership is the ``ASSIGNED_TEAM`` edge, so
dropping a team from a version never deletes the team. Team-to-team
relations are TeamRel wrapper nodes carrying ``relId``, ``caseId``,
``versionId`` and ``kind``; their ids derive from ``(versionId, relId)``.
Teams carry no versioned props, so ``memberProps`` is always empty.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from docketgraph.graph.gateway import BatchOp, Statement
from docketgraph.models.versioning import VersionGraph
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
    from docketgraph.models.versioning import VersionInfo

ASSIGNED_TEAM = "ASSIGNED_TEAM"
TEAM_REL = "TEAM_REL"
FROM = "FROM"
TO = "TO"
TEAM_LABEL = "Team"
TEAM_REL_LABEL = "TeamRel"


def team_rel_id(version_id: str, rel_id: str) -> str:
    return derived_id("team_rel", version_id, rel_id)


def default_rel_id(version_id: str, from_id: str, to_id: str, kind: str) -> str:
    """relId for an edge that arrived without one."""
    return derived_id("rel", version_id, from_id, to_id, kind)


class _PatchStatements:
    """Writes a case version's delta as membership edges and TeamRel wrappers."""

    def __init__(
        self, info: VersionInfo, current: VersionGraph, now: Callable[[], datetime]
    ) -> None:
        self._info = info
        self._now = now
        self._ids_by_composite: dict[tuple[str, str, str], list[str]] = {}
        for edge in current.edges:
            if edge.id:
                self._ids_by_composite.setdefault(
                    (edge.from_id, edge.to_id, edge.kind), []
                ).append(edge.id)

    @property
    def _vid(self) -> str:
        return self._info.version_id

    def _resolve(self, edge: EdgeView) -> str | None:
        """relId of an edge to remove: its own id, else the first composite match."""
        if edge.id:
            return edge.id
        candidates = self._ids_by_composite.get(edge.composite_key)
        return candidates[0] if candidates else None

    def add_nodes(self, nodes: list[NodeView]) -> list[Statement]:
        created = as_utc(self._now()).isoformat()
        teams = [
            {"id": n.key, "labels": [TEAM_LABEL], "props": {}, "on_create": {"createdAt": created}}
            for n in nodes
        ]
        members = [{"from": self._vid, "to": n.key, "type": ASSIGNED_TEAM} for n in nodes]
        return [Statement(BatchOp.MERGE_NODES, teams), Statement(BatchOp.MERGE_EDGES, members)]

    def add_edges(self, edges: list[EdgeView]) -> list[Statement]:
        wrappers = []
        links = []
        for e in edges:
            rel_id = e.id or default_rel_id(self._vid, e.from_id, e.to_id, e.kind)
            wrapper = team_rel_id(self._vid, rel_id)
            wrappers.append(
                {
                    "id": wrapper,
                    "labels": [TEAM_REL_LABEL],
                    "props": {
                        "relId": rel_id,
                        "caseId": self._info.scope_id,
                        "versionId": self._vid,
                        "kind": e.kind,
                    },
                }
            )
            links.append({"from": self._vid, "to": wrapper, "type": TEAM_REL})
            links.append({"from": wrapper, "to": e.from_id, "type": FROM})
            links.append({"from": wrapper, "to": e.to_id, "type": TO})
        return [Statement(BatchOp.MERGE_NODES, wrappers), Statement(BatchOp.MERGE_EDGES, links)]

    def remove_edges(self, edges: list[EdgeView]) -> list[Statement]:
        rows = []
        for e in edges:
            rel_id = self._resolve(e)
            if rel_id is not None:
                rows.append({"id": team_rel_id(self._vid, rel_id)})
        return [Statement(BatchOp.DETACH_DELETE_NODES, rows)]

    def remove_nodes(self, nodes: list[NodeView]) -> list[Statement]:
        rows = [{"from": self._vid, "to": n.key, "type": ASSIGNED_TEAM} for n in nodes]
        return [Statement(BatchOp.DELETE_EDGES, rows)]

    def update_nodes(self, updates: list[NodeUpdate]) -> list[Statement]:
        return []


class PatchVersionStore(VersionedGraphStore):
    """Patch-and-diff strategy scoped to a case."""

    scope_label = "Case"
    version_label = "CaseVersion"
    scope_key = "caseId"

    def _load(self, info: VersionInfo) -> VersionGraph:
        members = [
            node.id
            for _src, _edge, node in self._gateway.expand([info.version_id], ASSIGNED_TEAM)
            if node.id
        ]
        member_set = set(members)

        rel_nodes = {
            node.id: node
            for _src, _edge, node in self._gateway.expand([info.version_id], TEAM_REL)
            if node.id
        }
        rel_ids = list(rel_nodes)
        sources = {src: node.id for src, _e, node in self._gateway.expand(rel_ids, FROM)}
        targets = {src: node.id for src, _e, node in self._gateway.expand(rel_ids, TO)}

        edges = []
        for wrapper_id, node in rel_nodes.items():
            from_id = sources.get(wrapper_id)
            to_id = targets.get(wrapper_id)
            kind = node.props.get("kind")
            if from_id in member_set and to_id in member_set and kind:
                edges.append(edge_from_record(node.props.get("relId"), from_id, to_id, kind))
        return VersionGraph(member_ids=list(dict.fromkeys(members)), edges=edges)

    def _normalize(
        self, info: VersionInfo, current: VersionGraph, desired: VersionGraph
    ) -> VersionGraph:
        graph = super()._normalize(info, current, desired)
        edges = [
            e
            if e.id
            else e.model_copy(
                update={"id": default_rel_id(info.version_id, e.from_id, e.to_id, e.kind)}
            )
            for e in graph.edges
        ]
        return VersionGraph(member_ids=graph.member_ids, edges=edges, member_props={})

    def _builder(self, info: VersionInfo, current: VersionGraph) -> _PatchStatements:
        return _PatchStatements(info, current, self._clock)
