"""Models for versioned graph projections.

A VersionGraph is what a version looks like from outside: the ids of its
members, the edges between members and (for snapshot versions) the
member properties frozen into the version. Its JSON form uses the
camelCase keys ``memberIds``, ``edges`` and ``memberProps``; JSON Patch
paths are written against that form.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from docketgraph.graph.diff import EdgeView, GraphState

NonBlank = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class VersionState(StrEnum):
    """Lifecycle of a version: proposed versions accept edits, committed ones never do."""

    PROPOSED = "proposed"
    COMMITTED = "committed"


class VersionEdge(BaseModel):
    """A directed edge between two members of a version."""

    model_config = ConfigDict(populate_by_name=True)

    id: NonBlank | None = None
    from_id: NonBlank = Field(alias="from")
    to_id: NonBlank = Field(alias="to")
    kind: NonBlank

    def to_view(self) -> EdgeView:
        return EdgeView(from_id=self.from_id, to_id=self.to_id, kind=self.kind, id=self.id)


class VersionGraph(BaseModel):
    """Member-scoped projection of one version."""

    model_config = ConfigDict(populate_by_name=True)

    member_ids: list[NonBlank] = Field(default_factory=list, alias="memberIds")
    edges: list[VersionEdge] = Field(default_factory=list)
    member_props: dict[str, dict[str, Any]] = Field(default_factory=dict, alias="memberProps")

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def scoped(self) -> VersionGraph:
        """Copy without duplicate members and without edges that leave the member set."""
        members = list(dict.fromkeys(self.member_ids))
        allowed = set(members)
        return VersionGraph(
            member_ids=members,
            edges=[e for e in self.edges if e.from_id in allowed and e.to_id in allowed],
            member_props={k: dict(v) for k, v in self.member_props.items() if k in allowed},
        )

    def to_state(self) -> GraphState:
        return GraphState(
            nodes={m: dict(self.member_props.get(m, {})) for m in self.member_ids},
            edges=[e.to_view() for e in self.edges],
        )


class VersionInfo(BaseModel):
    """Metadata of one version."""

    scope_id: str
    version_id: str
    version_number: int
    as_of: datetime
    created_at: datetime
    description: str | None = None
    state: VersionState = VersionState.PROPOSED

    @property
    def committed(self) -> bool:
        return self.state is VersionState.COMMITTED


class GraphSyncResult(BaseModel):
    """Counts reported by a sync or replace."""

    scope_id: str
    version_number: int
    version_id: str
    nodes_added: int = 0
    nodes_removed: int = 0
    nodes_updated: int = 0
    edges_added: int = 0
    edges_removed: int = 0
    duration_ms: int = 0
