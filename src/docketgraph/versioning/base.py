"""Shared lifecycle for versioned graphs.

A scope (a docket, a case) owns numbered versions linked by
``HAS_VERSION``. A version starts out proposed, accepts syncs and patches,
and becomes immutable once committed; corrections go into a new version.
New versions copy forward the members and edges of the latest committed
version by creating fresh wrapper entities that point at the same shared
entities.

Both strategies reconcile the same way: load the member-scoped projection,
diff it against the desired projection, hand the delta to a DeltaApplier
with a strategy-specific StatementBuilder. Subclasses only decide how a
projection is laid out in the store.
"""

from __future__ import annotations

import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import ValidationError

from docketgraph.graph.delta import DEFAULT_BATCH_SIZE, DeltaApplier
from docketgraph.graph.diff import Delta, diff
from docketgraph.graph.errors import (
    InvalidArgumentError,
    NotFoundError,
    VersionCommittedError,
)
from docketgraph.graph.gateway import BatchOp, Statement
from docketgraph.graph.patch import apply_patch
from docketgraph.models.versioning import (
    GraphSyncResult,
    VersionEdge,
    VersionGraph,
    VersionInfo,
    VersionState,
)
from docketgraph.observability.logging import get_logger, operation_context

if TYPE_CHECKING:
    from collections.abc import Callable

    from docketgraph.graph.delta import StatementBuilder
    from docketgraph.graph.gateway import GraphGateway

log = get_logger(__name__)

HAS_VERSION = "HAS_VERSION"

# Namespace for ids derived from (version, member) pairs
WRAPPER_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "docketgraph:wrapper")


def derived_id(*parts: str) -> str:
    """Deterministic id for a wrapper entity."""
    return str(uuid.uuid5(WRAPPER_NAMESPACE, "|".join(parts)))


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass
class VersionComparison:
    """Member and edge differences between two versions of one scope."""

    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    edges_added: int = 0
    edges_removed: int = 0


class VersionedGraphStore(ABC):
    """Base class for the snapshot and patch versioning strategies."""

    scope_label: ClassVar[str]
    version_label: ClassVar[str]
    scope_key: ClassVar[str]

    def __init__(
        self,
        gateway: GraphGateway,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._gateway = gateway
        self._batch_size = batch_size
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def gateway(self) -> GraphGateway:
        return self._gateway

    def ensure_schema(self) -> None:
        """Create the constraint that serialises version numbering."""
        self._gateway.ensure_unique(self.version_label, "versionKey")

    # -- Strategy hooks ----------------------------------------------------------

    @abstractmethod
    def _load(self, info: VersionInfo) -> VersionGraph:
        """Read the member-scoped projection of a version."""

    @abstractmethod
    def _builder(self, info: VersionInfo, current: VersionGraph) -> StatementBuilder:
        """StatementBuilder writing into *info*'s wrapper entities."""

    def _normalize(
        self, info: VersionInfo, current: VersionGraph, desired: VersionGraph
    ) -> VersionGraph:
        """Resolve desired member props and edge ids against the current state.

        Members without an entry in ``memberProps`` keep their current props.
        An edge without id adopts the id of the first unclaimed current edge
        with the same ``(from, to, kind)``.
        """
        member_props = {
            m: dict(desired.member_props.get(m, current.member_props.get(m, {})))
            for m in desired.member_ids
        }
        claimed = {e.id for e in desired.edges if e.id}
        pool: dict[tuple[str, str, str], list[str]] = {}
        for edge in current.edges:
            if edge.id and edge.id not in claimed:
                pool.setdefault((edge.from_id, edge.to_id, edge.kind), []).append(edge.id)

        edges = []
        for edge in desired.edges:
            if edge.id is None:
                candidates = pool.get((edge.from_id, edge.to_id, edge.kind))
                if candidates:
                    edge = edge.model_copy(update={"id": candidates.pop(0)})
            edges.append(edge)
        return VersionGraph(member_ids=desired.member_ids, edges=edges, member_props=member_props)

    def _refine(self, delta: Delta) -> Delta:
        """Adjust a computed delta before it is applied."""
        return delta

    # -- Versions ------------------------------------------------------------------

    def _info(self, scope_id: str, node_id: str, props: dict[str, Any]) -> VersionInfo:
        return VersionInfo(
            scope_id=scope_id,
            version_id=node_id,
            version_number=int(props["versionNumber"]),
            as_of=datetime.fromisoformat(props["asOf"]),
            created_at=datetime.fromisoformat(props["createdAt"]),
            description=props.get("description"),
            state=VersionState(props.get("state", VersionState.PROPOSED)),
        )

    def list_versions(self, scope_id: str) -> list[VersionInfo]:
        """All versions of a scope, oldest first."""
        versions = [
            self._info(scope_id, node.id or "", node.props)
            for _src, _edge, node in self._gateway.expand([scope_id], HAS_VERSION)
            if node.has_label(self.version_label)
        ]
        return sorted(versions, key=lambda v: v.version_number)

    def get_version(self, scope_id: str, version_number: int) -> VersionInfo:
        for info in self.list_versions(scope_id):
            if info.version_number == version_number:
                return info
        raise NotFoundError("version", f"{scope_id}@{version_number}", self.version_label)

    def latest_committed(self, scope_id: str) -> VersionInfo | None:
        committed = [v for v in self.list_versions(scope_id) if v.committed]
        return committed[-1] if committed else None

    def version_as_of(self, scope_id: str, ts: datetime) -> VersionInfo | None:
        """Latest committed version effective at *ts* (ties go to the higher number)."""
        ts = as_utc(ts)
        eligible = [v for v in self.list_versions(scope_id) if v.committed and v.as_of <= ts]
        if not eligible:
            return None
        return max(eligible, key=lambda v: (v.as_of, v.version_number))

    def create_version(
        self,
        scope_id: str,
        *,
        description: str | None = None,
        as_of: datetime | None = None,
        copy_forward: bool = True,
    ) -> VersionInfo:
        """Create the next proposed version of *scope_id*.

        The number is one above the current maximum. Two writers racing for
        the same number collide on the ``versionKey`` constraint and one of
        them fails with ConstraintViolationError.
        """
        if not scope_id.strip():
            raise InvalidArgumentError("scope_id", "must be non-blank")
        now = as_utc(self._clock())
        effective = as_utc(as_of) if as_of is not None else now
        with self._gateway.transaction():
            versions = self.list_versions(scope_id)
            number = max((v.version_number for v in versions), default=0) + 1
            base = next((v for v in reversed(versions) if v.committed), None)
            info = VersionInfo(
                scope_id=scope_id,
                version_id=str(uuid.uuid4()),
                version_number=number,
                as_of=effective,
                created_at=now,
                description=description,
                state=VersionState.PROPOSED,
            )
            self._gateway.run_batch(
                [
                    Statement(
                        BatchOp.MERGE_NODES,
                        [
                            {
                                "id": scope_id,
                                "labels": [self.scope_label],
                                "props": {},
                                "on_create": {"createdAt": now.isoformat()},
                            }
                        ],
                    ),
                    Statement(
                        BatchOp.MERGE_NODES,
                        [
                            {
                                "id": info.version_id,
                                "labels": [self.version_label],
                                "props": {
                                    self.scope_key: scope_id,
                                    "versionNumber": number,
                                    "versionKey": f"{scope_id}:{number}",
                                    "asOf": effective.isoformat(),
                                    "createdAt": now.isoformat(),
                                    "description": description,
                                    "state": str(VersionState.PROPOSED),
                                },
                            }
                        ],
                    ),
                    Statement(
                        BatchOp.MERGE_EDGES,
                        [
                            {
                                "from": scope_id,
                                "to": info.version_id,
                                "type": HAS_VERSION,
                                "props": {},
                            }
                        ],
                    ),
                ]
            )
            if copy_forward and base is not None:
                self._reconcile(info, self._load(base), current=VersionGraph())
        log.info(
            "version_created",
            scope=scope_id,
            version=number,
            copied_from=base.version_number if copy_forward and base else None,
        )
        return info

    def commit_version(self, scope_id: str, version_number: int) -> VersionInfo:
        """Freeze a version. Committing an already committed version is a no-op."""
        with self._gateway.transaction():
            info = self.get_version(scope_id, version_number)
            if info.committed:
                return info
            self._gateway.run_batch(
                [
                    Statement(
                        BatchOp.UPDATE_NODES,
                        [
                            {
                                "id": info.version_id,
                                "props": {
                                    "state": str(VersionState.COMMITTED),
                                    "committedAt": as_utc(self._clock()).isoformat(),
                                },
                            }
                        ],
                    )
                ]
            )
        log.info("version_committed", scope=scope_id, version=version_number)
        return info.model_copy(update={"state": VersionState.COMMITTED})

    def _editable(self, scope_id: str, version_number: int) -> VersionInfo:
        info = self.get_version(scope_id, version_number)
        if info.committed:
            raise VersionCommittedError(scope_id, version_number)
        return info

    # -- Graph operations --------------------------------------------------------------

    def load_graph(self, scope_id: str, version_number: int) -> VersionGraph:
        return self._load(self.get_version(scope_id, version_number))

    @staticmethod
    def _coerce(desired: VersionGraph | dict[str, Any]) -> VersionGraph:
        if isinstance(desired, VersionGraph):
            return desired
        try:
            return VersionGraph.model_validate(desired)
        except ValidationError as e:
            raise InvalidArgumentError("desired graph", str(e)) from e

    def _reconcile(
        self,
        info: VersionInfo,
        desired: VersionGraph,
        *,
        current: VersionGraph | None = None,
    ) -> Delta:
        if current is None:
            current = self._load(info)
        target = self._normalize(info, current, desired.scoped())
        delta = self._refine(diff(current.to_state(), target.to_state()))
        if not delta.is_empty:
            applier = DeltaApplier(self._gateway, self._builder(info, current), self._batch_size)
            applier.apply(delta)
        return delta

    def _result(self, info: VersionInfo, delta: Delta, started: float) -> GraphSyncResult:
        return GraphSyncResult(
            scope_id=info.scope_id,
            version_number=info.version_number,
            version_id=info.version_id,
            duration_ms=int((time.perf_counter() - started) * 1000),
            **delta.summary(),
        )

    def sync_graph(
        self, scope_id: str, version_number: int, desired: VersionGraph | dict[str, Any]
    ) -> GraphSyncResult:
        """Make a proposed version match *desired*.

        Raises:
            NotFoundError: If the version does not exist.
            VersionCommittedError: If the version is committed.
        """
        started = time.perf_counter()
        target = self._coerce(desired)
        with operation_context(scope=scope_id, version=version_number), self._gateway.transaction():
            info = self._editable(scope_id, version_number)
            delta = self._reconcile(info, target)
        result = self._result(info, delta, started)
        log.info("graph_synced", **result.model_dump())
        return result

    def patch_graph(self, scope_id: str, version_number: int, patch_doc: Any) -> VersionGraph:
        """Apply a JSON Patch to a proposed version and return the new projection.

        The patch is validated in full before anything is written.
        """
        with operation_context(scope=scope_id, version=version_number), self._gateway.transaction():
            info = self._editable(scope_id, version_number)
            current = self._load(info)
            desired = apply_patch(patch_doc, current, VersionGraph)
            delta = self._reconcile(info, desired, current=current)
            updated = self._load(info)
        log.info("graph_patched", scope=scope_id, version=version_number, **delta.summary())
        return updated

    def replace_graph(
        self,
        scope_id: str,
        desired: VersionGraph | dict[str, Any],
        *,
        description: str | None = None,
        as_of: datetime | None = None,
    ) -> GraphSyncResult:
        """Create, fill and commit the next version in one transaction.

        Counts are relative to the previous committed version.
        """
        started = time.perf_counter()
        target = self._coerce(desired)
        with operation_context(scope=scope_id), self._gateway.transaction():
            info = self.create_version(scope_id, description=description, as_of=as_of)
            delta = self._reconcile(info, target)
            info = self.commit_version(scope_id, info.version_number)
        result = self._result(info, delta, started)
        log.info("graph_replaced", **result.model_dump())
        return result

    # -- Reporting -------------------------------------------------------------------

    def version_statistics(self, scope_id: str, version_number: int) -> dict[str, Any]:
        info = self.get_version(scope_id, version_number)
        graph = self._load(info)
        return {
            "versionNumber": info.version_number,
            "state": str(info.state),
            "memberCount": len(graph.member_ids),
            "edgeCount": len(graph.edges),
        }

    def compare_versions(self, scope_id: str, first: int, second: int) -> VersionComparison:
        a = self.load_graph(scope_id, first)
        b = self.load_graph(scope_id, second)
        delta = diff(a.to_state(), b.to_state())
        in_a = set(a.member_ids)
        return VersionComparison(
            added=[n.key for n in delta.add_nodes],
            removed=[n.key for n in delta.remove_nodes],
            unchanged=[m for m in b.member_ids if m in in_a],
            edges_added=len(delta.add_edges),
            edges_removed=len(delta.remove_edges),
        )


def edge_from_record(edge_id: str | None, from_id: str, to_id: str, kind: str) -> VersionEdge:
    return VersionEdge(id=edge_id or None, from_id=from_id, to_id=to_id, kind=kind)
