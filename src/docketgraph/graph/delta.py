"""Apply a Delta against a gateway in bulk.

The applier runs every phase inside one gateway transaction, in a fixed
order: add nodes, add edges, remove edges, remove nodes, update nodes.
Each phase is cut into chunks of ``batch_size`` elements; a
StatementBuilder turns a chunk into a few bulk Statements which go to the
gateway in a single ``run_batch`` call. The first failing chunk aborts the
transaction.

Versioning strategies plug in their own StatementBuilder to translate
member keys into wrapper entities; GenericStatementBuilder maps keys to
node ids one-to-one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from docketgraph.graph.errors import NotFoundError
from docketgraph.graph.gateway import BatchOp, Statement, chunked
from docketgraph.observability.logging import get_logger

if TYPE_CHECKING:
    from docketgraph.graph.diff import Delta, EdgeView, NodeUpdate, NodeView
    from docketgraph.graph.gateway import GraphGateway

log = get_logger(__name__)

DEFAULT_BATCH_SIZE = 1000

_PHASES = ("add_nodes", "add_edges", "remove_edges", "remove_nodes", "update_nodes")


class StatementBuilder(Protocol):
    """Translates one chunk of a delta phase into bulk statements."""

    def add_nodes(self, nodes: list[NodeView]) -> list[Statement]: ...

    def add_edges(self, edges: list[EdgeView]) -> list[Statement]: ...

    def remove_edges(self, edges: list[EdgeView]) -> list[Statement]: ...

    def remove_nodes(self, nodes: list[NodeView]) -> list[Statement]: ...

    def update_nodes(self, updates: list[NodeUpdate]) -> list[Statement]: ...


def overlay_props(update: NodeUpdate) -> dict[str, Any]:
    """Props overlay for an update: new values plus ``None`` for dropped keys."""
    props = dict(update.after)
    for key in update.removed_keys:
        props[key] = None
    return props


class GenericStatementBuilder:
    """Maps node keys straight to node ids and edge kinds to edge types."""

    def __init__(self, labels: list[str]) -> None:
        self._labels = list(labels)

    def add_nodes(self, nodes: list[NodeView]) -> list[Statement]:
        rows = [{"id": n.key, "labels": self._labels, "props": dict(n.props)} for n in nodes]
        return [Statement(BatchOp.MERGE_NODES, rows)]

    def add_edges(self, edges: list[EdgeView]) -> list[Statement]:
        rows = []
        for e in edges:
            props = dict(e.props)
            if e.id:
                props["relId"] = e.id
            rows.append({"from": e.from_id, "to": e.to_id, "type": e.kind, "props": props})
        return [Statement(BatchOp.MERGE_EDGES, rows)]

    def remove_edges(self, edges: list[EdgeView]) -> list[Statement]:
        rows = [{"from": e.from_id, "to": e.to_id, "type": e.kind} for e in edges]
        return [Statement(BatchOp.DELETE_EDGES, rows)]

    def remove_nodes(self, nodes: list[NodeView]) -> list[Statement]:
        return [Statement(BatchOp.DETACH_DELETE_NODES, [{"id": n.key} for n in nodes])]

    def update_nodes(self, updates: list[NodeUpdate]) -> list[Statement]:
        rows = [{"id": u.key, "props": overlay_props(u)} for u in updates]
        return [Statement(BatchOp.UPDATE_NODES, rows)]


@dataclass
class ApplyStats:
    """Counters describing one delta application."""

    batches: int = 0
    statements: int = 0
    phases: dict[str, int] = field(default_factory=dict)


class DeltaApplier:
    """Apply deltas through a gateway in chunked bulk batches."""

    def __init__(
        self,
        gateway: GraphGateway,
        builder: StatementBuilder,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self._gateway = gateway
        self._builder = builder
        self._batch_size = batch_size

    def apply(self, delta: Delta) -> ApplyStats:
        """Apply *delta* atomically.

        Returns:
            Batch and statement counts.

        Raises:
            GraphStoreError: From the first failing chunk; nothing is kept.
        """
        stats = ApplyStats()
        with self._gateway.transaction():
            for phase in _PHASES:
                items = getattr(delta, phase)
                build = getattr(self._builder, phase)
                for chunk_no, chunk in enumerate(chunked(items, self._batch_size)):
                    statements = [s for s in build(chunk) if s.rows]
                    if not statements:
                        continue
                    try:
                        self._gateway.run_batch(statements)
                    except Exception:
                        log.warning(
                            "delta_chunk_failed", phase=phase, chunk=chunk_no, size=len(chunk)
                        )
                        raise
                    stats.batches += 1
                    stats.statements += len(statements)
                    stats.phases[phase] = stats.phases.get(phase, 0) + 1
        log.info("delta_applied", batches=stats.batches, **delta.summary())
        return stats


# ---------------------------------------------------------------------------
# Edge property reconciliation
# ---------------------------------------------------------------------------


@dataclass
class EdgeDiff:
    """Before/after comparison of one edge's properties.

    Attributes:
        added: Keys that did not exist, with their new values.
        removed: Keys that were dropped, with their old values.
        updated: Keys whose value changed, as ``(old, new)`` pairs.
        final_props: The edge's properties after the change.
    """

    added: dict[str, Any] = field(default_factory=dict)
    removed: dict[str, Any] = field(default_factory=dict)
    updated: dict[str, tuple[Any, Any]] = field(default_factory=dict)
    final_props: dict[str, Any] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed or self.updated)

    def as_overlay(self) -> dict[str, Any]:
        """Props overlay that realises this diff (``None`` removes a key)."""
        overlay: dict[str, Any] = dict(self.added)
        overlay.update({k: new for k, (_old, new) in self.updated.items()})
        overlay.update({k: None for k in self.removed})
        return overlay


def diff_props(
    current: dict[str, Any], desired: dict[str, Any], *, replace: bool = False
) -> EdgeDiff:
    """Compare edge props.

    In merge mode only keys explicitly set to ``None`` in *desired* are
    removed; in replace mode every current key absent from *desired* is
    removed as well.
    """
    result = EdgeDiff()
    for key, value in desired.items():
        if value is None:
            if key in current:
                result.removed[key] = current[key]
        elif key not in current:
            result.added[key] = value
        elif current[key] != value:
            result.updated[key] = (current[key], value)
    if replace:
        for key, value in current.items():
            if key not in desired:
                result.removed[key] = value

    final = {k: v for k, v in current.items() if k not in result.removed}
    final.update(result.added)
    final.update({k: new for k, (_old, new) in result.updated.items()})
    result.final_props = final
    return result


def upsert_edge_with_diff(
    gateway: GraphGateway,
    from_id: str,
    rel_type: str,
    to_id: str,
    desired: dict[str, Any],
    *,
    replace: bool = False,
) -> EdgeDiff:
    """Reconcile one edge's props with *desired* in a single transaction.

    The edge is created when missing.

    Raises:
        NotFoundError: If either endpoint does not exist.
    """
    with gateway.transaction():
        for node_id in (from_id, to_id):
            if gateway.get_node(node_id) is None:
                raise NotFoundError("node", node_id, f"endpoint of {rel_type}")
        current = gateway.read_edge_props(from_id, rel_type, to_id)
        result = diff_props(current, desired, replace=replace)
        gateway.relate(from_id, rel_type, to_id, result.as_overlay())
    log.debug(
        "edge_props_reconciled",
        rel_type=rel_type,
        added=len(result.added),
        removed=len(result.removed),
        updated=len(result.updated),
    )
    return result
