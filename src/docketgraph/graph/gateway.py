"""Persistence gateway protocol.

The GraphGateway protocol is the only seam through which the rest of the
package touches a store. SqliteGraphGateway and Neo4jGraphGateway implement
it; versioning and typed operations are written against the protocol only.

Labels and edge types are structural tokens: they are validated with
:func:`sanitize_token` before reaching a query, while data values are
always bound as parameters.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

from docketgraph.graph.errors import InvalidArgumentError

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence
    from contextlib import AbstractContextManager

    from docketgraph.graph.generic import GenericNode

_TOKEN_RE = re.compile(r"^[A-Za-z0-9_]+$")
_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_]")

DEFAULT_SEARCH_LIMIT = 25
MAX_SEARCH_LIMIT = 500

Direction = Literal["out", "in"]


def sanitize_token(token: str, what: str = "edge type") -> str:
    """Strip characters outside ``[A-Za-z0-9_]`` from a structural token.

    Args:
        token: Label, edge type or property name to be used structurally.
        what: Description used in the error message.

    Returns:
        The sanitised token.

    Raises:
        InvalidArgumentError: If nothing usable remains.
    """
    cleaned = _UNSAFE_RE.sub("", token or "")
    if not cleaned:
        raise InvalidArgumentError(what, f"{token!r} is blank after sanitising")
    return cleaned


def require_token(token: str, what: str = "label") -> str:
    """Return *token* unchanged if it is already a safe structural token."""
    if not token or not _TOKEN_RE.match(token):
        raise InvalidArgumentError(what, f"{token!r} must match [A-Za-z0-9_]+")
    return token


def clamp_search_limit(limit: int | None) -> int:
    """Apply the default and the upper bound to a search limit."""
    if limit is None or limit <= 0:
        return DEFAULT_SEARCH_LIMIT
    return min(limit, MAX_SEARCH_LIMIT)


class BatchOp(StrEnum):
    """Bulk operations understood by :meth:`GraphGateway.run_batch`.

    Row shapes:
        MERGE_NODES: ``{id, labels, props, on_create?, remove_labels?}``.
            Labels are added, props overlaid; ``on_create`` props are only
            written when the node did not exist. ``remove_labels`` not also
            listed in ``labels`` are taken off the node.
        UPDATE_NODES: ``{id, props}``. Overlay onto an existing node.
        DETACH_DELETE_NODES: ``{id}``. Node and all its edges.
        MERGE_EDGES: ``{from, to, type, props}``. No-op when an endpoint
            is missing.
        DELETE_EDGES: ``{from, to, type}``.

    In every overlay a ``None`` value removes the key and any other value
    replaces it whole; nested maps are never merged.
    """

    MERGE_NODES = "merge_nodes"
    UPDATE_NODES = "update_nodes"
    DETACH_DELETE_NODES = "detach_delete_nodes"
    MERGE_EDGES = "merge_edges"
    DELETE_EDGES = "delete_edges"


@dataclass
class Statement:
    """One bulk statement: an operation and the rows it applies to."""

    op: BatchOp
    rows: list[dict[str, Any]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)


@dataclass(frozen=True)
class EdgeRecord:
    """A persisted edge as read back from the store."""

    from_id: str
    to_id: str
    type: str
    props: dict[str, Any] = field(default_factory=dict, hash=False, compare=True)


@dataclass
class FulltextIndexSpec:
    """Full-text index over selected labels and properties."""

    name: str = "ft_node_all"
    labels: list[str] = field(
        default_factory=lambda: ["Case", "Docket", "Person", "Judge", "Lawyer"]
    )
    properties: list[str] = field(default_factory=lambda: ["name", "number", "court", "firm"])


@runtime_checkable
class GraphGateway(Protocol):
    """Storage protocol for property graphs.

    Each method is its own transactional unit unless called inside
    :meth:`transaction`, in which case it joins the open transaction.
    """

    # -- Transactions ------------------------------------------------------------

    def transaction(self) -> AbstractContextManager[None]:
        """Open (or join) a transaction; any exception rolls the block back."""
        ...

    # -- Nodes -------------------------------------------------------------------

    def upsert_node(self, node: GenericNode) -> GenericNode:
        """Create or merge a node, assigning a UUID when ``id`` is absent."""
        ...

    def get_node(self, node_id: str) -> GenericNode | None:
        """Return a node by id, or None."""
        ...

    def find_nodes(self, label: str, props: dict[str, Any] | None = None) -> list[GenericNode]:
        """Return nodes carrying *label* whose props equal every item in *props*."""
        ...

    def delete_node(self, node_id: str) -> None:
        """Detach-delete a node. No-op when absent."""
        ...

    # -- Edges -------------------------------------------------------------------

    def relate(
        self, from_id: str, rel_type: str, to_id: str, props: dict[str, Any] | None = None
    ) -> None:
        """Merge one directed edge and overlay *props* onto it."""
        ...

    def delete_edge(self, from_id: str, rel_type: str, to_id: str) -> None:
        """Remove the edge if present."""
        ...

    def read_edge_props(self, from_id: str, rel_type: str, to_id: str) -> dict[str, Any]:
        """Return edge props, or an empty dict when the edge is absent."""
        ...

    def expand(
        self,
        node_ids: Sequence[str],
        edge_type: str | None = None,
        direction: Direction = "out",
    ) -> list[tuple[str, EdgeRecord, GenericNode]]:
        """One-hop traversal from many sources: ``(source_id, edge, neighbour)``."""
        ...

    # -- Bulk and raw --------------------------------------------------------------

    def run_batch(self, statements: Sequence[Statement]) -> None:
        """Execute bulk statements in order."""
        ...

    def run_pattern_query(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Run a raw parameterised query in the store's native language."""
        ...

    # -- Schema and search ---------------------------------------------------------

    def ensure_index(self, spec: FulltextIndexSpec) -> None:
        """Create the full-text index if it does not exist."""
        ...

    def ensure_unique(self, label: str, prop: str) -> None:
        """Create a uniqueness constraint on ``(label, prop)`` if missing."""
        ...

    def search(
        self, index: str, text: str, limit: int | None = None
    ) -> list[tuple[GenericNode, float]]:
        """Full-text search returning nodes with relevance scores, best first."""
        ...

    def close(self) -> None:
        """Release the underlying connection or driver."""
        ...


def chunked(rows: Sequence[Any], size: int) -> Iterator[list[Any]]:
    """Yield consecutive slices of *rows* with at most *size* elements."""
    if size <= 0:
        raise InvalidArgumentError("batch_size", f"must be positive, got {size}")
    for start in range(0, len(rows), size):
        yield list(rows[start : start + size])
