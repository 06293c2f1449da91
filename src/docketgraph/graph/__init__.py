"""Generic property graphs: model, diff, delta application and storage gateways."""

from docketgraph.graph.delta import (
    DeltaApplier,
    EdgeDiff,
    GenericStatementBuilder,
    diff_props,
    upsert_edge_with_diff,
)
from docketgraph.graph.diff import Delta, EdgeView, GraphState, diff
from docketgraph.graph.errors import (
    ConstraintViolationError,
    GraphStoreError,
    InvalidArgumentError,
    InvalidPatchError,
    InvalidResultShapeError,
    NotFoundError,
    PatchError,
    PatchTargetMissingError,
    TransientStoreError,
    UnsupportedKindError,
    VersionCommittedError,
    is_retryable,
)
from docketgraph.graph.gateway import (
    BatchOp,
    EdgeRecord,
    FulltextIndexSpec,
    GraphGateway,
    Statement,
)
from docketgraph.graph.generic import GenericGraph, GenericNode, GenericRelationship
from docketgraph.graph.patch import apply_patch, apply_patch_to_map
from docketgraph.graph.sqlite_store import SqliteGraphGateway

__all__ = [
    "BatchOp",
    "ConstraintViolationError",
    "Delta",
    "DeltaApplier",
    "EdgeDiff",
    "EdgeRecord",
    "EdgeView",
    "FulltextIndexSpec",
    "GenericGraph",
    "GenericNode",
    "GenericRelationship",
    "GenericStatementBuilder",
    "GraphGateway",
    "GraphState",
    "GraphStoreError",
    "InvalidArgumentError",
    "InvalidPatchError",
    "InvalidResultShapeError",
    "NotFoundError",
    "PatchError",
    "PatchTargetMissingError",
    "SqliteGraphGateway",
    "Statement",
    "TransientStoreError",
    "UnsupportedKindError",
    "VersionCommittedError",
    "apply_patch",
    "apply_patch_to_map",
    "diff",
    "diff_props",
    "is_retryable",
    "upsert_edge_with_diff",
]
