"""Versioned graph stores: snapshot-per-version and patch-and-diff."""

from docketgraph.versioning.base import VersionComparison, VersionedGraphStore
from docketgraph.versioning.patch import PatchVersionStore
from docketgraph.versioning.snapshot import SnapshotVersionStore

__all__ = [
    "PatchVersionStore",
    "SnapshotVersionStore",
    "VersionComparison",
    "VersionedGraphStore",
]
