"""Domain and projection models."""

from docketgraph.models.typed import Case, Docket, Judge, Lawyer, Person
from docketgraph.models.versioning import (
    GraphSyncResult,
    VersionEdge,
    VersionGraph,
    VersionInfo,
    VersionState,
)

__all__ = [
    "Case",
    "Docket",
    "GraphSyncResult",
    "Judge",
    "Lawyer",
    "Person",
    "VersionEdge",
    "VersionGraph",
    "VersionInfo",
    "VersionState",
]
