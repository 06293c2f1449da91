"""docketgraph - versioned property graphs with diff-based reconciliation."""

__version__ = "0.1.0"
