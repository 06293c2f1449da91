"""Observability module for docketgraph.

Provides structured logging to the console and to JSONL files.
"""

from docketgraph.observability.logging import (
    close_file_logging,
    configure_logging,
    get_logger,
    get_logs_dir,
    operation_context,
)

__all__ = [
    "close_file_logging",
    "configure_logging",
    "get_logger",
    "get_logs_dir",
    "operation_context",
]
