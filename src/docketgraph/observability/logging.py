"""Structured logging for docketgraph.

Events are emitted through structlog bound loggers and rendered by stdlib
handlers:

- a rich console handler on stderr whose level follows ``-v``
- an optional JSONL file handler (``--log``) that records every event

Store operations bind ``scope``/``version`` with :func:`operation_context`
so that nested events (delta batches, edge reconciles) carry them too.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path  # noqa: TC003 - Used at runtime for path operations
from typing import TYPE_CHECKING, Any

import structlog
from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from collections.abc import Iterator

    from structlog.typing import Processor

LOG_FILE_NAME = "debug.jsonl"

_VERBOSITY_LEVELS = {0: logging.WARNING, 1: logging.INFO}

# Driver internals log every routing table refresh at DEBUG
_NOISY_LOGGERS = ("neo4j", "neo4j.io", "neo4j.pool", "asyncio")

_configured = False
_file_handler: logging.FileHandler | None = None
_logs_dir: Path | None = None


class JSONLFileHandler(logging.FileHandler):
    """Writes one JSON object per record, flattening the structlog event dict."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry: dict[str, Any] = {
                "timestamp": datetime.now(UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
            }
            if isinstance(record.msg, dict):
                fields = {
                    k: v for k, v in record.msg.items() if k not in ("level", "timestamp")
                }
                entry["message"] = fields.pop("event", "")
                entry.update(fields)
            else:
                entry["message"] = record.getMessage()

            if self.stream:
                self.stream.write(json.dumps(entry, default=str) + "\n")
                self.stream.flush()
        except Exception:
            self.handleError(record)


def _console_handler(verbosity: int) -> RichHandler:
    return RichHandler(
        console=Console(stderr=True),
        rich_tracebacks=True,
        tracebacks_show_locals=verbosity >= 2,
        show_time=verbosity >= 1,
        show_path=verbosity >= 2,
        markup=False,
        level=_VERBOSITY_LEVELS.get(verbosity, logging.DEBUG),
    )


def _open_file_handler(logs_path: Path) -> JSONLFileHandler:
    logs_path.mkdir(parents=True, exist_ok=True)
    handler = JSONLFileHandler(str(logs_path / LOG_FILE_NAME), mode="a")
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging(
    verbosity: int = 0,
    log_to_file: bool = False,
    logs_path: Path | None = None,
) -> None:
    """Configure logging for docketgraph.

    Safe to call repeatedly; a previously opened log file is closed first.

    Args:
        verbosity: 0=WARNING (default), 1=INFO, 2+=DEBUG on the console.
        log_to_file: If True, write every event to ``{logs_path}/debug.jsonl``.
        logs_path: Directory that receives the log file. Required if log_to_file=True.

    Raises:
        ValueError: If log_to_file=True but logs_path is not provided.
    """
    global _configured, _file_handler, _logs_dir

    if log_to_file and logs_path is None:
        raise ValueError("logs_path is required when log_to_file=True")

    close_file_logging()
    _logs_dir = None

    handlers: list[logging.Handler] = [_console_handler(verbosity)]
    if log_to_file and logs_path is not None:
        _file_handler = _open_file_handler(logs_path)
        _logs_dir = logs_path
        handlers.append(_file_handler)

    # The root logger stays open at DEBUG whenever any sink wants more than WARNING;
    # handler levels do the filtering.
    root_level = logging.DEBUG if (verbosity > 0 or log_to_file) else logging.WARNING
    logging.basicConfig(level=root_level, format="%(message)s", handlers=handlers, force=True)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]
    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(root_level),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str | None = None) -> structlog.typing.FilteringBoundLogger:
    """Return a structured logger, configuring defaults on first use."""
    if not _configured:
        configure_logging()
    logger: structlog.typing.FilteringBoundLogger = structlog.get_logger(name)
    return logger


@contextmanager
def operation_context(**fields: Any) -> Iterator[None]:
    """Bind *fields* to every event logged inside the block."""
    with structlog.contextvars.bound_contextvars(**fields):
        yield


def get_logs_dir() -> Path | None:
    """Return the directory receiving file logs, or None when disabled."""
    return _logs_dir


def close_file_logging() -> None:
    """Close the JSONL file handler, if one is open."""
    global _file_handler
    if _file_handler is not None:
        _file_handler.close()
        _file_handler = None
