"""Retry helper for operations that may hit transient store failures.

Every top-level mutation runs in one transaction that is rolled back on
failure, so a retry starts from a clean slate.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, TypeVar

from docketgraph.graph.errors import is_retryable
from docketgraph.observability.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

log = get_logger(__name__)

T = TypeVar("T")

MAX_TRANSIENT_RETRIES = 3


def with_retries(
    operation: Callable[[], T],
    *,
    attempts: int = MAX_TRANSIENT_RETRIES,
    backoff: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run *operation*, retrying retryable failures with linear backoff.

    Non-retryable errors, and the last retryable one, propagate unchanged.
    """
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except Exception as e:
            if attempt >= attempts or not is_retryable(e):
                raise
            log.warning("transient_failure_retrying", attempt=attempt, error=str(e))
            sleep(backoff * attempt)
    raise ValueError(f"attempts must be at least 1, got {attempts}")
