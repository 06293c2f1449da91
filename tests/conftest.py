"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from docketgraph.graph.sqlite_store import SqliteGraphGateway

if TYPE_CHECKING:
    from collections.abc import Iterator

_ENV_VARS = (
    "DOCKETGRAPH_CONFIG",
    "DOCKETGRAPH_BACKEND",
    "DOCKETGRAPH_SQLITE_PATH",
    "DOCKETGRAPH_STRATEGY",
    "DOCKETGRAPH_BATCH_SIZE",
    "NEO4J_URI",
    "NEO4J_USER",
    "NEO4J_PASSWORD",
    "NEO4J_DATABASE",
)


class FakeClock:
    """Deterministic clock; call to read, ``advance`` to move forward."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer environment overrides out of test runs."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def gateway() -> Iterator[SqliteGraphGateway]:
    """In-memory SQLite gateway."""
    gw = SqliteGraphGateway(":memory:")
    yield gw
    gw.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 1, 9, 0, tzinfo=UTC))
