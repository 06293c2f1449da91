"""Tests for snapshot-per-version docket graphs."""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Any

import pytest

from docketgraph.graph.errors import (
    ConstraintViolationError,
    InvalidArgumentError,
    NotFoundError,
    VersionCommittedError,
)
from docketgraph.graph.generic import GenericNode
from docketgraph.models.versioning import VersionGraph, VersionState
from docketgraph.versioning.snapshot import SnapshotVersionStore, snapshot_id

if TYPE_CHECKING:
    from docketgraph.graph.sqlite_store import SqliteGraphGateway
    from tests.conftest import FakeClock

RELATED = "RELATED_TO_CASE"


@pytest.fixture
def store(gateway: SqliteGraphGateway, clock: FakeClock) -> SnapshotVersionStore:
    s = SnapshotVersionStore(gateway, clock=clock)
    s.ensure_schema()
    return s


def _graph(
    *members: str, edges: list[tuple[str, str]] | None = None, **names: str
) -> dict[str, Any]:
    return {
        "memberIds": list(members),
        "edges": [{"from": a, "to": b, "kind": RELATED} for a, b in edges or []],
        "memberProps": {m: {"name": n} for m, n in names.items()},
    }


class TestVersionLifecycle:
    """Create, commit and look up versions."""

    def test_versions_are_numbered_sequentially(self, store: SnapshotVersionStore) -> None:
        first = store.create_version("d1", description="initial")
        second = store.create_version("d1")

        assert (first.version_number, second.version_number) == (1, 2)
        assert first.state is VersionState.PROPOSED
        assert [v.version_number for v in store.list_versions("d1")] == [1, 2]
        assert store.get_version("d1", 1).description == "initial"

    def test_scopes_number_independently(self, store: SnapshotVersionStore) -> None:
        store.create_version("d1")
        assert store.create_version("d2").version_number == 1

    def test_blank_scope_rejected(self, store: SnapshotVersionStore) -> None:
        with pytest.raises(InvalidArgumentError):
            store.create_version("  ")

    def test_unknown_version(self, store: SnapshotVersionStore) -> None:
        with pytest.raises(NotFoundError):
            store.get_version("d1", 4)

    def test_commit_is_terminal_and_idempotent(self, store: SnapshotVersionStore) -> None:
        store.create_version("d1")
        committed = store.commit_version("d1", 1)
        again = store.commit_version("d1", 1)

        assert committed.committed
        assert again.committed
        assert store.latest_committed("d1") == store.get_version("d1", 1)

    def test_committed_version_rejects_sync(self, store: SnapshotVersionStore) -> None:
        store.create_version("d1")
        store.commit_version("d1", 1)

        with pytest.raises(VersionCommittedError, match="create a new version"):
            store.sync_graph("d1", 1, _graph("c1"))
        with pytest.raises(VersionCommittedError):
            store.patch_graph("d1", 1, [{"op": "add", "path": "/memberIds/-", "value": "c1"}])

    def test_version_number_collision(
        self, store: SnapshotVersionStore, gateway: SqliteGraphGateway
    ) -> None:
        """A second writer claiming the same number hits the versionKey constraint."""
        store.create_version("d1")
        with pytest.raises(ConstraintViolationError):
            gateway.upsert_node(
                GenericNode(id="rogue", labels=["DocketVersion"], props={"versionKey": "d1:1"})
            )


class TestSync:
    """Reconciling a proposed version with a desired graph."""

    def test_add_then_remove_case(
        self, store: SnapshotVersionStore, gateway: SqliteGraphGateway
    ) -> None:
        """Removing a case deletes its snapshot and keeps the shared Case."""
        info = store.create_version("d1")
        added = store.sync_graph("d1", 1, _graph("c1", c1="Smith v Jones"))
        removed = store.sync_graph("d1", 1, {"memberIds": []})

        assert (added.nodes_added, added.nodes_removed) == (1, 0)
        assert (removed.nodes_added, removed.nodes_removed) == (0, 1)
        assert store.load_graph("d1", 1).member_ids == []
        assert gateway.get_node(snapshot_id(info.version_id, "c1")) is None
        case = gateway.get_node("c1")
        assert case is not None
        assert case.props["name"] == "Smith v Jones"
        assert "createdAt" in case.props

    def test_sync_is_idempotent(self, store: SnapshotVersionStore) -> None:
        store.create_version("d1")
        desired = _graph("c1", "c2", edges=[("c1", "c2")], c1="A", c2="B")
        store.sync_graph("d1", 1, desired)

        again = store.sync_graph("d1", 1, desired)

        assert again.nodes_added == again.nodes_removed == again.nodes_updated == 0
        assert again.edges_added == again.edges_removed == 0

    def test_load_returns_members_edges_and_props(self, store: SnapshotVersionStore) -> None:
        store.create_version("d1")
        store.sync_graph("d1", 1, _graph("c1", "c2", edges=[("c1", "c2")], c1="A", c2="B"))

        graph = store.load_graph("d1", 1)

        assert graph.member_ids == ["c1", "c2"]
        assert [(e.from_id, e.to_id, e.kind) for e in graph.edges] == [("c1", "c2", RELATED)]
        assert graph.member_props == {"c1": {"name": "A"}, "c2": {"name": "B"}}

    def test_edges_to_non_members_are_dropped(self, store: SnapshotVersionStore) -> None:
        store.create_version("d1")
        result = store.sync_graph("d1", 1, _graph("c1", edges=[("c1", "zz")]))
        assert result.edges_added == 0
        assert store.load_graph("d1", 1).edges == []

    def test_duplicate_edge_ids_keep_first(self, store: SnapshotVersionStore) -> None:
        store.create_version("d1")
        desired = {
            "memberIds": ["a", "b", "c"],
            "edges": [
                {"id": "e1", "from": "a", "to": "b", "kind": RELATED},
                {"id": "e1", "from": "a", "to": "c", "kind": RELATED},
            ],
        }
        store.sync_graph("d1", 1, desired)

        edges = store.load_graph("d1", 1).edges
        assert [(e.id, e.to_id) for e in edges] == [("e1", "b")]

    def test_same_pair_and_kind_keeps_first_edge(self, store: SnapshotVersionStore) -> None:
        """Distinct ids on one (from, to, kind) collapse to the first and stay stable."""
        store.create_version("d1")
        desired = {
            "memberIds": ["a", "b"],
            "edges": [
                {"id": "e1", "from": "a", "to": "b", "kind": RELATED},
                {"id": "e2", "from": "a", "to": "b", "kind": RELATED},
            ],
        }

        first = store.sync_graph("d1", 1, desired)
        second = store.sync_graph("d1", 1, desired)

        assert (first.edges_added, first.edges_removed) == (1, 0)
        assert (second.edges_added, second.edges_removed) == (0, 0)
        assert [e.id for e in store.load_graph("d1", 1).edges] == ["e1"]

    def test_nested_member_props_are_replaced(self, store: SnapshotVersionStore) -> None:
        store.create_version("d1")
        store.sync_graph("d1", 1, {"memberIds": ["c1"], "memberProps": {"c1": {"meta": {"a": 1}}}})
        desired = {"memberIds": ["c1"], "memberProps": {"c1": {"meta": {"b": 2}}}}

        changed = store.sync_graph("d1", 1, desired)
        again = store.sync_graph("d1", 1, desired)

        assert changed.nodes_updated == 1
        assert store.load_graph("d1", 1).member_props == {"c1": {"meta": {"b": 2}}}
        assert again.nodes_updated == 0

    def test_edge_gaining_an_id_is_kept(self, store: SnapshotVersionStore) -> None:
        """Re-keying an edge stores the id on the same edge."""
        store.create_version("d1")
        store.sync_graph("d1", 1, _graph("a", "b", edges=[("a", "b")]))
        store.sync_graph(
            "d1",
            1,
            {
                "memberIds": ["a", "b"],
                "edges": [{"id": "e9", "from": "a", "to": "b", "kind": RELATED}],
            },
        )

        assert [e.id for e in store.load_graph("d1", 1).edges] == ["e9"]

    def test_member_without_props_keeps_current(self, store: SnapshotVersionStore) -> None:
        store.create_version("d1")
        store.sync_graph("d1", 1, _graph("c1", c1="A"))
        result = store.sync_graph("d1", 1, {"memberIds": ["c1", "c2"]})

        assert result.nodes_updated == 0
        assert store.load_graph("d1", 1).member_props["c1"] == {"name": "A"}

    def test_reserved_kind_rejected_atomically(self, store: SnapshotVersionStore) -> None:
        store.create_version("d1")
        desired = {
            "memberIds": ["a", "b"],
            "edges": [{"from": "a", "to": "b", "kind": "SNAPSHOT_OF"}],
        }
        with pytest.raises(InvalidArgumentError, match="reserved"):
            store.sync_graph("d1", 1, desired)
        assert store.load_graph("d1", 1).member_ids == []

    def test_invalid_desired_graph(self, store: SnapshotVersionStore) -> None:
        store.create_version("d1")
        with pytest.raises(InvalidArgumentError, match="desired graph"):
            store.sync_graph("d1", 1, {"memberIds": [""]})

    def test_accepts_model_instance(self, store: SnapshotVersionStore) -> None:
        store.create_version("d1")
        result = store.sync_graph("d1", 1, VersionGraph(member_ids=["c1"]))
        assert result.nodes_added == 1
        assert result.scope_id == "d1"


class TestCopyForward:
    """New versions start from the latest committed one."""

    def test_members_and_edges_are_copied(
        self, store: SnapshotVersionStore, gateway: SqliteGraphGateway
    ) -> None:
        first = store.create_version("d1")
        store.sync_graph("d1", 1, _graph("a", "b", edges=[("a", "b")], a="A", b="B"))
        store.commit_version("d1", 1)

        second = store.create_version("d1")

        assert store.load_graph("d1", 2) == store.load_graph("d1", 1)
        assert snapshot_id(second.version_id, "a") != snapshot_id(first.version_id, "a")
        assert gateway.get_node(snapshot_id(second.version_id, "a")) is not None

    def test_proposed_versions_are_not_copied(self, store: SnapshotVersionStore) -> None:
        store.create_version("d1")
        store.sync_graph("d1", 1, _graph("a"))
        store.create_version("d1")
        assert store.load_graph("d1", 2).member_ids == []

    def test_no_copy(self, store: SnapshotVersionStore) -> None:
        store.create_version("d1")
        store.sync_graph("d1", 1, _graph("a"))
        store.commit_version("d1", 1)
        store.create_version("d1", copy_forward=False)
        assert store.load_graph("d1", 2).member_ids == []

    def test_older_versions_keep_frozen_props(
        self, store: SnapshotVersionStore, gateway: SqliteGraphGateway
    ) -> None:
        """Renaming a case in v2 updates the Case but not v1's snapshot."""
        store.create_version("d1")
        store.sync_graph("d1", 1, _graph("a", a="Old name"))
        store.commit_version("d1", 1)
        store.create_version("d1")

        result = store.sync_graph("d1", 2, _graph("a", a="New name"))

        assert result.nodes_updated == 1
        assert store.load_graph("d1", 1).member_props["a"] == {"name": "Old name"}
        assert store.load_graph("d1", 2).member_props["a"] == {"name": "New name"}
        case = gateway.get_node("a")
        assert case is not None
        assert case.props["name"] == "New name"


class TestReplaceAndQueries:
    """replace_graph, as-of lookups, statistics and comparison."""

    def test_replace_creates_and_commits(self, store: SnapshotVersionStore) -> None:
        store.replace_graph("d1", _graph("a"))
        result = store.replace_graph("d1", _graph("a", "b"), description="add b")

        assert result.version_number == 2
        assert (result.nodes_added, result.nodes_removed) == (1, 0)
        info = store.get_version("d1", 2)
        assert info.committed
        assert info.description == "add b"

    def test_replace_rolls_back_on_failure(self, store: SnapshotVersionStore) -> None:
        bad = {"memberIds": ["a", "b"], "edges": [{"from": "a", "to": "b", "kind": "SNAPSHOT_OF"}]}
        with pytest.raises(InvalidArgumentError):
            store.replace_graph("d1", bad)
        assert store.list_versions("d1") == []

    def test_version_as_of(self, store: SnapshotVersionStore, clock: FakeClock) -> None:
        t0 = clock()
        store.replace_graph("d1", _graph("a"), as_of=t0)
        store.replace_graph("d1", _graph("b"), as_of=t0 + timedelta(days=1))
        store.create_version("d1", as_of=t0 + timedelta(hours=1))

        assert store.version_as_of("d1", t0 - timedelta(seconds=1)) is None
        at_noon = store.version_as_of("d1", t0 + timedelta(hours=12))
        later = store.version_as_of("d1", t0 + timedelta(days=3))
        assert at_noon is not None and at_noon.version_number == 1
        assert later is not None and later.version_number == 2

    def test_as_of_tie_goes_to_higher_number(
        self, store: SnapshotVersionStore, clock: FakeClock
    ) -> None:
        t0 = clock()
        store.replace_graph("d1", _graph("a"), as_of=t0)
        store.replace_graph("d1", _graph("b"), as_of=t0)

        found = store.version_as_of("d1", t0)
        assert found is not None
        assert found.version_number == 2

    def test_naive_timestamps_are_utc(self, store: SnapshotVersionStore, clock: FakeClock) -> None:
        t0 = clock()
        store.replace_graph("d1", _graph("a"), as_of=t0)
        found = store.version_as_of("d1", t0.replace(tzinfo=None))
        assert found is not None

    def test_statistics(self, store: SnapshotVersionStore) -> None:
        store.create_version("d1")
        store.sync_graph("d1", 1, _graph("a", "b", edges=[("a", "b")]))
        assert store.version_statistics("d1", 1) == {
            "versionNumber": 1,
            "state": "proposed",
            "memberCount": 2,
            "edgeCount": 1,
        }

    def test_compare_versions(self, store: SnapshotVersionStore) -> None:
        store.replace_graph("d1", _graph("a", "b"))
        store.replace_graph("d1", _graph("b", "c", edges=[("b", "c")]))

        comparison = store.compare_versions("d1", 1, 2)

        assert comparison.added == ["c"]
        assert comparison.removed == ["a"]
        assert comparison.unchanged == ["b"]
        assert (comparison.edges_added, comparison.edges_removed) == (1, 0)
