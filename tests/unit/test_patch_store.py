"""Tests for patch-edited case team graphs."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from docketgraph.graph.errors import (
    InvalidPatchError,
    InvalidResultShapeError,
    PatchTargetMissingError,
    VersionCommittedError,
)
from docketgraph.versioning.patch import (
    ASSIGNED_TEAM,
    PatchVersionStore,
    default_rel_id,
    team_rel_id,
)

if TYPE_CHECKING:
    from docketgraph.graph.sqlite_store import SqliteGraphGateway
    from tests.conftest import FakeClock


@pytest.fixture
def store(gateway: SqliteGraphGateway, clock: FakeClock) -> PatchVersionStore:
    s = PatchVersionStore(gateway, clock=clock)
    s.ensure_schema()
    return s


def _add_member(team_id: str) -> dict[str, str]:
    return {"op": "add", "path": "/memberIds/-", "value": team_id}


def _add_edge(from_id: str, to_id: str, kind: str = "supports", **extra: str) -> dict[str, Any]:
    value = {"from": from_id, "to": to_id, "kind": kind, **extra}
    return {"op": "add", "path": "/edges/-", "value": value}


class TestPatchGraph:
    """JSON Patch against a proposed case version."""

    def test_add_members_and_edge(self, store: PatchVersionStore) -> None:
        info = store.create_version("case-1")

        graph = store.patch_graph(
            "case-1", 1, [_add_member("t1"), _add_member("t2"), _add_edge("t1", "t2")]
        )

        assert graph.member_ids == ["t1", "t2"]
        assert len(graph.edges) == 1
        edge = graph.edges[0]
        assert (edge.from_id, edge.to_id, edge.kind) == ("t1", "t2", "supports")
        assert edge.id == default_rel_id(info.version_id, "t1", "t2", "supports")
        assert graph.member_props == {}

    def test_explicit_rel_id_is_kept(
        self, store: PatchVersionStore, gateway: SqliteGraphGateway
    ) -> None:
        info = store.create_version("case-1")
        store.patch_graph(
            "case-1", 1, [_add_member("t1"), _add_member("t2"), _add_edge("t1", "t2", id="r1")]
        )

        wrapper = gateway.get_node(team_rel_id(info.version_id, "r1"))
        assert wrapper is not None
        assert wrapper.labels == ["TeamRel"]
        assert wrapper.props == {
            "relId": "r1",
            "caseId": "case-1",
            "versionId": info.version_id,
            "kind": "supports",
        }

    def test_removing_edge_kind_leaves_store_unchanged(self, store: PatchVersionStore) -> None:
        """A patch whose result is not a valid graph is rejected before any write."""
        store.create_version("case-1")
        before = store.patch_graph(
            "case-1", 1, [_add_member("t1"), _add_member("t2"), _add_edge("t1", "t2")]
        )

        with pytest.raises(InvalidResultShapeError):
            store.patch_graph(
                "case-1",
                1,
                [_add_member("t3"), {"op": "remove", "path": "/edges/0/kind"}],
            )

        assert store.load_graph("case-1", 1) == before

    def test_missing_path(self, store: PatchVersionStore) -> None:
        store.create_version("case-1")
        with pytest.raises(PatchTargetMissingError):
            store.patch_graph("case-1", 1, [{"op": "remove", "path": "/edges/0"}])

    def test_failed_test_op(self, store: PatchVersionStore) -> None:
        store.create_version("case-1")
        with pytest.raises(InvalidPatchError):
            store.patch_graph(
                "case-1",
                1,
                [{"op": "test", "path": "/memberIds", "value": ["x"]}, _add_member("t1")],
            )
        assert store.load_graph("case-1", 1).member_ids == []

    def test_removing_team_keeps_entity(
        self, store: PatchVersionStore, gateway: SqliteGraphGateway
    ) -> None:
        """Dropping a member removes its membership and its relations, not the team."""
        info = store.create_version("case-1")
        graph = store.patch_graph(
            "case-1", 1, [_add_member("t1"), _add_member("t2"), _add_edge("t1", "t2")]
        )
        rel_id = graph.edges[0].id
        assert rel_id is not None

        after = store.patch_graph("case-1", 1, [{"op": "remove", "path": "/memberIds/0"}])

        assert after.member_ids == ["t2"]
        assert after.edges == []
        assert gateway.get_node("t1") is not None
        assert gateway.get_node(team_rel_id(info.version_id, rel_id)) is None
        assert gateway.read_edge_props(info.version_id, ASSIGNED_TEAM, "t1") == {}

    def test_remove_edge_by_index(self, store: PatchVersionStore) -> None:
        store.create_version("case-1")
        store.patch_graph(
            "case-1",
            1,
            [
                _add_member("t1"),
                _add_member("t2"),
                _add_edge("t1", "t2"),
                _add_edge("t2", "t1", "reports_to"),
            ],
        )

        after = store.patch_graph("case-1", 1, [{"op": "remove", "path": "/edges/0"}])

        assert [e.kind for e in after.edges] == ["reports_to"]

    def test_committed_version_rejects_patch(self, store: PatchVersionStore) -> None:
        store.create_version("case-1")
        store.commit_version("case-1", 1)
        with pytest.raises(VersionCommittedError):
            store.patch_graph("case-1", 1, [_add_member("t1")])


class TestPatchStoreSync:
    """Desired-state syncs and copy-forward for case versions."""

    def test_ambiguous_composite_adopts_first_id(self, store: PatchVersionStore) -> None:
        """Two same-kind edges between the same teams: an id-less desired edge keeps the first."""
        store.create_version("case-1")
        store.patch_graph(
            "case-1",
            1,
            [
                _add_member("t1"),
                _add_member("t2"),
                _add_edge("t1", "t2", id="r1"),
                _add_edge("t1", "t2", id="r2"),
            ],
        )

        result = store.sync_graph(
            "case-1",
            1,
            {"memberIds": ["t1", "t2"], "edges": [{"from": "t1", "to": "t2", "kind": "supports"}]},
        )

        assert (result.edges_added, result.edges_removed) == (0, 1)
        assert [e.id for e in store.load_graph("case-1", 1).edges] == ["r1"]

    def test_member_props_are_ignored(self, store: PatchVersionStore) -> None:
        store.create_version("case-1")
        store.sync_graph("case-1", 1, {"memberIds": ["t1"], "memberProps": {"t1": {"x": 1}}})
        assert store.load_graph("case-1", 1).member_props == {}

    def test_copy_forward_keeps_rel_ids(
        self, store: PatchVersionStore, gateway: SqliteGraphGateway
    ) -> None:
        store.create_version("case-1")
        store.patch_graph(
            "case-1", 1, [_add_member("t1"), _add_member("t2"), _add_edge("t1", "t2", id="r1")]
        )
        store.commit_version("case-1", 1)

        second = store.create_version("case-1")
        graph = store.load_graph("case-1", 2)

        assert graph == store.load_graph("case-1", 1)
        assert gateway.get_node(team_rel_id(second.version_id, "r1")) is not None

    def test_compare_versions(self, store: PatchVersionStore) -> None:
        store.create_version("case-1")
        store.patch_graph("case-1", 1, [_add_member("t1"), _add_member("t2")])
        store.commit_version("case-1", 1)
        store.create_version("case-1")
        store.patch_graph("case-1", 2, [{"op": "replace", "path": "/memberIds/0", "value": "t3"}])

        comparison = store.compare_versions("case-1", 1, 2)

        assert comparison.added == ["t3"]
        assert comparison.removed == ["t1"]
        assert comparison.unchanged == ["t2"]
