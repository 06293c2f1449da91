"""Tests for the pure diff engine."""

from __future__ import annotations

from docketgraph.graph.diff import Delta, EdgeView, GraphState, NodeUpdate, diff


def _state() -> GraphState:
    return GraphState(
        nodes={"a": {"name": "A"}, "b": {"name": "B"}, "c": {}},
        edges=[
            EdgeView("a", "b", "CITES"),
            EdgeView("b", "c", "CITES", id="e2"),
        ],
    )


class TestEdgeView:
    """Edge identity keys."""

    def test_key_prefers_explicit_id(self) -> None:
        assert EdgeView("a", "b", "CITES", id="e1").key == "ID::e1"

    def test_key_falls_back_to_composite(self) -> None:
        assert EdgeView("a", "b", "CITES").key == "CK::a|b|CITES"
        assert EdgeView("a", "b", "CITES", id="  ").key == "CK::a|b|CITES"

    def test_props_do_not_affect_equality(self) -> None:
        assert EdgeView("a", "b", "X", props={"w": 1}) == EdgeView("a", "b", "X")


class TestDiff:
    """Node and edge classification."""

    def test_identical_states_give_empty_delta(self) -> None:
        delta = diff(_state(), _state())
        assert delta.is_empty
        assert delta == Delta()

    def test_empty_to_state_adds_everything(self) -> None:
        delta = diff(GraphState(), _state())
        assert [n.key for n in delta.add_nodes] == ["a", "b", "c"]
        assert len(delta.add_edges) == 2
        assert delta.summary() == {
            "nodes_added": 3,
            "nodes_removed": 0,
            "nodes_updated": 0,
            "edges_added": 2,
            "edges_removed": 0,
        }

    def test_diff_is_symmetric(self) -> None:
        """Adds one way are removes the other way."""
        before = _state()
        after = GraphState(
            nodes={"a": {"name": "A"}, "d": {}},
            edges=[EdgeView("a", "d", "CITES")],
        )
        forward = diff(before, after)
        backward = diff(after, before)

        assert forward.add_nodes == backward.remove_nodes
        assert forward.remove_nodes == backward.add_nodes
        assert forward.add_edges == backward.remove_edges
        assert forward.remove_edges == backward.add_edges

    def test_changed_props_are_updates(self) -> None:
        before = GraphState(nodes={"a": {"name": "A", "status": "open"}})
        after = GraphState(nodes={"a": {"name": "A2"}})

        delta = diff(before, after)

        assert delta.update_nodes == [NodeUpdate("a", {}, {})]
        update = delta.update_nodes[0]
        assert update.before == {"name": "A", "status": "open"}
        assert update.after == {"name": "A2"}
        assert update.removed_keys == ["status"]

    def test_first_duplicate_identity_wins(self) -> None:
        """Later edges with an already-seen identity are ignored."""
        after = GraphState(
            nodes={"a": {}, "b": {}, "c": {}},
            edges=[EdgeView("a", "b", "CITES", id="e1"), EdgeView("a", "c", "CITES", id="e1")],
        )
        delta = diff(GraphState(nodes=dict(after.nodes)), after)
        assert delta.add_edges == [EdgeView("a", "b", "CITES", id="e1")]

    def test_rekeyed_edge_is_add_plus_remove(self) -> None:
        """An id-less edge gaining an id changes identity."""
        before = GraphState(nodes={"a": {}, "b": {}}, edges=[EdgeView("a", "b", "CITES")])
        after = GraphState(nodes={"a": {}, "b": {}}, edges=[EdgeView("a", "b", "CITES", id="e1")])

        delta = diff(before, after)

        assert [e.key for e in delta.add_edges] == ["ID::e1"]
        assert [e.key for e in delta.remove_edges] == ["CK::a|b|CITES"]

    def test_output_is_deterministic(self) -> None:
        before = GraphState(nodes={"x": {}, "y": {}})
        after = _state()
        assert diff(before, after) == diff(before, after)
