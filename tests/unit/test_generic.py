"""Tests for the label/type-erased graph model."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from docketgraph.graph.generic import GenericGraph, GenericNode, GenericRelationship


class TestGenericNode:
    """Validation of GenericNode."""

    def test_labels_are_deduplicated_in_order(self) -> None:
        """Repeated labels collapse while first-seen order is kept."""
        node = GenericNode(labels=["Person", "Judge", "Person"])
        assert node.labels == ["Person", "Judge"]

    def test_requires_at_least_one_label(self) -> None:
        with pytest.raises(ValidationError):
            GenericNode(labels=[])

    def test_rejects_blank_label(self) -> None:
        with pytest.raises(ValidationError):
            GenericNode(labels=["Case", "  "])

    def test_id_is_optional(self) -> None:
        """A node without id is transient."""
        node = GenericNode(labels=["Case"], props={"name": "X"})
        assert node.id is None
        assert node.has_label("Case")
        assert not node.has_label("Docket")


class TestGenericGraph:
    """Relationship indexing and helpers."""

    def test_relationship_indices_must_be_in_bounds(self) -> None:
        """A relationship pointing past the node list fails validation."""
        with pytest.raises(ValidationError, match="references index 1"):
            GenericGraph(
                nodes=[GenericNode(id="a", labels=["Case"])],
                relationships=[GenericRelationship(from_index=0, to_index=1, type="REVIEWS")],
            )

    def test_negative_index_rejected(self) -> None:
        with pytest.raises(ValidationError):
            GenericRelationship(from_index=-1, to_index=0, type="REVIEWS")

    def test_blank_relationship_type_rejected(self) -> None:
        with pytest.raises(ValidationError):
            GenericRelationship(from_index=0, to_index=0, type=" ")

    def test_add_node_and_relate(self) -> None:
        """add_node returns positions usable by relate."""
        graph = GenericGraph()
        a = graph.add_node(GenericNode(id="a", labels=["Case"]))
        b = graph.add_node(GenericNode(id="b", labels=["Person", "Judge"]))
        graph.relate(a, "REVIEWS", b, {"since": "2020"})

        assert (a, b) == (0, 1)
        assert graph.index_of("b") == 1
        assert graph.index_of("missing") is None
        assert [r.type for r in graph.outgoing(a)] == ["REVIEWS"]
        assert graph.outgoing(b) == []

    def test_relate_to_missing_position_raises(self) -> None:
        graph = GenericGraph()
        graph.add_node(GenericNode(id="a", labels=["Case"]))
        with pytest.raises(ValueError, match="missing node index"):
            graph.relate(0, "REVIEWS", 3)
