"""Bidirectional mapping between typed entities and GenericGraph.

``to_generic`` builds a star around the root entity; ``to_typed`` finds the
root by label and rebuilds collections from its outgoing edges. Person
sub-kinds are stored as an extra label next to ``Person`` and resolved
through ``PERSON_KINDS``, so the scan order of labels never matters.
"""

from __future__ import annotations

from typing import Any, overload

from docketgraph.graph.errors import InvalidArgumentError, NotFoundError, UnsupportedKindError
from docketgraph.graph.generic import GenericGraph, GenericNode
from docketgraph.models.typed import Case, Docket, Judge, Lawyer, Person

PERSON_LABEL = "Person"
CASE_LABEL = "Case"
DOCKET_LABEL = "Docket"

ASSIGNED_TO = "ASSIGNED_TO"
REVIEWS = "REVIEWS"
CONTAINS = "CONTAINS"

# Discriminator label -> (variant, the variant's own property)
PERSON_KINDS: dict[str, tuple[type[Judge] | type[Lawyer], str]] = {
    "Judge": (Judge, "court"),
    "Lawyer": (Lawyer, "firm"),
}
_LABEL_FOR_VARIANT = {variant: label for label, (variant, _) in PERSON_KINDS.items()}


# -- Single nodes ---------------------------------------------------------------


def person_node(person: Person) -> GenericNode:
    label = _LABEL_FOR_VARIANT[type(person)]
    _, own_prop = PERSON_KINDS[label]
    props: dict[str, Any] = {"name": person.name}
    value = getattr(person, own_prop)
    if value is not None:
        props[own_prop] = value
    return GenericNode(id=person.id, labels=[PERSON_LABEL, label], props=props)


def person_from_node(node: GenericNode) -> Person:
    """Rebuild a Judge or Lawyer from its discriminator label.

    Raises:
        UnsupportedKindError: If the node has none, or several, of the known labels.
    """
    present = [label for label in PERSON_KINDS if label in node.labels]
    if len(present) != 1:
        raise UnsupportedKindError(labels=list(node.labels), known=list(PERSON_KINDS))
    variant, own_prop = PERSON_KINDS[present[0]]
    return variant(
        id=_require_id(node),
        name=node.props.get("name", ""),
        **{own_prop: node.props.get(own_prop)},
    )


def stale_fields(node: GenericNode) -> tuple[list[str], dict[str, None]]:
    """Return the labels and props a typed write of *node* must clear.

    A person node is written whole: discriminator labels and variant
    properties it does not carry are leftovers of an earlier kind or value.
    Other nodes have nothing to clear.
    """
    if not node.has_label(PERSON_LABEL):
        return [], {}
    labels = [label for label in PERSON_KINDS if label not in node.labels]
    cleared = {prop: None for _, prop in PERSON_KINDS.values() if prop not in node.props}
    return labels, cleared


def case_node(case: Case) -> GenericNode:
    return GenericNode(id=case.id, labels=[CASE_LABEL], props={"name": case.name})


def docket_node(docket: Docket) -> GenericNode:
    return GenericNode(id=docket.id, labels=[DOCKET_LABEL], props={"number": docket.number})


def _require_id(node: GenericNode) -> str:
    if not node.id:
        raise InvalidArgumentError("node", f"{node.labels} node has no id")
    return node.id


# -- Typed -> generic -------------------------------------------------------------


class _GraphBuilder:
    """Accumulates a GenericGraph, reusing positions for repeated ids."""

    def __init__(self) -> None:
        self.graph = GenericGraph()
        self._positions: dict[str, int] = {}

    def node(self, node: GenericNode) -> int:
        key = node.id or ""
        if key and key in self._positions:
            return self._positions[key]
        index = self.graph.add_node(node)
        if key:
            self._positions[key] = index
        return index

    def case(self, case: Case) -> int:
        root = self.node(case_node(case))
        for person in case.assignees:
            self.graph.relate(root, ASSIGNED_TO, self.node(person_node(person)))
        for person in case.reviewers:
            self.graph.relate(root, REVIEWS, self.node(person_node(person)))
        return root


def to_generic(typed: Case | Docket) -> GenericGraph:
    """Build the star-shaped subgraph for a case or a docket.

    A docket's star carries its cases and, one hop further, each case's persons.
    """
    builder = _GraphBuilder()
    if isinstance(typed, Case):
        builder.case(typed)
    elif isinstance(typed, Docket):
        root = builder.node(docket_node(typed))
        for case in typed.cases:
            builder.graph.relate(root, CONTAINS, builder.case(case))
    else:
        raise InvalidArgumentError("entity", f"cannot map {type(typed).__name__}")
    return builder.graph


# -- Generic -> typed -------------------------------------------------------------


def _find_root(graph: GenericGraph, label: str) -> int:
    for i, node in enumerate(graph.nodes):
        if node.has_label(label):
            return i
    raise NotFoundError(label, "<root>", "no node carries the root label")


def _targets(graph: GenericGraph, index: int, rel_type: str) -> list[GenericNode]:
    return [graph.nodes[rel.to_index] for rel in graph.outgoing(index) if rel.type == rel_type]


def _case_at(graph: GenericGraph, index: int) -> Case:
    node = graph.nodes[index]
    return Case(
        id=_require_id(node),
        name=node.props.get("name", ""),
        assignees=[person_from_node(n) for n in _targets(graph, index, ASSIGNED_TO)],
        reviewers=[person_from_node(n) for n in _targets(graph, index, REVIEWS)],
    )


@overload
def to_typed(graph: GenericGraph, model: type[Case]) -> Case: ...


@overload
def to_typed(graph: GenericGraph, model: type[Docket]) -> Docket: ...


def to_typed(graph: GenericGraph, model: type[Case] | type[Docket]) -> Case | Docket:
    """Rebuild a typed entity from its star subgraph.

    Raises:
        NotFoundError: If no node carries the root label.
        UnsupportedKindError: If a person node cannot be discriminated.
    """
    if model is Case:
        return _case_at(graph, _find_root(graph, CASE_LABEL))
    if model is Docket:
        root = _find_root(graph, DOCKET_LABEL)
        node = graph.nodes[root]
        cases = [
            _case_at(graph, rel.to_index) for rel in graph.outgoing(root) if rel.type == CONTAINS
        ]
        return Docket(id=_require_id(node), number=str(node.props.get("number", "")), cases=cases)
    raise InvalidArgumentError("model", f"cannot map to {model.__name__}")
