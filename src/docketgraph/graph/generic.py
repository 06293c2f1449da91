"""Label/type-erased graph model.

GenericNode, GenericRelationship and GenericGraph are the lingua franca
between typed domain objects and the persistence gateway. Relationships
reference nodes by position in the payload's node list; positions are
only meaningful inside one in-memory graph and are never persisted.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class GenericNode(BaseModel):
    """A node with an opaque id, one or more labels and an open property bag.

    A node without ``id`` is transient. The store assigns one on first
    persistence and it never changes afterwards.
    """

    id: str | None = None
    labels: list[str] = Field(min_length=1)
    props: dict[str, Any] = Field(default_factory=dict)

    @field_validator("labels")
    @classmethod
    def _dedupe_labels(cls, labels: list[str]) -> list[str]:
        seen: list[str] = []
        for label in labels:
            if not label or not label.strip():
                raise ValueError("labels must be non-blank")
            if label not in seen:
                seen.append(label)
        return seen

    def has_label(self, label: str) -> bool:
        return label in self.labels


class GenericRelationship(BaseModel):
    """A directed, typed edge between two nodes of the same payload."""

    from_index: int = Field(ge=0)
    to_index: int = Field(ge=0)
    type: str
    props: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type")
    @classmethod
    def _type_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("relationship type must be non-blank")
        return value


class GenericGraph(BaseModel):
    """Ordered node list plus relationships that index into it."""

    nodes: list[GenericNode] = Field(default_factory=list)
    relationships: list[GenericRelationship] = Field(default_factory=list)

    @model_validator(mode="after")
    def _indices_in_bounds(self) -> GenericGraph:
        size = len(self.nodes)
        for i, rel in enumerate(self.relationships):
            if rel.from_index >= size or rel.to_index >= size:
                raise ValueError(
                    f"relationship {i} ({rel.type}) references index "
                    f"{max(rel.from_index, rel.to_index)} but graph has {size} node(s)"
                )
        return self

    def add_node(self, node: GenericNode) -> int:
        """Append a node and return its position."""
        self.nodes.append(node)
        return len(self.nodes) - 1

    def relate(
        self,
        from_index: int,
        rel_type: str,
        to_index: int,
        props: dict[str, Any] | None = None,
    ) -> GenericRelationship:
        """Append a relationship between two existing positions."""
        rel = GenericRelationship(
            from_index=from_index, to_index=to_index, type=rel_type, props=props or {}
        )
        if from_index >= len(self.nodes) or to_index >= len(self.nodes):
            raise ValueError(f"relationship {rel_type} references a missing node index")
        self.relationships.append(rel)
        return rel

    def index_of(self, node_id: str) -> int | None:
        """Return the position of the node with *node_id*, if present."""
        for i, node in enumerate(self.nodes):
            if node.id == node_id:
                return i
        return None

    def outgoing(self, index: int) -> list[GenericRelationship]:
        """Relationships leaving the node at *index*, in payload order."""
        return [rel for rel in self.relationships if rel.from_index == index]
