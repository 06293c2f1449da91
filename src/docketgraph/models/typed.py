"""Typed domain entities.

A Case has assigned and reviewing persons; a Docket contains cases. A
person is a closed tagged variant: Judge or Lawyer, discriminated by
``kind``.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, Field


class Judge(BaseModel):
    """A judge sitting on a court."""

    kind: Literal["judge"] = "judge"
    id: str = Field(min_length=1)
    name: str
    court: str | None = None


class Lawyer(BaseModel):
    """A lawyer practising at a firm."""

    kind: Literal["lawyer"] = "lawyer"
    id: str = Field(min_length=1)
    name: str
    firm: str | None = None


Person = Annotated[Judge | Lawyer, Field(discriminator="kind")]


class Case(BaseModel):
    """A case with the people assigned to it and the people reviewing it."""

    id: str = Field(min_length=1)
    name: str
    assignees: list[Person] = Field(default_factory=list)
    reviewers: list[Person] = Field(default_factory=list)


class Docket(BaseModel):
    """A numbered docket grouping cases."""

    id: str = Field(min_length=1)
    number: str
    cases: list[Case] = Field(default_factory=list)
