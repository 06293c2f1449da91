"""Error types raised by the graph layer.

Every error derives from GraphStoreError so callers can catch the whole
family at one seam. Store adapters translate driver exceptions into
ConstraintViolationError (fatal) or TransientStoreError (retryable);
nothing else escapes a gateway.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class GraphStoreError(Exception):
    """Base class for docketgraph errors."""

    retryable: bool = False


@dataclass
class NotFoundError(GraphStoreError):
    """Raised when an entity, root node or version does not exist.

    Attributes:
        kind: What was looked up (e.g. "node", "version", "Case").
        key: The identifier that was not found.
        context: Where the lookup happened.
    """

    kind: str
    key: str
    context: str = ""

    def __post_init__(self) -> None:
        msg = f"{self.kind} '{self.key}' not found"
        if self.context:
            msg += f" ({self.context})"
        super().__init__(msg)


@dataclass
class InvalidArgumentError(GraphStoreError):
    """Raised when a caller passes a value the graph layer cannot use.

    Attributes:
        argument: Name of the offending argument.
        reason: Why the value was rejected.
    """

    argument: str
    reason: str

    def __post_init__(self) -> None:
        super().__init__(f"Invalid {self.argument}: {self.reason}")


@dataclass
class UnsupportedKindError(InvalidArgumentError):
    """Raised when a node carries no (or several) known discriminator labels.

    Attributes:
        labels: Labels found on the node.
        known: Discriminator labels the mapper understands.
    """

    argument: str = "labels"
    reason: str = ""
    labels: list[str] = field(default_factory=list)
    known: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.reason:
            self.reason = (
                f"expected exactly one of {sorted(self.known)}, got labels {self.labels}"
            )
        super().__post_init__()


class PatchError(GraphStoreError):
    """Base class for JSON Patch pipeline failures."""


@dataclass
class InvalidPatchError(PatchError):
    """Raised when a patch document is malformed or a ``test`` op fails.

    Attributes:
        reason: Human-readable description of the problem.
        index: Index of the offending operation, when known.
    """

    reason: str
    index: int | None = None

    def __post_init__(self) -> None:
        msg = f"Invalid patch: {self.reason}"
        if self.index is not None:
            msg = f"Invalid patch operation #{self.index}: {self.reason}"
        super().__init__(msg)


@dataclass
class PatchTargetMissingError(PatchError):
    """Raised when a patch path does not resolve in the current document."""

    reason: str

    def __post_init__(self) -> None:
        super().__init__(f"Patch target missing: {self.reason}")


@dataclass
class InvalidResultShapeError(PatchError):
    """Raised when a patched document no longer matches the expected model.

    Attributes:
        model: Name of the model the result was validated against.
        errors: Validation error details.
    """

    model: str
    errors: list[dict[str, Any]] = field(default_factory=list)

    def __post_init__(self) -> None:
        msg = f"Patched document is not a valid {self.model}"
        if self.errors:
            first = self.errors[0]
            loc = ".".join(str(p) for p in first.get("loc", ()))
            msg += f": {loc or '<root>'}: {first.get('msg', '')}"
            if len(self.errors) > 1:
                msg += f" (and {len(self.errors) - 1} more)"
        super().__init__(msg)


@dataclass
class VersionCommittedError(GraphStoreError):
    """Raised when mutating a version that has already been committed."""

    scope_id: str
    version_number: int

    def __post_init__(self) -> None:
        super().__init__(
            f"Version {self.version_number} of '{self.scope_id}' is committed and "
            "cannot be modified; create a new version instead"
        )


@dataclass
class ConstraintViolationError(GraphStoreError):
    """Raised when a write would break a store uniqueness constraint."""

    detail: str

    def __post_init__(self) -> None:
        super().__init__(f"Constraint violation: {self.detail}")


@dataclass
class TransientStoreError(GraphStoreError):
    """Raised on connectivity loss, timeouts or lock contention.

    The enclosing transaction has been rolled back; the whole operation
    can be retried.
    """

    detail: str
    retryable: bool = True

    def __post_init__(self) -> None:
        super().__init__(f"Transient store failure: {self.detail}")


def is_retryable(exc: BaseException) -> bool:
    """Check whether an exception (or anything in its cause chain) is retryable."""
    if isinstance(exc, GraphStoreError) and exc.retryable:
        return True
    cause = exc.__cause__
    if cause is not None:
        return is_retryable(cause)
    return False
