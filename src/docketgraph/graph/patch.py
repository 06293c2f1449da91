"""RFC 6902 JSON Patch pipeline.

``apply_patch`` turns a materialised view plus a patch document into a
validated desired state; it never touches the store. The document is
checked up front so a malformed operation is reported before any other
operation runs.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, TypeVar

import jsonpatch
import jsonpointer
from pydantic import BaseModel, ValidationError

from docketgraph.graph.errors import (
    InvalidPatchError,
    InvalidResultShapeError,
    PatchTargetMissingError,
)

M = TypeVar("M", bound=BaseModel)

_REQUIRES_VALUE = {"add", "replace", "test"}
_REQUIRES_FROM = {"move", "copy"}
_KNOWN_OPS = {"add", "remove", "replace", "move", "copy", "test"}


def validate_patch_document(patch_doc: Any) -> list[dict[str, Any]]:
    """Check that *patch_doc* is a well-formed list of operations.

    Raises:
        InvalidPatchError: On the first malformed operation.
    """
    if not isinstance(patch_doc, list):
        raise InvalidPatchError(f"expected a JSON array, got {type(patch_doc).__name__}")
    for i, operation in enumerate(patch_doc):
        if not isinstance(operation, Mapping):
            raise InvalidPatchError("operation must be an object", index=i)
        op = operation.get("op")
        if op not in _KNOWN_OPS:
            raise InvalidPatchError(f"unknown op {op!r}", index=i)
        path = operation.get("path")
        if not isinstance(path, str) or (path and not path.startswith("/")):
            raise InvalidPatchError(f"path must be a JSON pointer, got {path!r}", index=i)
        if op in _REQUIRES_VALUE and "value" not in operation:
            raise InvalidPatchError(f"'{op}' requires 'value'", index=i)
        if op in _REQUIRES_FROM:
            source = operation.get("from")
            if not isinstance(source, str) or (source and not source.startswith("/")):
                raise InvalidPatchError(f"'{op}' requires a 'from' pointer", index=i)
    return [dict(operation) for operation in patch_doc]


def _apply(patch_doc: Any, document: Any) -> Any:
    operations = validate_patch_document(patch_doc)
    try:
        return jsonpatch.JsonPatch(operations).apply(document, in_place=False)
    except jsonpatch.JsonPatchTestFailed as e:
        raise InvalidPatchError(f"test failed: {e}") from e
    except jsonpatch.JsonPatchConflict as e:
        raise PatchTargetMissingError(str(e)) from e
    except jsonpatch.InvalidJsonPatch as e:
        raise InvalidPatchError(str(e)) from e
    except jsonpointer.JsonPointerException as e:
        raise PatchTargetMissingError(str(e)) from e


def apply_patch(
    patch_doc: Any,
    current: BaseModel | Mapping[str, Any],
    model: type[M],
) -> M:
    """Apply a JSON Patch to *current* and validate the result as *model*.

    Args:
        patch_doc: RFC 6902 operation array.
        current: Current state, as a model instance or its JSON form.
        model: Model the patched document must satisfy.

    Returns:
        The desired state.

    Raises:
        InvalidPatchError: Malformed document or failed ``test`` op.
        PatchTargetMissingError: A path does not exist in the document.
        InvalidResultShapeError: The result is not a valid *model*.
    """
    if isinstance(current, BaseModel):
        document: Any = current.model_dump(mode="json", by_alias=True, exclude_none=True)
    else:
        document = dict(current)
    result = _apply(patch_doc, document)
    try:
        return model.model_validate(result)
    except ValidationError as e:
        raise InvalidResultShapeError(
            model.__name__, [dict(err) for err in e.errors(include_url=False)]
        ) from e


def apply_patch_to_map(patch_doc: Any, current: Mapping[str, Any]) -> dict[str, Any]:
    """Apply a JSON Patch to a flat property map."""
    result = _apply(patch_doc, dict(current))
    if not isinstance(result, dict):
        raise InvalidResultShapeError(
            "property map", [{"loc": (), "msg": f"expected an object, got {type(result).__name__}"}]
        )
    return result
