"""
Transform helpers.

Transforms are opaque to the engine: a callable taking a ChangeBatch and
returning output rows. These helpers cover the common shapes and resolve
"package.module:function" references used in pipeline definition files.
"""

from __future__ import annotations

import importlib
from collections.abc import Callable, Mapping
from typing import Any

from .stage import ChangeBatch, Transform

RowFunction = Callable[[dict[str, Any]], "Mapping[str, Any] | None"]


def inserts_only(row_fn: RowFunction) -> Transform:
    """Adapt a per-row function into a batch transform over INSERT entries.

    UPDATE and DELETE entries are ignored. Returning None from row_fn
    drops the row.

    Example:
        >>> transform = inserts_only(lambda row: {"temp_cel": row["temp_kel"] - 273.15})
    """

    def transform(batch: ChangeBatch) -> list[Mapping[str, Any]]:
        output = []
        for row in batch.inserted_rows():
            result = row_fn(row)
            if result is not None:
                output.append(result)
        return output

    transform.__name__ = getattr(row_fn, "__name__", "inserts_only")
    transform.__qualname__ = transform.__name__
    return transform


def passthrough(batch: ChangeBatch) -> list[dict[str, Any]]:
    """Copy inserted rows unchanged."""
    return batch.inserted_rows()


def resolve_transform(reference: str | Transform) -> Transform:
    """Resolve a transform reference.

    Accepts a callable, or "package.module:function". A function decorated
    as a row function (``row_transform``) is wrapped with inserts_only().

    Raises:
        ValueError: If the reference cannot be imported or is not callable
    """
    if callable(reference):
        return reference

    module_path, sep, attr = reference.partition(":")
    if not sep or not module_path or not attr:
        raise ValueError(
            f"Invalid transform reference {reference!r}, expected 'package.module:function'"
        )

    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ValueError(f"Cannot import transform module {module_path!r}: {e}") from e

    target: Any = module
    for part in attr.split("."):
        target = getattr(target, part, None)
        if target is None:
            raise ValueError(f"Module {module_path!r} has no attribute {attr!r}")

    if not callable(target):
        raise ValueError(f"Transform {reference!r} is not callable")

    if getattr(target, "__changeflow_row_transform__", False):
        return inserts_only(target)
    return target


def row_transform(fn: RowFunction) -> RowFunction:
    """Mark a per-row function so definition files can reference it directly."""
    fn.__changeflow_row_transform__ = True  # type: ignore[attr-defined]
    return fn
