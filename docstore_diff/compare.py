from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Optional

from docstore_diff.models import Diff, ValueKind, value_kind
from docstore_diff.normalizer import without_metadata


def compare_documents(doc_a: Optional[dict], doc_b: Optional[dict], *, compare_metadata: bool = False) -> list[Diff]:
    if not compare_metadata:
        doc_a = without_metadata(doc_a)
        doc_b = without_metadata(doc_b)
    return diff_values(doc_a, doc_b)


def diff_values(a: Any, b: Any) -> list[Diff]:
    """
    Path-addressed differences between two canonical values.

    Only plain mappings are recursed into; arrays, tagged values and scalars are compared as units.
    Keys are visited in sorted order so output is reproducible.
    """
    if deep_equal(a, b):
        return []
    if a is None:
        return [Diff.added("", b)]
    if b is None:
        return [Diff.removed("", a)]

    if value_kind(a) is ValueKind.MAPPING and value_kind(b) is ValueKind.MAPPING:
        diffs: list[Diff] = []
        _diff_mappings(a, b, path="", diffs=diffs)
        return diffs
    return [Diff.changed("", a, b)]


def _diff_mappings(a: Mapping, b: Mapping, *, path: str, diffs: list[Diff]) -> None:
    for key in sorted(set(a.keys()) | set(b.keys())):
        next_path = f"{path}.{key}" if path else key
        if key not in a:
            diffs.append(Diff.added(next_path, b[key]))
            continue
        if key not in b:
            diffs.append(Diff.removed(next_path, a[key]))
            continue

        old, new = a[key], b[key]
        if deep_equal(old, new):
            continue
        if value_kind(old) is ValueKind.MAPPING and value_kind(new) is ValueKind.MAPPING:
            _diff_mappings(old, new, path=next_path, diffs=diffs)
        else:
            diffs.append(Diff.changed(next_path, old, new))


def deep_equal(a: Any, b: Any) -> bool:
    # Identity first: NaN and other self-unequal values only match themselves.
    if a is b:
        return True

    kind = value_kind(a)
    if kind is not value_kind(b):
        return False

    if kind is ValueKind.NULL:
        return True
    if kind is ValueKind.MAPPING:
        if set(a.keys()) != set(b.keys()):
            return False
        return all(deep_equal(a[k], b[k]) for k in a)
    if kind is ValueKind.ARRAY:
        if len(a) != len(b):
            return False
        return all(deep_equal(x, y) for x, y in zip(a, b))
    if kind is ValueKind.TAGGED:
        if a.tag is not b.tag or len(a.fields) != len(b.fields):
            return False
        return all(ka == kb and deep_equal(va, vb) for (ka, va), (kb, vb) in zip(a.fields, b.fields))
    return _scalars_equal(a, b)


def _scalars_equal(a: Any, b: Any) -> bool:
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    if isinstance(a, str) != isinstance(b, str):
        return False
    try:
        return bool(a == b)
    except Exception:  # noqa: BLE001 - comparison of foreign objects
        return False
