from __future__ import annotations

import logging
from collections.abc import Mapping
from decimal import Decimal
from typing import Any, Iterable, Optional

from docstore_diff.compare import compare_documents
from docstore_diff.models import ChangedRecord, CollectionDiffReport, KeyedRecord, TaggedValue
from docstore_diff.normalizer import ID_FIELD, get_nested_value
from docstore_diff.serialization import dumps_canonical


_logger = logging.getLogger(__name__)


def reconcile(
    collection_a: Iterable[dict],
    collection_b: Iterable[dict],
    key_field: str = ID_FIELD,
    *,
    compare_metadata: bool = False,
) -> CollectionDiffReport:
    """
    Partition two normalized collections into added / removed / changed by comparison key.

    Duplicate keys on one side are last-write-wins. Identical pairs are omitted.
    Each output sequence is ordered by key_string(key).
    """
    map_a = _index_by_key(collection_a, key_field, side="a")
    map_b = _index_by_key(collection_b, key_field, side="b")

    added: list[KeyedRecord] = []
    removed: list[KeyedRecord] = []
    changed: list[ChangedRecord] = []

    for token, (key, doc_a) in map_a.items():
        match = map_b.get(token)
        if match is None:
            removed.append(KeyedRecord(key=key, record=doc_a))
            continue
        doc_b = match[1]
        diffs = compare_documents(doc_a, doc_b, compare_metadata=compare_metadata)
        if diffs:
            changed.append(ChangedRecord(key=key, differences=tuple(diffs), record_a=doc_a, record_b=doc_b))

    for token, (key, doc_b) in map_b.items():
        if token not in map_a:
            added.append(KeyedRecord(key=key, record=doc_b))

    return CollectionDiffReport(
        added=tuple(sorted(added, key=lambda e: key_string(e.key))),
        removed=tuple(sorted(removed, key=lambda e: key_string(e.key))),
        changed=tuple(sorted(changed, key=lambda e: key_string(e.key))),
    )


def _index_by_key(docs: Iterable[dict], key_field: str, *, side: str) -> dict[str, tuple[Any, dict]]:
    out: dict[str, tuple[Any, dict]] = {}
    for doc in docs:
        key = extract_key(doc, key_field)
        token = key_token(key)
        if token in out:
            _logger.debug("Duplicate comparison key side=%s key_field=%s key=%s; keeping last", side, key_field, token)
        out[token] = (key, doc)
    return out


def extract_key(doc: Any, key_field: Optional[str]) -> Any:
    try:
        return get_nested_value(doc, key_field or ID_FIELD)
    except Exception:  # noqa: BLE001 - key extraction must never abort reconciliation
        _logger.debug("Key extraction failed key_field=%s", key_field, exc_info=True)
        return None


def key_string(key: Any) -> str:
    if isinstance(key, str):
        return key
    if key is None:
        return "null"
    if isinstance(key, bool):
        return "true" if key else "false"
    return dumps_canonical(key)


def key_token(key: Any) -> str:
    """Identity of a comparison key: equal tokens mean the same key, so scalar types never merge."""
    return dumps_canonical(_typed(key))


def _typed(value: Any) -> Any:
    # JSON already tells null, bool, number and str apart; everything else gets a type marker.
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Decimal):
        return ["$decimal", str(value)]
    if isinstance(value, TaggedValue):
        return ["$tagged", value.tag.value, [[k, _typed(v)] for k, v in value.fields]]
    if isinstance(value, Mapping):
        return {str(k): _typed(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return ["$array", [_typed(v) for v in value]]
    return [f"${type(value).__name__}", str(value)]
