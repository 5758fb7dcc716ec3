from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Iterable


class FilterError(ValueError):
    pass


# Longest first so ">=" is not read as ">".
SYMBOL_OPERATORS = ("==", "!=", ">=", "<=", ">", "<")
WORD_OPERATORS = ("array-contains-any", "array-contains", "not-in", "in")

_INT_RE = re.compile(r"^-?\d+$")
_FLOAT_RE = re.compile(r"^-?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?$")

_MONGO_OPERATORS = {
    "!=": "$ne",
    ">": "$gt",
    ">=": "$gte",
    "<": "$lt",
    "<=": "$lte",
    "in": "$in",
    "not-in": "$nin",
    "array-contains-any": "$in",
}


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any


def parse_filter(text: str) -> Filter:
    """
    Parse ``field<op>value``.

    The leftmost operator wins (longest on ties); word operators (``in``, ``not-in``, ...) need
    surrounding whitespace.
    """
    best: tuple[int, int, str, int] | None = None  # (start, -len(op), op, value_start)
    for op in SYMBOL_OPERATORS:
        idx = text.find(op)
        if idx >= 0:
            candidate = (idx, -len(op), op, idx + len(op))
            best = candidate if best is None or candidate < best else best
    for op in WORD_OPERATORS:
        match = re.search(rf"\s+{re.escape(op)}\s+", text)
        if match is not None:
            candidate = (match.start(), -len(op), op, match.end())
            best = candidate if best is None or candidate < best else best
    if best is None:
        raise FilterError(f"Invalid filter format: {text!r}. Expected format: field==value")
    start, _, op, value_start = best
    return _build(text[:start], op, text[value_start:], text)


def _build(raw_field: str, op: str, raw_value: str, text: str) -> Filter:
    field = raw_field.strip()
    if not field:
        raise FilterError(f"Invalid filter format: {text!r}. Missing field name")
    value = parse_filter_value(raw_value.strip())
    if op in {"in", "not-in", "array-contains-any"} and not isinstance(value, list):
        raise FilterError(f"Operator {op!r} expects a JSON array value in filter {text!r}")
    return Filter(field=field, op=op, value=value)


def parse_filter_value(raw: str) -> Any:
    if raw == "null":
        return None
    if raw == "true":
        return True
    if raw == "false":
        return False
    if raw.startswith("[") and raw.endswith("]"):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw
    if len(raw) >= 2 and raw.startswith('"') and raw.endswith('"'):
        return raw[1:-1]
    if _INT_RE.match(raw):
        return int(raw)
    if _FLOAT_RE.match(raw):
        return float(raw)
    return raw


def parse_filters(texts: Iterable[str]) -> list[Filter]:
    return [parse_filter(t) for t in texts]


def to_mongo_query(filters: Iterable[Filter]) -> dict[str, Any]:
    query: dict[str, Any] = {}
    for f in filters:
        # Mongo matches array elements with a plain equality.
        if f.op in ("==", "array-contains"):
            clause: Any = f.value
        else:
            clause = {_MONGO_OPERATORS[f.op]: f.value}

        existing = query.get(f.field)
        if existing is None and f.field not in query:
            query[f.field] = clause
        elif isinstance(existing, dict) and isinstance(clause, dict) and not set(existing) & set(clause):
            existing.update(clause)
        else:
            and_terms = query.setdefault("$and", [])
            and_terms.append({f.field: clause})
    return query
