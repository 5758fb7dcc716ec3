from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Tag(str, Enum):
    TIMESTAMP = "Timestamp"
    GEO_POINT = "GeoPoint"
    REFERENCE = "Reference"
    BYTES = "Bytes"
    DATE = "Date"


TAG_FIELDS: dict[Tag, frozenset[str]] = {
    Tag.TIMESTAMP: frozenset({"seconds", "nanoseconds", "iso"}),
    Tag.GEO_POINT: frozenset({"latitude", "longitude"}),
    Tag.REFERENCE: frozenset({"path", "id"}),
    Tag.BYTES: frozenset({"base64", "length"}),
    Tag.DATE: frozenset({"iso", "epoch_millis"}),
}

TYPE_FIELD = "_type"


@dataclass(frozen=True)
class TaggedValue:
    """
    Atomic, type-discriminated value (time instant, geo point, reference, binary blob, date).

    Never recursed into by the differ: two tagged values are either equal or wholly changed.
    """

    tag: Tag
    fields: tuple[tuple[str, Any], ...]

    @classmethod
    def of(cls, tag: Tag, **values: Any) -> "TaggedValue":
        expected = TAG_FIELDS[tag]
        if set(values) != expected:
            raise ValueError(f"{tag.value} expects fields {sorted(expected)}, got {sorted(values)}")
        return cls(tag=tag, fields=tuple(sorted(values.items())))

    def __getitem__(self, name: str) -> Any:
        for key, value in self.fields:
            if key == name:
                return value
        raise KeyError(name)

    def get(self, name: str, default: Any = None) -> Any:
        try:
            return self[name]
        except KeyError:
            return default

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {TYPE_FIELD: self.tag.value}
        out.update(self.fields)
        return dict(sorted(out.items()))


class ValueKind(Enum):
    NULL = "null"
    SCALAR = "scalar"
    TAGGED = "tagged"
    ARRAY = "array"
    MAPPING = "mapping"


def value_kind(value: Any) -> ValueKind:
    if value is None:
        return ValueKind.NULL
    if isinstance(value, TaggedValue):
        return ValueKind.TAGGED
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY
    if isinstance(value, Mapping):
        return ValueKind.MAPPING
    return ValueKind.SCALAR


@dataclass(frozen=True)
class Record:
    id: Optional[str]
    data: Any
    metadata: Optional[Mapping[str, Any]] = None


class DiffKind(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    CHANGED = "changed"


@dataclass(frozen=True)
class Diff:
    kind: DiffKind
    path: str
    value: Any = None
    old_value: Any = None
    new_value: Any = None

    @classmethod
    def added(cls, path: str, value: Any) -> "Diff":
        return cls(kind=DiffKind.ADDED, path=path, value=value)

    @classmethod
    def removed(cls, path: str, value: Any) -> "Diff":
        return cls(kind=DiffKind.REMOVED, path=path, value=value)

    @classmethod
    def changed(cls, path: str, old_value: Any, new_value: Any) -> "Diff":
        return cls(kind=DiffKind.CHANGED, path=path, old_value=old_value, new_value=new_value)

    def to_dict(self) -> dict[str, Any]:
        if self.kind is DiffKind.CHANGED:
            return {
                "type": self.kind.value,
                "path": self.path,
                "old_value": self.old_value,
                "new_value": self.new_value,
            }
        return {"type": self.kind.value, "path": self.path, "value": self.value}


@dataclass(frozen=True)
class KeyedRecord:
    key: Any
    record: Any

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "record": self.record}


@dataclass(frozen=True)
class ChangedRecord:
    key: Any
    differences: tuple[Diff, ...]
    record_a: Any = None
    record_b: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "differences": [d.to_dict() for d in self.differences]}


@dataclass(frozen=True)
class CollectionDiffReport:
    added: tuple[KeyedRecord, ...] = field(default_factory=tuple)
    removed: tuple[KeyedRecord, ...] = field(default_factory=tuple)
    changed: tuple[ChangedRecord, ...] = field(default_factory=tuple)

    @property
    def has_differences(self) -> bool:
        return bool(self.added or self.removed or self.changed)

    def summary(self) -> dict[str, int]:
        return {"added": len(self.added), "removed": len(self.removed), "changed": len(self.changed)}

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": [e.to_dict() for e in self.added],
            "removed": [e.to_dict() for e in self.removed],
            "changed": [e.to_dict() for e in self.changed],
        }
