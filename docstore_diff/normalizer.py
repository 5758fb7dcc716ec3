from __future__ import annotations

import base64
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

from bson import DBRef
from bson.decimal128 import Decimal128
from bson.timestamp import Timestamp as BsonTimestamp

from docstore_diff.models import TAG_FIELDS, TYPE_FIELD, Record, Tag, TaggedValue, ValueKind, value_kind
from docstore_diff.serialization import dumps_canonical


_logger = logging.getLogger(__name__)

MAX_DEPTH = 64
CIRCULAR_SENTINEL = "[Circular]"
MAX_DEPTH_SENTINEL = "[MaxDepth]"

ID_FIELD = "_id"
METADATA_FIELD = "_metadata"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class NormalizeOptions:
    fields: Optional[frozenset[str]] = None  # allow-list
    ignore_fields: frozenset[str] = frozenset()  # deny-list, wins over fields
    key: Optional[str] = None  # comparison key used to order collections

    @classmethod
    def build(
        cls,
        *,
        fields: Optional[Iterable[str]] = None,
        ignore_fields: Iterable[str] = (),
        key: Optional[str] = None,
    ) -> "NormalizeOptions":
        return cls(
            fields=frozenset(fields) if fields is not None else None,
            ignore_fields=frozenset(ignore_fields),
            key=key,
        )


_DEFAULT_OPTIONS = NormalizeOptions()


def normalize(value: Any, options: Optional[NormalizeOptions] = None) -> Any:
    """
    Canonicalize a raw value tree.

    Domain scalars become TaggedValue, mappings get projected and key-sorted, arrays keep their order.
    Containers revisited on the current path become CIRCULAR_SENTINEL; anything nested deeper
    than MAX_DEPTH becomes MAX_DEPTH_SENTINEL.
    """
    return _normalize(value, options or _DEFAULT_OPTIONS, depth=0, active=set())


def _normalize(value: Any, options: NormalizeOptions, *, depth: int, active: set[int]) -> Any:
    if value is None:
        return None

    tagged = _to_tagged(value)
    if tagged is not None:
        return tagged

    kind = value_kind(value)
    if kind is ValueKind.SCALAR:
        return _normalize_scalar(value)
    if kind is ValueKind.TAGGED:
        return value

    if isinstance(value, (set, frozenset)):
        return _normalize_container(value, options, depth=depth, active=active, as_set=True)
    if kind is ValueKind.ARRAY or kind is ValueKind.MAPPING:
        return _normalize_container(value, options, depth=depth, active=active, as_set=False)
    return str(value)


def _normalize_container(value: Any, options: NormalizeOptions, *, depth: int, active: set[int], as_set: bool) -> Any:
    marker = id(value)
    if marker in active:
        return CIRCULAR_SENTINEL
    if depth >= MAX_DEPTH:
        return MAX_DEPTH_SENTINEL

    active.add(marker)
    try:
        if isinstance(value, Mapping):
            return _normalize_mapping(value, options, depth=depth, active=active)
        items = [_normalize(v, options, depth=depth + 1, active=active) for v in value]
        if as_set:
            items.sort(key=dumps_canonical)
        return items
    finally:
        active.discard(marker)


def _normalize_mapping(value: Mapping, options: NormalizeOptions, *, depth: int, active: set[int]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for raw_key, raw_value in value.items():
        key = raw_key if isinstance(raw_key, str) else str(raw_key)
        if key in options.ignore_fields:
            continue
        if options.fields is not None and key not in options.fields:
            continue
        if key in out:
            _logger.warning("Mapping keys collide once stringified, keeping the later value key=%r", key)
        out[key] = _normalize(raw_value, options, depth=depth + 1, active=active)
    return {k: out[k] for k in sorted(out)}


def _normalize_scalar(value: Any) -> Any:
    if isinstance(value, (str, bool, int, float, Decimal)):
        return value
    if isinstance(value, Decimal128):
        return value.to_decimal()
    # ObjectId, UUID and anything else opaque compare by their string form.
    return str(value)


def _to_tagged(value: Any) -> Optional[TaggedValue]:
    if isinstance(value, TaggedValue):
        return value
    if isinstance(value, BsonTimestamp):
        return TaggedValue.of(
            Tag.TIMESTAMP,
            seconds=value.time,
            nanoseconds=0,
            iso=_iso_millis(value.as_datetime()),
        )
    if isinstance(value, DBRef):
        ref_id = str(value.id)
        return TaggedValue.of(Tag.REFERENCE, path=f"{value.collection}/{ref_id}", id=ref_id)
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        return TaggedValue.of(Tag.BYTES, base64=base64.b64encode(raw).decode("ascii"), length=len(raw))
    if isinstance(value, (datetime, date)):
        moment = _as_utc_datetime(value)
        return TaggedValue.of(Tag.DATE, iso=_iso_millis(moment), epoch_millis=_epoch_millis(moment))
    if isinstance(value, Mapping):
        return _tagged_from_mapping(value)
    return None


def _tagged_from_mapping(value: Mapping) -> Optional[TaggedValue]:
    if _is_geojson_point(value):
        lng, lat = value["coordinates"]
        return TaggedValue.of(Tag.GEO_POINT, latitude=lat, longitude=lng)

    raw_tag = value.get(TYPE_FIELD)
    if not isinstance(raw_tag, str):
        return None
    try:
        tag = Tag(raw_tag)
    except ValueError:
        return None
    rest = {k: v for k, v in value.items() if k != TYPE_FIELD}
    if set(rest) != TAG_FIELDS[tag]:
        return None
    if any(value_kind(v) not in (ValueKind.SCALAR, ValueKind.NULL) for v in rest.values()):
        return None
    return TaggedValue.of(tag, **rest)


def _is_geojson_point(value: Mapping) -> bool:
    if set(value.keys()) != {"type", "coordinates"} or value.get("type") != "Point":
        return False
    coords = value.get("coordinates")
    if not isinstance(coords, (list, tuple)) or len(coords) != 2:
        return False
    return all(isinstance(c, (int, float)) and not isinstance(c, bool) for c in coords)


def _as_utc_datetime(value: date) -> datetime:
    if not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if value.tzinfo is None:
        # PyMongo decodes BSON dates as naive UTC.
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso_millis(value: datetime) -> str:
    return _as_utc_datetime(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _epoch_millis(value: datetime) -> int:
    delta = value - _EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1000 + delta.microseconds // 1000


def normalize_document(record: Optional[Record], options: Optional[NormalizeOptions] = None) -> Optional[dict]:
    if record is None:
        return None

    data = normalize(record.data, options)
    if data is None:
        out: dict[str, Any] = {}
    elif isinstance(data, dict):
        out = dict(data)
    else:
        out = {"value": data}

    metadata = record.metadata or {}
    out[ID_FIELD] = record.id
    out[METADATA_FIELD] = {
        "createTime": normalize(metadata.get("createTime")),
        "updateTime": normalize(metadata.get("updateTime")),
    }
    return {k: out[k] for k in sorted(out)}


def normalize_collection(records: Iterable[Optional[Record]], options: Optional[NormalizeOptions] = None) -> list[dict]:
    opts = options or _DEFAULT_OPTIONS
    docs = [doc for doc in (normalize_document(r, opts) for r in records) if doc is not None]
    return sort_documents(docs, opts.key)


def sort_documents(docs: Iterable[dict], key: Optional[str] = None) -> list[dict]:
    """By the comparison key (None last) when one is set, otherwise by _id."""
    if key and key != ID_FIELD:
        return sorted(docs, key=lambda d: _sort_key(get_nested_value(d, key)))
    return sorted(docs, key=lambda d: d.get(ID_FIELD) or "")


def _sort_key(value: Any) -> tuple:
    if value is None:
        return (1, 0, 0)
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return (0, 0, value)
    if isinstance(value, str):
        return (0, 1, value)
    return (0, 2, dumps_canonical(value))


def get_nested_value(doc: Any, path: Optional[str]) -> Any:
    if not path:
        return None
    current = doc
    for part in path.split("."):
        if isinstance(current, TaggedValue):
            current = current.get(part)
            continue
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
        if current is None:
            return None
    return current


def without_metadata(doc: Optional[dict]) -> Optional[dict]:
    if doc is None or METADATA_FIELD not in doc:
        return doc
    return {k: v for k, v in doc.items() if k != METADATA_FIELD}
