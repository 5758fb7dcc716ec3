from __future__ import annotations

import json
import math
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from bson import ObjectId
from bson.decimal128 import Decimal128

from docstore_diff.models import TaggedValue


def json_default(value: Any) -> Any:
    """
    JSON serializer for canonical values and the raw store types that can leak into reports.

    Keep this conservative: when unsure, fall back to str(value) so reports and snapshots remain writable.
    """
    if isinstance(value, TaggedValue):
        return value.to_dict()
    if hasattr(value, "to_dict") and callable(value.to_dict):
        return value.to_dict()
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (ObjectId, Decimal128)):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=dumps_canonical)
    return str(value)


def dumps_canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=json_default, ensure_ascii=False, separators=(",", ":"))


def to_jsonable(value: Any) -> Any:
    """
    Plain dict/list/scalar tree for YAML export and JSON reports.

    Non-finite floats become None, as JSON has no spelling for them.
    """
    return _finite(json.loads(json.dumps(value, default=json_default, ensure_ascii=False)))


def _finite(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {k: _finite(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_finite(v) for v in value]
    return value
