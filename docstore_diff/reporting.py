from __future__ import annotations

import json
from typing import Any, Union

from docstore_diff.comparator import CollectionComparison, DocumentComparison
from docstore_diff.models import Diff, DiffKind, Tag, TaggedValue
from docstore_diff.serialization import json_default, to_jsonable


REPORT_FORMATS = ("pretty", "json")

Comparison = Union[DocumentComparison, CollectionComparison]


def format_result(result: Comparison, fmt: str = "pretty") -> str:
    if fmt == "json":
        report = build_json_report(result)
        return json.dumps(report, indent=2, ensure_ascii=False, allow_nan=False, default=json_default)
    if fmt != "pretty":
        raise ValueError(f"Unknown report format: {fmt}")
    if isinstance(result, DocumentComparison):
        return format_document_diff(result.differences)
    return format_collection_report(result)


def build_json_report(result: Comparison) -> dict[str, Any]:
    if isinstance(result, DocumentComparison):
        return {
            "type": "document",
            "has_differences": result.has_differences,
            "differences": to_jsonable([d.to_dict() for d in result.differences]),
        }
    return {
        "type": "collection",
        "has_differences": result.has_differences,
        "summary": result.report.summary(),
        "differences": to_jsonable(result.report.to_dict()),
    }


def format_document_diff(differences: tuple[Diff, ...]) -> str:
    if not differences:
        return "Documents are identical"
    lines = ["Document differences found:", ""]
    lines.extend(format_diff(d) for d in differences)
    return "\n".join(lines)


def format_collection_report(result: CollectionComparison) -> str:
    report = result.report
    if not report.has_differences:
        return "Query results are identical"

    lines = ["Query differences found:"]
    if report.removed:
        lines.append("")
        lines.append(f"=== Removed ({len(report.removed)} documents) ===")
        for item in report.removed:
            lines.append(f"- [{item.key}]")
            lines.append(format_value(item.record, indent="  "))
    if report.added:
        lines.append("")
        lines.append(f"=== Added ({len(report.added)} documents) ===")
        for item in report.added:
            lines.append(f"+ [{item.key}]")
            lines.append(format_value(item.record, indent="  "))
    if report.changed:
        lines.append("")
        lines.append(f"=== Changed ({len(report.changed)} documents) ===")
        for changed in report.changed:
            lines.append(f"~ [{changed.key}]")
            lines.extend("  " + format_diff(d).replace("\n", "\n  ") for d in changed.differences)
    return "\n".join(lines)


def format_diff(diff: Diff) -> str:
    path = diff.path or "root"
    if diff.kind is DiffKind.ADDED:
        return f"+ {path}: {format_value(diff.value)}"
    if diff.kind is DiffKind.REMOVED:
        return f"- {path}: {format_value(diff.value)}"
    return f"~ {path}:\n    - {format_value(diff.old_value)}\n    + {format_value(diff.new_value)}"


def format_value(value: Any, indent: str = "") -> str:
    if isinstance(value, TaggedValue):
        return format_tagged(value)
    if isinstance(value, dict):
        if not value:
            return "{}"
        inner = [f'{indent}  "{k}": {format_value(v, indent + "  ")}' for k, v in value.items()]
        return "{\n" + ",\n".join(inner) + f"\n{indent}}}"
    if isinstance(value, list):
        if not value:
            return "[]"
        inner = [f"{indent}  {format_value(v, indent + '  ')}" for v in value]
        return "[\n" + ",\n".join(inner) + f"\n{indent}]"
    return json.dumps(value, ensure_ascii=False, default=json_default)


def format_tagged(value: TaggedValue) -> str:
    if value.tag is Tag.TIMESTAMP:
        return f"Timestamp({value['iso']})"
    if value.tag is Tag.GEO_POINT:
        return f"GeoPoint({value['latitude']}, {value['longitude']})"
    if value.tag is Tag.REFERENCE:
        return f"Reference({value['path']})"
    if value.tag is Tag.BYTES:
        return f"Bytes({value['length']} bytes)"
    return f"Date({value['iso']})"
