from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Any, Optional, Union

import yaml

from docstore_diff.comparator import CollectionComparison, DocumentComparison
from docstore_diff.serialization import to_jsonable


_FILENAME_SAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")
_EXTENSIONS = {"json": "json", "yaml": "yml", "text": "txt"}


def _safe_filename(name: str, fallback: str) -> str:
    return _FILENAME_SAFE_RE.sub("_", name).strip("._-") or fallback


def _render(data: Any, fmt: str, metadata: Optional[dict] = None) -> str:
    plain = to_jsonable(data)
    if fmt == "yaml":
        return yaml.safe_dump(plain, sort_keys=True, allow_unicode=True, default_flow_style=False)
    if fmt == "text":
        metadata = to_jsonable(metadata or {})
        header = (
            f"# Generated by docstore-diff at {metadata.get('timestamp', '')}\n"
            f"# Metadata: {json.dumps(metadata, ensure_ascii=False, allow_nan=False)}\n\n"
        )
        return header + to_text(plain) + "\n"
    return json.dumps(plain, indent=2, ensure_ascii=False, allow_nan=False) + "\n"


def to_text(value: Any, indent: int = 0) -> str:
    """Indented `key: value` / `[i] value` layout of a plain JSON tree."""
    pad = "  " * indent
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, list):
        if not value:
            return "[]"
        items = [f"{pad}  [{i}] {to_text(v, indent + 1)}" for i, v in enumerate(value)]
        return "[\n" + "\n".join(items) + f"\n{pad}]"
    if isinstance(value, dict):
        if not value:
            return "{}"
        items = [f"{pad}  {k}: {to_text(v, indent + 1)}" for k, v in value.items()]
        return "{\n" + "\n".join(items) + f"\n{pad}}}"
    return str(value)


def _write(path: str, content: str) -> str:
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    return path


def export_snapshots(
    output_dir: str,
    result: Union[DocumentComparison, CollectionComparison],
    *,
    fmt: str = "json",
    separate_files: bool = False,
    mode: str,
    source_a: str,
    source_b: str,
    now: Optional[datetime] = None,
    logger: Optional[logging.Logger] = None,
) -> list[str]:
    """
    Dump both normalized sides to files so external diff tools can be pointed at them.

    Returns the written paths, summary file last.
    """
    if fmt not in _EXTENSIONS:
        raise ValueError(f"Unknown export format: {fmt}")
    log = logger or logging.getLogger(__name__)
    moment = now or datetime.now(timezone.utc)
    stamp = moment.strftime("%Y-%m-%dT%H-%M-%S")
    ext = _EXTENSIONS[fmt]
    os.makedirs(output_dir, exist_ok=True)

    data_a, data_b = result.normalized_a, result.normalized_b
    is_collection = isinstance(result, CollectionComparison)
    written: list[str] = []

    metadata = {
        "mode": mode,
        "timestamp": moment.isoformat(),
        "source_a": source_a,
        "source_b": source_b,
        "count_a": len(data_a) if is_collection else int(data_a is not None),
        "count_b": len(data_b) if is_collection else int(data_b is not None),
    }

    file_a = os.path.join(output_dir, f"sourceA-{stamp}.{ext}")
    file_b = os.path.join(output_dir, f"sourceB-{stamp}.{ext}")
    written.append(_write(file_a, _render(data_a, fmt, metadata)))
    written.append(_write(file_b, _render(data_b, fmt, metadata)))
    written.append(_write(os.path.join(output_dir, f"metadata-{stamp}.json"), _render(metadata, "json")))

    dir_a = dir_b = None
    if separate_files and is_collection:
        dir_a = os.path.join(output_dir, "sourceA", stamp)
        dir_b = os.path.join(output_dir, "sourceB", stamp)
        written.extend(_write_documents(dir_a, data_a, ext=ext, fmt=fmt, metadata=metadata))
        written.extend(_write_documents(dir_b, data_b, ext=ext, fmt=fmt, metadata=metadata))

    summary = {
        "timestamp": moment.isoformat(),
        "comparison": {
            "source_a": {"type": "collection" if is_collection else "document", "count": metadata["count_a"]},
            "source_b": {"type": "collection" if is_collection else "document", "count": metadata["count_b"]},
        },
        "files": {"source_a": os.path.basename(file_a), "source_b": os.path.basename(file_b)},
        "external_diff_commands": {
            "diff": f'diff -u "{file_a}" "{file_b}"',
            "vscode": f'code --diff "{file_a}" "{file_b}"',
            "meld": f'meld "{file_a}" "{file_b}"',
            "vimdiff": f'vimdiff "{file_a}" "{file_b}"',
            "directory": f'meld "{dir_a}" "{dir_b}"' if dir_a else None,
        },
    }
    written.append(_write(os.path.join(output_dir, f"diff-summary-{stamp}.json"), _render(summary, "json")))
    log.info("Exported normalized snapshots output_dir=%s files=%s", output_dir, len(written))
    return written


def _write_documents(directory: str, docs: list[dict], *, ext: str, fmt: str, metadata: dict) -> list[str]:
    os.makedirs(directory, exist_ok=True)
    paths: list[str] = []
    used: set[str] = set()
    for index, doc in enumerate(docs):
        doc_id = doc.get("_id")
        name = _safe_filename(str(doc_id), f"doc-{index}") if doc_id else f"doc-{index}"
        # Sanitized or duplicate ids may collide; every document gets its own file.
        base, suffix = name, index
        while name in used:
            name = f"{base}-{suffix}"
            suffix += 1
        used.add(name)
        paths.append(_write(os.path.join(directory, f"{name}.{ext}"), _render(doc, fmt, metadata)))
    return paths
