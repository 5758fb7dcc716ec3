from __future__ import annotations

import json
import logging
from typing import Any, Optional

from docstore_diff.clients.base import DocumentSource
from docstore_diff.normalizer import NormalizeOptions, normalize_document
from docstore_diff.serialization import to_jsonable


PATH_FIELD = "_path"


def view_record(
    source: DocumentSource,
    path: str,
    options: Optional[NormalizeOptions] = None,
    *,
    logger: Optional[logging.Logger] = None,
) -> Optional[dict]:
    """Fetch one document and return it normalized, with its path alongside _id; None when missing."""
    log = logger or logging.getLogger(__name__)
    record = source.get_record(path)
    if record is None:
        log.warning("Document not found path=%s", path)
        return None
    doc = normalize_document(record, options)
    assert doc is not None
    doc[PATH_FIELD] = path
    log.info("Document retrieved path=%s fields=%s", path, len(doc))
    return {k: doc[k] for k in sorted(doc)}


def render_document(doc: Any, *, pretty: bool = False) -> str:
    plain = to_jsonable(doc)
    if pretty:
        return json.dumps(plain, indent=2, ensure_ascii=False, allow_nan=False)
    return json.dumps(plain, ensure_ascii=False, allow_nan=False, separators=(",", ":"))
