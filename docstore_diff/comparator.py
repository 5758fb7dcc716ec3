from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, TypeVar

from docstore_diff.clients.base import DocumentSource
from docstore_diff.compare import compare_documents
from docstore_diff.filters import parse_filters
from docstore_diff.models import CollectionDiffReport, Diff, Record
from docstore_diff.normalizer import (
    ID_FIELD,
    METADATA_FIELD,
    NormalizeOptions,
    normalize_collection,
    normalize_document,
    sort_documents,
)
from docstore_diff.reconcile import reconcile


T = TypeVar("T")


@dataclass(frozen=True)
class CompareOptions:
    key: str = ID_FIELD
    fields: Optional[tuple[str, ...]] = None
    ignore_fields: tuple[str, ...] = ()
    where_a: tuple[str, ...] = ()
    where_b: tuple[str, ...] = ()
    limit: Optional[int] = None
    stream: bool = False
    compare_metadata: bool = False

    def normalize_options(self) -> NormalizeOptions:
        return NormalizeOptions.build(fields=self.fields, ignore_fields=self.ignore_fields, key=self.key)


@dataclass(frozen=True)
class DocumentComparison:
    normalized_a: Optional[dict]
    normalized_b: Optional[dict]
    differences: tuple[Diff, ...]

    @property
    def has_differences(self) -> bool:
        return bool(self.differences)


@dataclass(frozen=True)
class CollectionComparison:
    normalized_a: list[dict]
    normalized_b: list[dict]
    report: CollectionDiffReport

    @property
    def has_differences(self) -> bool:
        return self.report.has_differences


def compare_records(
    source_a: DocumentSource,
    source_b: DocumentSource,
    path_a: str,
    path_b: str,
    options: Optional[CompareOptions] = None,
    *,
    logger: Optional[logging.Logger] = None,
) -> DocumentComparison:
    log = logger or logging.getLogger(__name__)
    opts = options or CompareOptions()
    started = time.monotonic()

    record_a, record_b = _fetch_both(lambda: source_a.get_record(path_a), lambda: source_b.get_record(path_b))
    log.info(
        "Fetched records path_a=%s found_a=%s path_b=%s found_b=%s",
        path_a,
        record_a is not None,
        path_b,
        record_b is not None,
    )

    norm_options = opts.normalize_options()
    doc_a = normalize_document(record_a, norm_options)
    doc_b = normalize_document(record_b, norm_options)
    diffs = compare_documents(doc_a, doc_b, compare_metadata=opts.compare_metadata)
    log.info(
        "Document compare path_a=%s path_b=%s differences=%s elapsed_seconds=%.2f",
        path_a,
        path_b,
        len(diffs),
        time.monotonic() - started,
    )
    return DocumentComparison(normalized_a=doc_a, normalized_b=doc_b, differences=tuple(diffs))


def compare_collections(
    source_a: DocumentSource,
    source_b: DocumentSource,
    collection_a: str,
    collection_b: str,
    options: Optional[CompareOptions] = None,
    *,
    logger: Optional[logging.Logger] = None,
) -> CollectionComparison:
    """
    Fetch both collections concurrently, normalize, and reconcile them by comparison key.

    With ``stream`` each side is consumed record by record and normalized as it arrives;
    reconciliation starts once both streams are drained.
    """
    log = logger or logging.getLogger(__name__)
    opts = options or CompareOptions()
    norm_options = opts.normalize_options()
    filters_a = parse_filters(opts.where_a)
    filters_b = parse_filters(opts.where_b)
    order_by = opts.key if opts.key != ID_FIELD else None
    if order_by and order_by.split(".")[0] != METADATA_FIELD:
        dropped = [
            segment
            for segment in order_by.split(".")
            if segment in opts.ignore_fields or (opts.fields is not None and segment not in opts.fields)
        ]
        if dropped:
            log.warning(
                "Comparison key is removed by field projection, every document will match under a null key "
                "key=%s dropped_segments=%s",
                opts.key,
                ",".join(dropped),
            )
    started = time.monotonic()

    def fetch(source: DocumentSource, collection: str, filters: list) -> list[dict]:
        records = source.get_collection(
            collection,
            filters,
            order_by=order_by,
            limit=opts.limit,
            streaming=opts.stream,
        )
        if opts.stream:
            return _drain_stream(records, norm_options, collection=collection, logger=log)
        return normalize_collection(records, norm_options)

    docs_a, docs_b = _fetch_both(
        lambda: fetch(source_a, collection_a, filters_a),
        lambda: fetch(source_b, collection_b, filters_b),
    )
    fetch_elapsed = time.monotonic() - started

    report = reconcile(docs_a, docs_b, opts.key, compare_metadata=opts.compare_metadata)
    log.info(
        "Collection compare collection_a=%s collection_b=%s count_a=%s count_b=%s added=%s removed=%s changed=%s "
        "fetch_seconds=%.2f total_seconds=%.2f",
        collection_a,
        collection_b,
        len(docs_a),
        len(docs_b),
        len(report.added),
        len(report.removed),
        len(report.changed),
        fetch_elapsed,
        time.monotonic() - started,
    )
    return CollectionComparison(normalized_a=docs_a, normalized_b=docs_b, report=report)


def _drain_stream(
    records: Iterable[Record],
    options: NormalizeOptions,
    *,
    collection: str,
    logger: logging.Logger,
    log_every: int = 1_000,
) -> list[dict]:
    docs: list[dict] = []
    for record in records:
        doc = normalize_document(record, options)
        if doc is not None:
            docs.append(doc)
        if docs and len(docs) % log_every == 0:
            logger.info("Stream progress collection=%s normalized=%s", collection, len(docs))
    return sort_documents(docs, options.key)


def _fetch_both(fetch_a: Callable[[], T], fetch_b: Callable[[], T]) -> tuple[T, T]:
    with ThreadPoolExecutor(max_workers=2) as executor:
        future_a = executor.submit(fetch_a)
        future_b = executor.submit(fetch_b)
        return future_a.result(), future_b.result()
