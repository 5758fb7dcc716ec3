from __future__ import annotations

import argparse
import logging
import sys
from contextlib import suppress
from typing import Optional

from docstore_diff.clients.base import DocumentSource
from docstore_diff.clients.cosmos_sql import CosmosSqlDocumentSource
from docstore_diff.clients.mongo_source import MongoDocumentSource
from docstore_diff.comparator import CompareOptions, compare_collections, compare_records
from docstore_diff.config import AppConfig, ConfigError, RetryConfig, SourceConfig, as_field_path, load_config
from docstore_diff.export import export_snapshots
from docstore_diff.logging_utils import build_logger
from docstore_diff.normalizer import NormalizeOptions
from docstore_diff.reporting import REPORT_FORMATS, format_result
from docstore_diff.view import render_document, view_record


EXIT_IDENTICAL = 0
EXIT_ERROR = 1
EXIT_DIFFERENCES = 2


def _csv(value: str) -> tuple[str, ...]:
    return tuple(p.strip() for p in value.split(",") if p.strip())


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docstore-diff",
        description="Compare documents or query results between two document stores (MongoDB, Cosmos DB).",
    )
    parser.add_argument("--config", required=True, help="Path to YAML/JSON config file describing source_a and source_b.")
    parser.add_argument(
        "--mode",
        choices=("doc", "query", "view"),
        default="doc",
        help="Compare one document or a collection, or print one normalized document.",
    )
    parser.add_argument("--path-a", help="Document path for source A in doc and view mode (<collection>/<id>).")
    parser.add_argument("--path-b", help="Document path for source B in doc and view mode (<collection>/<id>).")
    parser.add_argument("--collection-a", help="Collection for source A in query mode.")
    parser.add_argument("--collection-b", help="Collection for source B in query mode.")
    parser.add_argument("--where-a", action="append", default=[], help="Filter for source A, e.g. status==active (repeatable).")
    parser.add_argument("--where-b", action="append", default=[], help="Filter for source B (repeatable).")
    parser.add_argument("--key", help="Field used to match documents across collections (default from config, else _id).")
    parser.add_argument("--fields", type=_csv, help="Comma-separated allow-list of fields to compare.")
    parser.add_argument("--ignore-fields", type=_csv, help="Comma-separated list of fields to ignore at every level.")
    parser.add_argument("--limit", type=int, help="Limit number of documents per side in query mode.")
    parser.add_argument("--stream", action="store_true", default=None, help="Consume query results as a stream.")
    parser.add_argument("--compare-metadata", action="store_true", default=None, help="Include create/update times in the comparison.")
    parser.add_argument("--pretty", action="store_true", help="Indent the document printed in view mode.")
    parser.add_argument("--format", choices=REPORT_FORMATS, default="pretty", help="Report format.")
    parser.add_argument("--output-dir", help="Directory to dump normalized snapshots for external diff tools.")
    parser.add_argument("--output-format", choices=("json", "yaml", "text"), help="Snapshot file format.")
    parser.add_argument("--separate-files", action="store_true", default=None, help="One snapshot file per document.")
    parser.add_argument("--verbose", action="store_true", help="Enable DEBUG logging.")
    return parser


def build_compare_options(args: argparse.Namespace, cfg: AppConfig) -> CompareOptions:
    comparison = cfg.comparison
    key = as_field_path(args.key, "--key") if args.key else comparison.key
    return CompareOptions(
        key=key,
        fields=args.fields if args.fields is not None else comparison.fields,
        ignore_fields=args.ignore_fields if args.ignore_fields is not None else comparison.ignore_fields,
        where_a=tuple(args.where_a),
        where_b=tuple(args.where_b),
        limit=args.limit if args.limit is not None else comparison.limit,
        stream=args.stream if args.stream is not None else comparison.stream,
        compare_metadata=args.compare_metadata if args.compare_metadata is not None else comparison.compare_metadata,
    )


def build_source(cfg: SourceConfig, retry: RetryConfig, *, label: str, logger: logging.Logger) -> DocumentSource:
    if cfg.kind == "mongo":
        assert cfg.uri is not None
        return MongoDocumentSource(cfg.uri, cfg.database, label=label, logger=logger)
    if cfg.kind == "cosmos_sql":
        assert cfg.endpoint is not None and cfg.key is not None
        return CosmosSqlDocumentSource(
            cfg.endpoint,
            cfg.key,
            cfg.database,
            label=label,
            logger=logger,
            retry_max_attempts=retry.max_attempts,
            retry_base_delay_ms=retry.base_delay_ms,
        )
    raise AssertionError(f"Unknown source kind: {cfg.kind}")


def run(args: argparse.Namespace, cfg: AppConfig, logger: logging.Logger) -> int:
    options = build_compare_options(args, cfg)
    if args.mode == "view":
        return run_view(args, cfg, options, logger)
    if args.mode == "doc":
        if not args.path_a or not args.path_b:
            raise ConfigError("Both --path-a and --path-b are required in doc mode")
        labels = (args.path_a, args.path_b)
    else:
        if not args.collection_a or not args.collection_b:
            raise ConfigError("Both --collection-a and --collection-b are required in query mode")
        labels = (args.collection_a, args.collection_b)

    source_a: Optional[DocumentSource] = None
    source_b: Optional[DocumentSource] = None
    try:
        source_a = build_source(cfg.source_a, cfg.retry, label="source_a", logger=logger)
        source_b = build_source(cfg.source_b, cfg.retry, label="source_b", logger=logger)
        if args.mode == "doc":
            result = compare_records(source_a, source_b, args.path_a, args.path_b, options, logger=logger)
        else:
            result = compare_collections(source_a, source_b, args.collection_a, args.collection_b, options, logger=logger)
    finally:
        if source_a is not None:
            with suppress(Exception):
                source_a.close()
        if source_b is not None:
            with suppress(Exception):
                source_b.close()

    output_dir = args.output_dir or cfg.export.output_dir
    if output_dir:
        export_snapshots(
            output_dir,
            result,
            fmt=args.output_format or cfg.export.format,
            separate_files=args.separate_files if args.separate_files is not None else cfg.export.separate_files,
            mode=args.mode,
            source_a=labels[0],
            source_b=labels[1],
            logger=logger,
        )

    print(format_result(result, args.format))
    if result.has_differences:
        logger.info("Differences found mode=%s source_a=%s source_b=%s", args.mode, labels[0], labels[1])
        return EXIT_DIFFERENCES
    logger.info("No differences found mode=%s source_a=%s source_b=%s", args.mode, labels[0], labels[1])
    return EXIT_IDENTICAL


def run_view(args: argparse.Namespace, cfg: AppConfig, options: CompareOptions, logger: logging.Logger) -> int:
    if args.path_a:
        label, source_cfg, path = "source_a", cfg.source_a, args.path_a
    elif args.path_b:
        label, source_cfg, path = "source_b", cfg.source_b, args.path_b
    else:
        raise ConfigError("--path-a or --path-b is required in view mode")

    norm_options = NormalizeOptions.build(fields=options.fields, ignore_fields=options.ignore_fields)
    source = build_source(source_cfg, cfg.retry, label=label, logger=logger)
    try:
        doc = view_record(source, path, norm_options, logger=logger)
    finally:
        with suppress(Exception):
            source.close()

    if doc is None:
        return EXIT_ERROR
    print(render_document(doc, pretty=args.pretty))
    return EXIT_IDENTICAL


def main(argv: Optional[list[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    try:
        cfg = load_config(args.config)
    except ConfigError as exc:
        build_logger().error("Invalid configuration: %s", exc)
        return EXIT_ERROR

    level = "DEBUG" if args.verbose else cfg.logging.level
    logger = build_logger(cfg.logging.main_log, level=level)
    logger.info(
        "Starting compare config=%s mode=%s source_a=%s source_b=%s",
        args.config,
        args.mode,
        cfg.source_a.kind,
        cfg.source_b.kind,
    )

    try:
        return run(args, cfg, logger)
    except Exception as exc:  # noqa: BLE001 - CLI boundary
        logger.exception("Fatal error: %s", exc)
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
