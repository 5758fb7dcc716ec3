from __future__ import annotations

import json
import logging
import os
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Iterator, Optional, Union
from urllib.parse import urlsplit

try:
    from azure.cosmos import CosmosClient
except ImportError:  # pragma: no cover
    CosmosClient = None

from docstore_diff.clients.base import DocumentSource, SourceError, split_record_path
from docstore_diff.filters import Filter
from docstore_diff.models import Record


_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
SYSTEM_PROPERTIES = ("_rid", "_self", "_etag", "_attachments", "_ts")

_SQL_COMPARISONS = {"==": "=", "!=": "!=", ">": ">", ">=": ">=", "<": "<", "<=": "<="}


def sql_path_expr(field_path: str) -> str:
    expr = "c"
    for segment in field_path.split("."):
        if _IDENTIFIER_RE.fullmatch(segment) is not None:
            expr = f"{expr}.{segment}"
        else:
            expr = f"{expr}[{json.dumps(segment)}]"
    return expr


def build_sql_query(
    filters: Iterable[Filter] = (),
    *,
    order_by: Optional[str] = None,
    limit: Optional[int] = None,
) -> tuple[str, list[dict[str, Any]]]:
    """Parameterized Cosmos SQL for a filtered, optionally ordered and limited collection read."""
    terms: list[str] = []
    params: list[dict[str, Any]] = []
    for idx, f in enumerate(filters):
        expr = sql_path_expr(f.field)
        pname = f"@p{idx}"
        params.append({"name": pname, "value": f.value})
        if f.op in _SQL_COMPARISONS:
            terms.append(f"{expr} {_SQL_COMPARISONS[f.op]} {pname}")
        elif f.op == "in":
            terms.append(f"ARRAY_CONTAINS({pname}, {expr})")
        elif f.op == "not-in":
            terms.append(f"NOT ARRAY_CONTAINS({pname}, {expr})")
        elif f.op == "array-contains":
            terms.append(f"ARRAY_CONTAINS({expr}, {pname})")
        elif f.op == "array-contains-any":
            terms.append(f"EXISTS(SELECT VALUE v FROM v IN {expr} WHERE ARRAY_CONTAINS({pname}, v))")
        else:
            raise ValueError(f"Unsupported filter operator for Cosmos SQL: {f.op}")

    top = f"TOP {int(limit)} " if limit else ""
    query = f"SELECT {top}* FROM c"
    if terms:
        query += " WHERE " + " AND ".join(terms)
    if order_by:
        query += f" ORDER BY {sql_path_expr(order_by)} ASC"
    return query, params


def to_record(item: dict) -> Record:
    data = {k: v for k, v in item.items() if k not in SYSTEM_PROPERTIES and k != "id"}
    metadata: dict[str, Any] = {}
    ts = item.get("_ts")
    if isinstance(ts, (int, float)):
        metadata["updateTime"] = datetime.fromtimestamp(ts, tz=timezone.utc)
    raw_id = item.get("id")
    return Record(id=str(raw_id) if raw_id is not None else None, data=data, metadata=metadata)


class CosmosSqlDocumentSource(DocumentSource):
    """Cosmos DB (SQL/Core API) accessed via azure-cosmos."""

    def __init__(
        self,
        endpoint: str,
        key: str,
        database: str,
        *,
        label: str = "source",
        logger: Optional[logging.Logger] = None,
        retry_max_attempts: int = 6,
        retry_base_delay_ms: int = 500,
        sleep: Callable[[float], None] = time.sleep,
        client: Any = None,
    ):
        self._logger = logger or logging.getLogger(__name__)
        self._label = label
        self._host = urlsplit(endpoint).hostname or "<unknown-host>"
        self._database_name = database
        self._retry_max_attempts = retry_max_attempts
        self._retry_base_delay_ms = retry_base_delay_ms
        self._sleep = sleep
        self._container_cache: dict[str, Any] = {}
        if client is None:
            if CosmosClient is None:  # pragma: no cover
                raise RuntimeError(
                    "azure-cosmos is required for Cosmos SQL/Core API sources. "
                    "Install with: python -m pip install 'docstore-diff[cosmos]'"
                )
            self._logger.info("Creating Cosmos SQL %s client for host=%s database=%s", label, self._host, database)
            # Pass corporate CA bundle so azure-cosmos/requests trusts the proxy cert.
            ca_file = os.environ.get("REQUESTS_CA_BUNDLE") or os.environ.get("SSL_CERT_FILE")
            cosmos_kwargs: dict[str, Any] = {}
            if ca_file and os.path.isfile(ca_file):
                cosmos_kwargs["connection_verify"] = ca_file
                self._logger.info("Using CA bundle for Cosmos SQL %s client: %s", label, ca_file)
            client = CosmosClient(endpoint, credential=key, **cosmos_kwargs)
        self._client = client
        self._database = self._client.get_database_client(database)

    def close(self) -> None:
        close = getattr(self._client, "close", None)
        if callable(close):
            close()

    def _container(self, name: str) -> Any:
        existing = self._container_cache.get(name)
        if existing is not None:
            return existing
        container = self._database.get_container_client(name)
        self._container_cache[name] = container
        return container

    def _retry_delay_seconds(self, exc: Exception, attempt: int) -> Optional[float]:
        if getattr(exc, "status_code", None) != 429 or attempt >= self._retry_max_attempts:
            return None
        headers = getattr(exc, "headers", {}) or {}
        retry_after_ms = headers.get("x-ms-retry-after-ms")
        if retry_after_ms is not None:
            try:
                return max(0.0, float(retry_after_ms) / 1000.0)
            except ValueError:
                return 0.0
        return max(0.0, (self._retry_base_delay_ms / 1000.0) * (2 ** (attempt - 1)))

    def _query_items_with_retry(
        self,
        *,
        container: Any,
        query: str,
        parameters: list[dict[str, Any]],
        operation: str,
    ) -> list[Any]:
        for attempt in range(1, self._retry_max_attempts + 1):
            try:
                return list(
                    container.query_items(
                        query=query,
                        parameters=parameters,
                        enable_cross_partition_query=True,
                    )
                )
            except Exception as exc:  # noqa: BLE001
                delay_seconds = self._retry_delay_seconds(exc, attempt)
                if delay_seconds is None:
                    self._logger.exception(
                        "Cosmos SQL %s failed host=%s database=%s query=%s",
                        operation,
                        self._host,
                        self._database_name,
                        query,
                    )
                    raise SourceError(f"Cosmos SQL {self._label} {operation} failed: {exc}") from exc
                self._logger.warning(
                    "Cosmos SQL %s throttled with 429 host=%s database=%s attempt=%s/%s retry_delay_seconds=%.3f",
                    operation,
                    self._host,
                    self._database_name,
                    attempt,
                    self._retry_max_attempts,
                    delay_seconds,
                )
                self._sleep(delay_seconds)
        return []

    def get_record(self, identifier: str) -> Optional[Record]:
        container_name, doc_id = split_record_path(identifier)
        results = self._query_items_with_retry(
            container=self._container(container_name),
            query="SELECT TOP 1 * FROM c WHERE c.id = @id",
            parameters=[{"name": "@id", "value": doc_id}],
            operation=f"point lookup container={container_name}",
        )
        return to_record(results[0]) if results else None

    def get_collection(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        *,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        streaming: bool = False,
    ) -> Union[list[Record], Iterator[Record]]:
        query, params = build_sql_query(filters, order_by=order_by, limit=limit)
        self._logger.info(
            "Running Cosmos SQL %s query host=%s database=%s container=%s query=%s streaming=%s",
            self._label,
            self._host,
            self._database_name,
            collection,
            query,
            streaming,
        )
        container = self._container(collection)
        if streaming:
            return self._iter_records(container, query, params, collection)
        items = self._query_items_with_retry(
            container=container,
            query=query,
            parameters=params,
            operation=f"collection query container={collection}",
        )
        return [to_record(item) for item in items]

    def _iter_records(self, container: Any, query: str, params: list[dict[str, Any]], collection: str) -> Iterator[Record]:
        emitted = 0
        attempt = 1
        while True:
            try:
                items = container.query_items(query=query, parameters=params, enable_cross_partition_query=True)
                # A restarted query replays from the first page; drop what the caller already has.
                for position, item in enumerate(items):
                    if position < emitted:
                        continue
                    yield to_record(item)
                    emitted += 1
                return
            except Exception as exc:  # noqa: BLE001
                delay_seconds = self._retry_delay_seconds(exc, attempt)
                if delay_seconds is None:
                    self._logger.exception(
                        "Cosmos SQL stream failed host=%s database=%s container=%s query=%s emitted=%s",
                        self._host,
                        self._database_name,
                        collection,
                        query,
                        emitted,
                    )
                    raise SourceError(
                        f"Cosmos SQL {self._label} stream failed for container {collection}: {exc}"
                    ) from exc
                self._logger.warning(
                    "Cosmos SQL stream throttled with 429 host=%s database=%s container=%s emitted=%s "
                    "attempt=%s/%s retry_delay_seconds=%.3f",
                    self._host,
                    self._database_name,
                    collection,
                    emitted,
                    attempt,
                    self._retry_max_attempts,
                    delay_seconds,
                )
                self._sleep(delay_seconds)
                attempt += 1
