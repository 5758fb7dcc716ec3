from __future__ import annotations

import logging
from typing import Any, Iterable, Iterator, Optional, Union
from urllib.parse import urlsplit

from bson import ObjectId
from pymongo import ASCENDING
from pymongo.errors import OperationFailure, PyMongoError, ServerSelectionTimeoutError

from docstore_diff.clients.base import DocumentSource, SourceError, split_record_path
from docstore_diff.clients.mongo_client_factory import build_mongo_client
from docstore_diff.filters import Filter, to_mongo_query
from docstore_diff.models import Record


_BATCH_SIZE = 1_000


def to_record(doc: dict) -> Record:
    """Split a raw Mongo document into id / data / metadata."""
    data = dict(doc)
    raw_id = data.pop("_id", None)
    metadata: dict[str, Any] = {}
    if isinstance(raw_id, ObjectId):
        metadata["createTime"] = raw_id.generation_time
    return Record(id=str(raw_id) if raw_id is not None else None, data=data, metadata=metadata)


class MongoDocumentSource(DocumentSource):
    """
    MongoDB (or Cosmos DB Mongo API) accessed via PyMongo.

    Record identifiers are "<collection>/<_id>"; ids that look like ObjectIds are retried as ObjectId.
    """

    def __init__(self, uri: str, database: str, *, label: str = "source", logger: Optional[logging.Logger] = None):
        self._logger = logger or logging.getLogger(__name__)
        self._label = label
        self._host = urlsplit(uri).hostname or "<unknown-host>"
        self._database_name = database
        self._logger.info("Creating Mongo %s client for host=%s database=%s", label, self._host, database)
        self._client = build_mongo_client(uri, logger=self._logger)
        self._db = self._client[database]
        try:
            self._logger.info("Running Mongo %s ping for host=%s database=%s", label, self._host, database)
            self._client.admin.command("ping")
            self._logger.info("Mongo %s ping succeeded for host=%s database=%s", label, self._host, database)
        except ServerSelectionTimeoutError as exc:
            self._logger.exception("Mongo %s ping timed out for host=%s database=%s", label, self._host, database)
            self._client.close()
            raise SourceError(
                f"Unable to connect to {label} MongoDB at {self._host} (timed out). "
                "Check the URI and network access (VPN/firewall/IP allowlist). "
                f"Details: {exc}"
            ) from exc
        except OperationFailure as exc:
            self._logger.exception(
                "Mongo %s ping failed with auth/authorization error for host=%s database=%s",
                label,
                self._host,
                database,
            )
            self._client.close()
            raise SourceError(
                f"Connected to {label} MongoDB at {self._host}, but authentication/authorization failed. "
                "Check username/password, authSource, and user permissions in the URI."
            ) from exc

    def close(self) -> None:
        self._client.close()

    def get_record(self, identifier: str) -> Optional[Record]:
        collection, doc_id = split_record_path(identifier)
        self._logger.info(
            "Fetching Mongo %s record database=%s collection=%s id=%s",
            self._label,
            self._database_name,
            collection,
            doc_id,
        )
        try:
            doc = self._db[collection].find_one({"_id": doc_id})
            if doc is None and ObjectId.is_valid(doc_id):
                doc = self._db[collection].find_one({"_id": ObjectId(doc_id)})
        except PyMongoError as exc:
            raise SourceError(f"Mongo {self._label} lookup failed for {identifier}: {exc}") from exc
        return to_record(doc) if doc is not None else None

    def get_collection(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        *,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        streaming: bool = False,
    ) -> Union[list[Record], Iterator[Record]]:
        query = to_mongo_query(filters)
        self._logger.info(
            "Querying Mongo %s collection database=%s collection=%s query=%s order_by=%s limit=%s streaming=%s",
            self._label,
            self._database_name,
            collection,
            query,
            order_by or "<none>",
            limit if limit is not None else "<none>",
            streaming,
        )
        cursor = self._db[collection].find(query, batch_size=_BATCH_SIZE)
        if order_by:
            cursor = cursor.sort(order_by, ASCENDING)
        if limit:
            cursor = cursor.limit(int(limit))

        if streaming:
            return self._iter_records(cursor, collection)
        try:
            records = [to_record(doc) for doc in cursor]
        except PyMongoError as exc:
            raise SourceError(f"Mongo {self._label} query failed for collection {collection}: {exc}") from exc
        self._logger.info("Mongo %s collection=%s returned=%s", self._label, collection, len(records))
        return records

    def _iter_records(self, cursor: Any, collection: str) -> Iterator[Record]:
        count = 0
        try:
            for doc in cursor:
                count += 1
                yield to_record(doc)
        except PyMongoError as exc:
            raise SourceError(f"Mongo {self._label} stream failed for collection {collection}: {exc}") from exc
        finally:
            cursor.close()
            self._logger.info("Mongo %s stream collection=%s consumed=%s", self._label, collection, count)
