from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, Iterator, Optional, Union

from docstore_diff.filters import Filter
from docstore_diff.models import Record


class SourceError(RuntimeError):
    """Connection, authentication or lookup failure in a document store (never a diff result)."""


def split_record_path(identifier: str) -> tuple[str, str]:
    collection, sep, doc_id = identifier.rstrip("/").rpartition("/")
    if not sep or not collection or not doc_id:
        raise ValueError(f"Expected '<collection>/<document id>', got {identifier!r}")
    return collection, doc_id


class DocumentSource(ABC):
    @abstractmethod
    def get_record(self, identifier: str) -> Optional[Record]:
        raise NotImplementedError

    @abstractmethod
    def get_collection(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        *,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        streaming: bool = False,
    ) -> Union[list[Record], Iterator[Record]]:
        raise NotImplementedError

    def close(self) -> None:
        return None
