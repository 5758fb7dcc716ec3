import logging
import unittest
from typing import Iterator, Optional

from docstore_diff.clients.base import DocumentSource
from docstore_diff.comparator import CompareOptions, compare_collections, compare_records
from docstore_diff.filters import Filter
from docstore_diff.models import Diff, Record


class FakeSource(DocumentSource):
    def __init__(self, collections: dict[str, list[Record]]):
        self.collections = collections
        self.calls: list[dict] = []
        self.closed = False

    def get_record(self, identifier: str) -> Optional[Record]:
        collection, _, doc_id = identifier.rpartition("/")
        for record in self.collections.get(collection, []):
            if record.id == doc_id:
                return record
        return None

    def get_collection(self, collection, filters=(), *, order_by=None, limit=None, streaming=False):
        self.calls.append(
            {"collection": collection, "filters": list(filters), "order_by": order_by, "limit": limit, "streaming": streaming}
        )
        records = list(self.collections.get(collection, []))
        if limit is not None:
            records = records[:limit]
        if streaming:
            return self._iter(records)
        return records

    def _iter(self, records: list[Record]) -> Iterator[Record]:
        yield from records

    def close(self) -> None:
        self.closed = True


def _users(*records: Record) -> FakeSource:
    return FakeSource({"users": list(records)})


class CompareRecordsTests(unittest.TestCase):
    def test_identical_documents(self):
        a = _users(Record(id="u1", data={"name": "John", "tags": ["a"]}))
        b = _users(Record(id="u1", data={"tags": ["a"], "name": "John"}))
        result = compare_records(a, b, "users/u1", "users/u1")
        self.assertFalse(result.has_differences)
        self.assertEqual(result.normalized_a, result.normalized_b)

    def test_changed_field(self):
        a = _users(Record(id="u1", data={"name": "John", "age": 30}))
        b = _users(Record(id="u1", data={"name": "John", "age": 31}))
        result = compare_records(a, b, "users/u1", "users/u1")
        self.assertEqual(result.differences, (Diff.changed("age", 30, 31),))

    def test_missing_on_one_side(self):
        a = _users(Record(id="u1", data={"name": "John"}))
        result = compare_records(a, _users(), "users/u1", "users/u1")
        self.assertEqual(len(result.differences), 1)
        self.assertEqual(result.differences[0].path, "")
        self.assertIsNone(result.normalized_b)

    def test_field_projection_and_ignore(self):
        a = _users(Record(id="u1", data={"name": "John", "updatedAt": 1, "age": 30}))
        b = _users(Record(id="u1", data={"name": "John", "updatedAt": 2, "age": 31}))
        ignored = compare_records(a, b, "users/u1", "users/u1", CompareOptions(ignore_fields=("updatedAt", "age")))
        self.assertFalse(ignored.has_differences)
        projected = compare_records(a, b, "users/u1", "users/u1", CompareOptions(fields=("name",)))
        self.assertFalse(projected.has_differences)

    def test_metadata_toggle(self):
        a = _users(Record(id="u1", data={"v": 1}, metadata={"updateTime": "t1"}))
        b = _users(Record(id="u1", data={"v": 1}, metadata={"updateTime": "t2"}))
        self.assertFalse(compare_records(a, b, "users/u1", "users/u1").has_differences)
        result = compare_records(a, b, "users/u1", "users/u1", CompareOptions(compare_metadata=True))
        self.assertEqual([d.path for d in result.differences], ["_metadata.updateTime"])


class CompareCollectionsTests(unittest.TestCase):
    def _sources(self):
        a = _users(
            Record(id="u2", data={"name": "Jane", "email": "jane@x"}),
            Record(id="u1", data={"name": "John", "age": 30, "email": "john@x"}),
        )
        b = _users(
            Record(id="u1", data={"name": "John", "age": 31, "email": "john@x"}),
            Record(id="u3", data={"name": "Bob", "email": "bob@x"}),
        )
        return a, b

    def test_reconciles_by_id(self):
        a, b = self._sources()
        result = compare_collections(a, b, "users", "users")
        report = result.report
        self.assertEqual([e.key for e in report.removed], ["u2"])
        self.assertEqual([e.key for e in report.added], ["u3"])
        self.assertEqual([c.key for c in report.changed], ["u1"])
        self.assertEqual([d["_id"] for d in result.normalized_a], ["u1", "u2"])
        self.assertIsNone(a.calls[0]["order_by"])

    def test_custom_key_is_used_for_ordering_and_matching(self):
        a = _users(Record(id="1", data={"email": "x@y", "v": 1}))
        b = _users(Record(id="2", data={"email": "x@y", "v": 1}))
        result = compare_collections(a, b, "users", "users", CompareOptions(key="email"))
        self.assertEqual(a.calls[0]["order_by"], "email")
        self.assertEqual([c.key for c in result.report.changed], ["x@y"])
        self.assertEqual([d.path for d in result.report.changed[0].differences], ["_id"])

    def test_filters_and_limit_are_passed_per_side(self):
        a, b = self._sources()
        compare_collections(
            a,
            b,
            "users",
            "users",
            CompareOptions(where_a=("age>=18",), where_b=("status==active",), limit=1),
        )
        self.assertEqual(a.calls[0]["filters"], [Filter("age", ">=", 18)])
        self.assertEqual(b.calls[0]["filters"], [Filter("status", "==", "active")])
        self.assertEqual(a.calls[0]["limit"], 1)

    def test_stream_matches_batch(self):
        a, b = self._sources()
        batch = compare_collections(a, b, "users", "users")
        streamed = compare_collections(a, b, "users", "users", CompareOptions(stream=True))
        self.assertTrue(a.calls[-1]["streaming"])
        self.assertEqual(batch.report, streamed.report)
        self.assertEqual(batch.normalized_a, streamed.normalized_a)

    def test_identical_collections(self):
        a, _ = self._sources()
        result = compare_collections(a, a, "users", "users")
        self.assertFalse(result.has_differences)

    def test_warns_when_projection_drops_the_key(self):
        a, b = self._sources()
        logger = logging.getLogger("comparator-tests")
        with self.assertLogs(logger, "WARNING") as logs:
            result = compare_collections(
                a, b, "users", "users", CompareOptions(key="email", fields=("name",)), logger=logger
            )
        self.assertIn("key=email", logs.output[0])
        self.assertIn("dropped_segments=email", logs.output[0])
        self.assertEqual(len(result.report.changed), 1)
        self.assertIsNone(result.report.changed[0].key)

    def test_no_warning_when_key_survives_projection(self):
        a, b = self._sources()
        logger = logging.getLogger("comparator-tests")
        for options in (CompareOptions(key="email", fields=("email", "name")), CompareOptions(fields=("name",))):
            with self.subTest(options=options):
                with self.assertLogs(logger, "INFO") as logs:
                    compare_collections(a, b, "users", "users", options, logger=logger)
                self.assertEqual([r for r in logs.records if r.levelno >= logging.WARNING], [])

    def test_source_errors_propagate(self):
        class Broken(FakeSource):
            def get_collection(self, collection, filters=(), **kwargs):
                raise RuntimeError("boom")

        a, _ = self._sources()
        with self.assertRaises(RuntimeError):
            compare_collections(a, Broken({}), "users", "users")


if __name__ == "__main__":
    unittest.main()
