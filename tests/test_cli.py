import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stdout
from typing import Optional
from unittest import mock

from docstore_diff import __main__ as cli
from docstore_diff.clients.base import DocumentSource
from docstore_diff.models import Record


_CONFIG = """
source_a:
  kind: mongo
  database: db1
  uri: "mongodb://localhost:27017"
source_b:
  kind: mongo
  database: db2
  uri: "mongodb://localhost:27018"
logging:
  level: ERROR
"""


class FakeSource(DocumentSource):
    def __init__(self, records: list[Record]):
        self.records = records
        self.closed = False

    def get_record(self, identifier: str) -> Optional[Record]:
        doc_id = identifier.rpartition("/")[2]
        return next((r for r in self.records if r.id == doc_id), None)

    def get_collection(self, collection, filters=(), *, order_by=None, limit=None, streaming=False):
        return list(self.records)

    def close(self) -> None:
        self.closed = True


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.config_path = os.path.join(self._tmp.name, "config.yaml")
        with open(self.config_path, "w", encoding="utf-8") as f:
            f.write(_CONFIG)

    def _run(self, argv: list[str], side_a: FakeSource, side_b: FakeSource) -> tuple[int, str]:
        sources = {"source_a": side_a, "source_b": side_b}

        def fake_build_source(cfg, retry, *, label, logger):
            return sources[label]

        out = io.StringIO()
        with mock.patch.object(cli, "build_source", side_effect=fake_build_source), redirect_stdout(out):
            code = cli.main(["--config", self.config_path, *argv])
        return code, out.getvalue()

    def test_identical_documents_exit_zero(self) -> None:
        a = FakeSource([Record(id="u1", data={"name": "John"})])
        b = FakeSource([Record(id="u1", data={"name": "John"})])
        code, out = self._run(["--path-a", "users/u1", "--path-b", "users/u1"], a, b)
        self.assertEqual(code, cli.EXIT_IDENTICAL)
        self.assertIn("Documents are identical", out)
        self.assertTrue(a.closed and b.closed)

    def test_differences_exit_two(self) -> None:
        a = FakeSource([Record(id="u1", data={"age": 30})])
        b = FakeSource([Record(id="u1", data={"age": 31})])
        code, out = self._run(["--path-a", "users/u1", "--path-b", "users/u1"], a, b)
        self.assertEqual(code, cli.EXIT_DIFFERENCES)
        self.assertIn("~ age:", out)

    def test_query_mode_json_report(self) -> None:
        a = FakeSource([Record(id="u1", data={"v": 1}), Record(id="u2", data={"v": 1})])
        b = FakeSource([Record(id="u1", data={"v": 2})])
        code, out = self._run(
            ["--mode", "query", "--collection-a", "users", "--collection-b", "users", "--format", "json"],
            a,
            b,
        )
        self.assertEqual(code, cli.EXIT_DIFFERENCES)
        payload = json.loads(out)
        self.assertEqual(payload["summary"], {"added": 0, "removed": 1, "changed": 1})

    def test_ignore_fields_flag(self) -> None:
        a = FakeSource([Record(id="u1", data={"v": 1, "updatedAt": 1})])
        b = FakeSource([Record(id="u1", data={"v": 1, "updatedAt": 2})])
        code, _ = self._run(
            ["--path-a", "users/u1", "--path-b", "users/u1", "--ignore-fields", "updatedAt"],
            a,
            b,
        )
        self.assertEqual(code, cli.EXIT_IDENTICAL)

    def test_output_dir_writes_snapshots(self) -> None:
        out_dir = os.path.join(self._tmp.name, "snapshots")
        a = FakeSource([Record(id="u1", data={"v": 1})])
        code, _ = self._run(
            ["--path-a", "users/u1", "--path-b", "users/u1", "--output-dir", out_dir],
            a,
            FakeSource([Record(id="u1", data={"v": 1})]),
        )
        self.assertEqual(code, cli.EXIT_IDENTICAL)
        names = os.listdir(out_dir)
        self.assertTrue(any(n.startswith("diff-summary-") for n in names))

    def test_view_mode_prints_one_document(self) -> None:
        a = FakeSource([Record(id="u1", data={"name": "John", "secret": "x"})])
        b = FakeSource([])
        code, out = self._run(["--mode", "view", "--path-a", "users/u1", "--ignore-fields", "secret"], a, b)
        self.assertEqual(code, cli.EXIT_IDENTICAL)
        self.assertEqual(out.count("\n"), 1)
        doc = json.loads(out)
        self.assertEqual((doc["_id"], doc["_path"], doc["name"]), ("u1", "users/u1", "John"))
        self.assertNotIn("secret", doc)
        self.assertTrue(a.closed)
        self.assertFalse(b.closed)

    def test_view_mode_pretty_from_source_b(self) -> None:
        b = FakeSource([Record(id="u2", data={"v": 1})])
        code, out = self._run(["--mode", "view", "--path-b", "users/u2", "--pretty"], FakeSource([]), b)
        self.assertEqual(code, cli.EXIT_IDENTICAL)
        self.assertIn('\n  "v": 1', out)
        self.assertEqual(json.loads(out)["_id"], "u2")

    def test_view_mode_missing_document_is_an_error(self) -> None:
        code, out = self._run(["--mode", "view", "--path-a", "users/nope"], FakeSource([]), FakeSource([]))
        self.assertEqual(code, cli.EXIT_ERROR)
        self.assertEqual(out, "")

    def test_view_mode_requires_a_path(self) -> None:
        code, _ = self._run(["--mode", "view"], FakeSource([]), FakeSource([]))
        self.assertEqual(code, cli.EXIT_ERROR)

    def test_missing_paths_is_an_error(self) -> None:
        code, _ = self._run(["--path-a", "users/u1"], FakeSource([]), FakeSource([]))
        self.assertEqual(code, cli.EXIT_ERROR)

    def test_bad_config_is_an_error(self) -> None:
        with open(self.config_path, "w", encoding="utf-8") as f:
            f.write("source_a: {}\n")
        code, _ = self._run(["--path-a", "users/u1", "--path-b", "users/u1"], FakeSource([]), FakeSource([]))
        self.assertEqual(code, cli.EXIT_ERROR)

    def test_source_failure_is_an_error(self) -> None:
        class Broken(FakeSource):
            def get_record(self, identifier):
                raise RuntimeError("connection refused")

        code, _ = self._run(["--path-a", "users/u1", "--path-b", "users/u1"], Broken([]), FakeSource([]))
        self.assertEqual(code, cli.EXIT_ERROR)


if __name__ == "__main__":
    unittest.main()
