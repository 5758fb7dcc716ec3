import json
import os
import tempfile
import unittest
from datetime import datetime, timezone

import yaml

from docstore_diff.comparator import CollectionComparison, DocumentComparison
from docstore_diff.export import export_snapshots
from docstore_diff.models import CollectionDiffReport, Tag, TaggedValue


_NOW = datetime(2024, 3, 1, 10, 20, 30, tzinfo=timezone.utc)
_STAMP = "2024-03-01T10-20-30"


class ExportSnapshotsTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.out = self._tmp.name

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _read_json(self, name: str):
        with open(os.path.join(self.out, name), encoding="utf-8") as f:
            return json.load(f)

    def test_document_snapshots(self):
        when = TaggedValue.of(Tag.DATE, iso="2024-01-01T00:00:00.000Z", epoch_millis=1704067200000)
        result = DocumentComparison(
            normalized_a={"_id": "u1", "when": when},
            normalized_b=None,
            differences=(),
        )
        written = export_snapshots(self.out, result, mode="doc", source_a="users/u1", source_b="users/u1", now=_NOW)

        self.assertEqual(
            [os.path.basename(p) for p in written],
            [f"sourceA-{_STAMP}.json", f"sourceB-{_STAMP}.json", f"metadata-{_STAMP}.json", f"diff-summary-{_STAMP}.json"],
        )
        self.assertEqual(self._read_json(f"sourceA-{_STAMP}.json")["when"]["_type"], "Date")
        self.assertIsNone(self._read_json(f"sourceB-{_STAMP}.json"))

        metadata = self._read_json(f"metadata-{_STAMP}.json")
        self.assertEqual(metadata["mode"], "doc")
        self.assertEqual((metadata["count_a"], metadata["count_b"]), (1, 0))

        summary = self._read_json(f"diff-summary-{_STAMP}.json")
        self.assertEqual(summary["comparison"]["source_a"]["type"], "document")
        self.assertIn("diff -u", summary["external_diff_commands"]["diff"])
        self.assertIsNone(summary["external_diff_commands"]["directory"])

    def test_collection_yaml_with_separate_files(self):
        docs_a = [{"_id": "u1", "v": 1}, {"_id": "a/b", "v": 2}]
        docs_b = [{"_id": "u1", "v": 1}]
        result = CollectionComparison(normalized_a=docs_a, normalized_b=docs_b, report=CollectionDiffReport())
        written = export_snapshots(
            self.out,
            result,
            fmt="yaml",
            separate_files=True,
            mode="query",
            source_a="users",
            source_b="users",
            now=_NOW,
        )

        with open(os.path.join(self.out, f"sourceA-{_STAMP}.yml"), encoding="utf-8") as f:
            self.assertEqual(yaml.safe_load(f), docs_a)
        per_doc = sorted(os.listdir(os.path.join(self.out, "sourceA", _STAMP)))
        self.assertEqual(per_doc, ["a_b.yml", "u1.yml"])
        self.assertTrue(os.path.exists(os.path.join(self.out, "sourceB", _STAMP, "u1.yml")))
        self.assertTrue(written[-1].endswith(f"diff-summary-{_STAMP}.json"))

        summary = self._read_json(f"diff-summary-{_STAMP}.json")
        self.assertEqual(summary["comparison"]["source_a"], {"type": "collection", "count": 2})
        self.assertIn("meld", summary["external_diff_commands"]["directory"])

    def test_colliding_ids_get_distinct_files(self):
        docs_a = [{"_id": "a/b", "v": 1}, {"_id": "a_b", "v": 2}, {"_id": "a_b", "v": 3}, {"v": 4}]
        result = CollectionComparison(normalized_a=docs_a, normalized_b=[], report=CollectionDiffReport())
        written = export_snapshots(
            self.out, result, separate_files=True, mode="query", source_a="users", source_b="users", now=_NOW
        )

        per_doc_dir = os.path.join(self.out, "sourceA", _STAMP)
        per_doc = [p for p in written if os.path.dirname(p) == per_doc_dir]
        self.assertEqual(len(per_doc), 4)
        self.assertEqual(len(set(per_doc)), 4)
        self.assertEqual(len(os.listdir(per_doc_dir)), 4)
        values = set()
        for path in per_doc:
            with open(path, encoding="utf-8") as f:
                values.add(json.load(f)["v"])
        self.assertEqual(values, {1, 2, 3, 4})

    def test_non_finite_floats_are_written_as_null(self):
        result = DocumentComparison(
            normalized_a={"_id": "u1", "score": float("nan"), "limit": float("-inf")},
            normalized_b=None,
            differences=(),
        )
        export_snapshots(self.out, result, mode="doc", source_a="users/u1", source_b="users/u1", now=_NOW)

        def reject(constant):
            raise ValueError(f"non-standard JSON constant: {constant}")

        with open(os.path.join(self.out, f"sourceA-{_STAMP}.json"), encoding="utf-8") as f:
            snapshot = json.load(f, parse_constant=reject)
        self.assertEqual(snapshot, {"_id": "u1", "score": None, "limit": None})

    def test_text_format(self):
        result = DocumentComparison(
            normalized_a={"_id": "u1", "tags": ["x"], "nested": {"ok": True}, "empty": {}},
            normalized_b=None,
            differences=(),
        )
        written = export_snapshots(
            self.out, result, fmt="text", mode="doc", source_a="users/u1", source_b="users/u1", now=_NOW
        )

        self.assertEqual(os.path.basename(written[0]), f"sourceA-{_STAMP}.txt")
        with open(written[0], encoding="utf-8") as f:
            lines = f.read().splitlines()
        self.assertEqual(lines[0], f"# Generated by docstore-diff at {_NOW.isoformat()}")
        self.assertTrue(lines[1].startswith("# Metadata: "))
        self.assertEqual(json.loads(lines[1][len("# Metadata: "):])["mode"], "doc")
        self.assertEqual(
            lines[3:],
            [
                "{",
                '  _id: "u1"',
                "  tags: [",
                '    [0] "x"',
                "  ]",
                "  nested: {",
                "    ok: true",
                "  }",
                "  empty: {}",
                "}",
            ],
        )
        with open(written[1], encoding="utf-8") as f:
            self.assertEqual(f.read().splitlines()[-1], "null")
        self.assertTrue(written[2].endswith(".json"))

    def test_rejects_unknown_format(self):
        result = DocumentComparison(normalized_a=None, normalized_b=None, differences=())
        with self.assertRaises(ValueError):
            export_snapshots(self.out, result, fmt="xml", mode="doc", source_a="a", source_b="b", now=_NOW)


if __name__ == "__main__":
    unittest.main()
