import io
import json
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path

from filehost import maintenance, metadata


def write_json(path: Path, document) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(document), encoding="utf-8")


def read_json(path: Path):
    return json.loads(path.read_text(encoding="utf-8"))


class MaintenanceTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name) / "files"
        self.root.mkdir()

    def tearDown(self):
        self.tmp.cleanup()

    def descriptions(self, path, sources):
        listing = metadata.resolve_directory(path, root=self.root, sources=sources)
        return {entry["name"]: entry["description"] for entry in listing["items"]}


class ShardTests(MaintenanceTestCase):
    def setUp(self):
        super().setUp()
        (self.root / "Docs" / "Sub").mkdir(parents=True)
        (self.root / "readme.txt").write_text("r", encoding="utf-8")
        (self.root / "Docs" / "a.txt").write_text("a", encoding="utf-8")
        (self.root / "Docs" / "Sub" / "b.txt").write_text("b", encoding="utf-8")
        write_json(
            self.root / "metadata.json",
            {
                "readme.txt": {"description": "Read me"},
                "Docs": {"description": "Documents"},
                "Docs/a.txt": {"description": "A", "modified": "2026-01-01"},
                "Docs/Sub/b.txt": {"description": "B"},
                "Docs/Mirror": {"type": "url", "url": "https://example.com"},
            },
        )

    def test_shards_reproduce_monolithic_view(self):
        before = {
            path: self.descriptions(path, ["monolithic"]) for path in ("", "Docs", "Docs/Sub")
        }

        counts = maintenance.shard_monolithic_store(self.root)

        self.assertEqual(counts, {"": 2, "Docs": 2, "Docs/Sub": 1})
        index = read_json(self.root / metadata.INDEX_FILENAME)
        self.assertEqual(
            index["shards"],
            {
                "": "metadata-root.json",
                "Docs": "Docs/metadata.json",
                "Docs/Sub": "Docs/Sub/metadata.json",
            },
        )
        for path, expected in before.items():
            self.assertEqual(self.descriptions(path, ["index"]), expected, path)

    def test_existing_shard_records_are_kept(self):
        write_json(
            self.root / "Docs" / "metadata.json",
            {"items": [{"name": "old.txt", "description": "kept"}]},
        )

        maintenance.shard_monolithic_store(self.root)

        shard = read_json(self.root / "Docs" / "metadata.json")
        names = [item["name"] for item in shard["items"]]
        self.assertEqual(names, ["old.txt", "a.txt", "Mirror"])

    def test_dry_run_writes_nothing(self):
        counts = maintenance.shard_monolithic_store(self.root, dry_run=True)

        self.assertEqual(set(counts), {"", "Docs", "Docs/Sub"})
        self.assertFalse((self.root / metadata.INDEX_FILENAME).exists())
        self.assertFalse((self.root / "Docs" / "metadata.json").exists())

    def test_missing_monolithic_store(self):
        (self.root / "metadata.json").unlink()
        with self.assertRaises(FileNotFoundError):
            maintenance.shard_monolithic_store(self.root)


class UpdateIndexTests(MaintenanceTestCase):
    def test_registers_directories_with_stores(self):
        write_json(self.root / "Music" / "metadata.json", {})
        write_json(self.root / "Music" / "Live" / "metadata.json", {"items": []})
        (self.root / "Empty").mkdir()

        changes = maintenance.update_index(self.root)

        self.assertEqual(changes["added"], ["", "Music", "Music/Live"])
        index = read_json(self.root / metadata.INDEX_FILENAME)
        self.assertEqual(
            list(index["shards"].items()),
            [
                ("", "metadata-root.json"),
                ("Music", "Music/metadata.json"),
                ("Music/Live", "Music/Live/metadata.json"),
            ],
        )

    def test_existing_entries_are_kept_and_prune_removes_missing(self):
        write_json(
            self.root / metadata.INDEX_FILENAME,
            {"version": "1.0", "shards": {"": "custom-root.json", "Gone": "Gone/metadata.json"}},
        )

        unpruned = maintenance.update_index(self.root)
        self.assertEqual(unpruned, {"added": [], "removed": []})

        pruned = maintenance.update_index(self.root, prune=True)
        self.assertEqual(pruned["removed"], ["Gone"])
        self.assertEqual(
            read_json(self.root / metadata.INDEX_FILENAME)["shards"], {"": "custom-root.json"}
        )


class ScaffoldTests(MaintenanceTestCase):
    def test_adds_placeholders_and_preserves_existing(self):
        (self.root / "Sub").mkdir()
        (self.root / "a.txt").write_text("a", encoding="utf-8")
        (self.root / "b.txt").write_text("b", encoding="utf-8")
        write_json(self.root / metadata.INDEX_FILENAME, {"version": "1.0", "shards": {"": "metadata-root.json"}})
        write_json(self.root / "metadata-root.json", {"b.txt": {"description": "existing"}})

        added = maintenance.scaffold_directory(self.root, "")

        self.assertEqual(added, ["Sub", "a.txt"])
        store = read_json(self.root / "metadata-root.json")
        self.assertEqual(store["b.txt"], {"description": "existing"})
        self.assertEqual(store["Sub"], {"description": ""})
        self.assertTrue(store["a.txt"]["modified"].endswith("Z"))

        self.assertEqual(maintenance.scaffold_directory(self.root, ""), [])

    def test_rejects_files(self):
        (self.root / "a.txt").write_text("a", encoding="utf-8")
        with self.assertRaises(NotADirectoryError):
            maintenance.scaffold_directory(self.root, "a.txt")


class ValidateTests(MaintenanceTestCase):
    def test_reports_problems(self):
        write_json(
            self.root / metadata.INDEX_FILENAME,
            {
                "version": "1.0",
                "shards": {
                    "": "metadata-root.json",
                    "Docs": "Docs/metadata.json",
                    "Gone": "Gone/metadata.json",
                    "Evil": "../outside.json",
                },
            },
        )
        write_json(self.root / "metadata-root.json", {"Link": {"type": "url"}})
        write_json(self.root / "Docs" / "metadata.json", {"items": [{"description": "no name"}]})

        issues = maintenance.validate_stores(self.root)

        messages = sorted(f"{issue.store}: {issue.message}" for issue in issues)
        self.assertEqual(
            messages,
            [
                "../outside.json: shard path is outside the storage root",
                "Docs/metadata.json: item 0 is missing 'name'",
                "Gone/metadata.json: file not found",
                "metadata-root.json: URL item 'Link' is missing 'url'",
            ],
        )

    def test_valid_layout_passes_through_cli(self):
        write_json(self.root / metadata.INDEX_FILENAME, {"version": "1.0", "shards": {"": "metadata-root.json"}})
        write_json(self.root / "metadata-root.json", {"Link": {"type": "url", "url": "https://example.com"}})

        stdout = io.StringIO()
        with redirect_stdout(stdout):
            exit_code = maintenance.main(["--root", str(self.root), "validate"])

        self.assertEqual(exit_code, 0)
        self.assertIn("valid", stdout.getvalue())

    def test_cli_reports_failures(self):
        (self.root / metadata.INDEX_FILENAME).write_text("{", encoding="utf-8")

        stderr = io.StringIO()
        with redirect_stderr(stderr), redirect_stdout(io.StringIO()):
            exit_code = maintenance.main(["--root", str(self.root), "validate"])

        self.assertEqual(exit_code, 1)
        self.assertIn("index is unreadable", stderr.getvalue())

    def test_cli_without_command_prints_help(self):
        with redirect_stdout(io.StringIO()):
            self.assertEqual(maintenance.main([]), 1)


if __name__ == "__main__":
    unittest.main()
