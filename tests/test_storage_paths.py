import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from werkzeug.datastructures import FileStorage

from filehost import storage


class ResolveStoragePathTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.base = Path(self.tmp.name)
        self.root = self.base / "files"
        self.root.mkdir()

    def tearDown(self):
        self.tmp.cleanup()

    def test_root_resolves_to_empty_relative_path(self):
        for requested in (None, "", "/", "."):
            path, relative = storage.resolve_storage_path(requested, self.root)
            self.assertEqual(path, Path(os.path.normpath(str(self.root))))
            self.assertEqual(relative, "")

    def test_nested_path_is_normalized(self):
        path, relative = storage.resolve_storage_path("docs/./sub/../guide.txt", self.root)
        self.assertEqual(relative, "docs/guide.txt")
        self.assertEqual(path, self.root / "docs" / "guide.txt")

    def test_leading_slash_is_relative_to_root(self):
        _, relative = storage.resolve_storage_path("/docs/a.txt", self.root)
        self.assertEqual(relative, "docs/a.txt")

    def test_parent_traversal_rejected(self):
        with self.assertRaises(storage.InvalidPathError):
            storage.resolve_storage_path("../../etc", self.root)

    def test_sibling_prefix_rejected(self):
        (self.base / "files-other").mkdir()
        with self.assertRaises(storage.InvalidPathError):
            storage.resolve_storage_path("../files-other", self.root)

    def test_nul_byte_rejected(self):
        with self.assertRaises(storage.InvalidPathError):
            storage.resolve_storage_path("a\x00b", self.root)

    def test_split_and_join_relative_path(self):
        self.assertEqual(storage.split_relative_path("a.txt"), ("", "a.txt"))
        self.assertEqual(storage.split_relative_path("docs/sub/a.txt"), ("docs/sub", "a.txt"))
        self.assertEqual(storage.join_relative_path("", "a.txt"), "a.txt")
        self.assertEqual(storage.join_relative_path("docs", "a.txt"), "docs/a.txt")


class ValidateFilenameTests(unittest.TestCase):
    def test_accepts_unicode_names(self):
        self.assertEqual(storage.validate_filename("报告 2026.pdf"), (True, None))

    def test_rejects_invalid_names(self):
        for name in ("", "   ", ".", "..", "a/b", "a\\b", "a\x00b", "x" * 300):
            valid, message = storage.validate_filename(name)
            self.assertFalse(valid, name)
            self.assertTrue(message)


class PhysicalOperationTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_list_physical_entries_reports_kind_and_size(self):
        (self.root / "a.txt").write_bytes(b"0123456789")
        (self.root / "Sub").mkdir()

        entries = {entry["name"]: entry for entry in storage.list_physical_entries(self.root)}

        self.assertEqual(entries["a.txt"]["size"], 10)
        self.assertFalse(entries["a.txt"]["is_directory"])
        self.assertTrue(entries["Sub"]["is_directory"])
        self.assertEqual(entries["Sub"]["size"], 0)

    @unittest.skipIf(os.name == "nt", "symlinks need privileges on Windows")
    def test_dangling_symlink_is_skipped(self):
        (self.root / "real.txt").write_text("x", encoding="utf-8")
        os.symlink(self.root / "missing.txt", self.root / "broken.txt")

        names = [entry["name"] for entry in storage.list_physical_entries(self.root)]

        self.assertEqual(names, ["real.txt"])

    def test_in_flight_temp_files_are_skipped(self):
        (self.root / "real.txt").write_text("x", encoding="utf-8")
        (self.root / ".real.txt.0123abcd.part").write_text("partial", encoding="utf-8")
        (self.root / ".metadata.json.0123abcd.tmp").write_text("{", encoding="utf-8")
        (self.root / "notes.tmp").write_text("kept", encoding="utf-8")

        names = sorted(entry["name"] for entry in storage.list_physical_entries(self.root))

        self.assertEqual(names, ["notes.tmp", "real.txt"])
        self.assertTrue(storage.is_temporary_artifact(".a.part"))
        self.assertFalse(storage.is_temporary_artifact("a.part"))

    def test_create_directory_rejects_existing(self):
        target = self.root / "Docs"
        storage.create_directory(target)
        self.assertTrue(target.is_dir())
        with self.assertRaises(storage.AlreadyExistsError):
            storage.create_directory(target)

    def test_delete_path_handles_files_and_trees(self):
        (self.root / "tree" / "nested").mkdir(parents=True)
        (self.root / "tree" / "nested" / "x.txt").write_text("x", encoding="utf-8")
        (self.root / "single.txt").write_text("y", encoding="utf-8")

        self.assertTrue(storage.delete_path(self.root / "tree"))
        self.assertFalse(storage.delete_path(self.root / "single.txt"))
        self.assertEqual(list(self.root.iterdir()), [])

        with self.assertRaises(storage.EntryNotFoundError):
            storage.delete_path(self.root / "single.txt")

    def test_save_upload_streams_to_destination(self):
        upload = FileStorage(stream=io.BytesIO(b"hello world"), filename="hello.txt")

        written = storage.save_upload(self.root, upload, "hello.txt")

        self.assertEqual(written, 11)
        self.assertEqual((self.root / "hello.txt").read_bytes(), b"hello world")
        self.assertEqual([path.name for path in self.root.iterdir()], ["hello.txt"])

    def test_save_upload_enforces_size_limit(self):
        upload = FileStorage(stream=io.BytesIO(b"x" * 64), filename="big.bin")

        with self.assertRaises(storage.InvalidRequestError):
            storage.save_upload(self.root, upload, "big.bin", max_bytes=16)

        self.assertEqual(list(self.root.iterdir()), [])

    def test_write_json_atomic_keeps_non_ascii(self):
        target = self.root / "metadata.json"
        storage.write_json_atomic(target, {"名前.txt": {"description": "說明"}})

        text = target.read_text(encoding="utf-8")
        self.assertIn("名前.txt", text)
        self.assertIn('\n  "', text)
        self.assertEqual(json.loads(text), {"名前.txt": {"description": "說明"}})


class ConfigTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        base = Path(self.tmp.name)
        self.config_path = base / "data" / "config.json"
        self.patches = [
            mock.patch.object(storage, "DATA_DIR", base / "data"),
            mock.patch.object(storage, "FILES_DIR", base / "files"),
            mock.patch.object(storage, "LOGS_DIR", base / "logs"),
            mock.patch.object(storage, "CONFIG_PATH", self.config_path),
        ]
        for patcher in self.patches:
            patcher.start()

    def tearDown(self):
        for patcher in reversed(self.patches):
            patcher.stop()
        self.tmp.cleanup()

    def test_defaults_written_on_first_load(self):
        config = storage.load_config()

        self.assertTrue(self.config_path.exists())
        self.assertEqual(config["metadata_sources"], ["index", "monolithic"])
        self.assertEqual(config["cors_allow_origin"], "*")

    def test_config_rejects_nan_and_infinite_values(self):
        self.config_path.parent.mkdir(parents=True)
        self.config_path.write_text(
            '{"max_upload_size_mb": NaN, "login_rate_limit_per_minute": Infinity}',
            encoding="utf-8",
        )

        config = storage.load_config()

        self.assertEqual(config["max_upload_size_mb"], float(storage.DEFAULT_MAX_UPLOAD_MB))
        self.assertEqual(
            config["login_rate_limit_per_minute"],
            float(storage.DEFAULT_LOGIN_RATE_LIMIT_PER_MINUTE),
        )

    def test_metadata_sources_are_filtered(self):
        self.config_path.parent.mkdir(parents=True)
        self.config_path.write_text(
            json.dumps({"metadata_sources": "Monolithic, bogus, index, monolithic"}),
            encoding="utf-8",
        )

        config = storage.load_config()

        self.assertEqual(config["metadata_sources"], ["monolithic", "index"])
        saved = json.loads(self.config_path.read_text(encoding="utf-8"))
        self.assertEqual(saved["metadata_sources"], ["monolithic", "index"])


if __name__ == "__main__":
    unittest.main()
