#!/usr/bin/env python3
"""Comparison log and changelog tests."""

import shutil
import sys
import tempfile
import unittest
from pathlib import Path

# Ensure bin/ is importable
_project = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_project / "bin"))

import history
from config import DEFAULT_CHANGELOG, Config, directories, initialize_directories
from store import NotFound, ValidationError, write_json


class HistoryBase(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.cfg = Config(root_dir=Path(self.tmpdir))
        self.logs = directories(self.cfg).logs

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)


class TestSaveConversation(HistoryBase):
    def test_file_layout_and_record(self):
        saved = history.save_conversation(
            self.cfg, ["gpt-4", "claude-3-opus"], "Q",
            [{"model": "gpt-4", "response": "A", "usage": None},
             {"model": "claude-3-opus", "error": "boom"}])
        date_str = saved["dateStr"]
        self.assertTrue(saved["fileName"].startswith(f"{date_str}_"))
        self.assertTrue(saved["fileName"].endswith("_gpt-4_vs_claude-3-opus.json"))

        logs = history.list_logs(self.cfg)
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]["date"], date_str)
        self.assertEqual(logs[0]["fileName"], saved["fileName"])
        self.assertEqual(logs[0]["responses"], [
            {"model": "gpt-4", "response": "A"},
            {"model": "claude-3-opus", "error": "boom"},
        ])

    def test_model_names_cannot_escape_directory(self):
        saved = history.save_conversation(self.cfg, ["org/model"], "Q", [])
        self.assertNotIn("/", saved["fileName"])


class TestListAndDelete(HistoryBase):
    def setUp(self):
        super().setUp()
        write_json(self.logs / "2024-01-01" / "old.json",
                   {"timestamp": "2024-01-01T10:00:00.000Z", "prompt": "old", "responses": []})
        write_json(self.logs / "2024-02-01" / "new.json",
                   {"timestamp": "2024-02-01T10:00:00.000Z", "prompt": "new", "responses": []})
        (self.logs / "2024-02-01" / "broken.json").write_text("{", encoding="utf-8")

    def test_newest_first_and_corrupt_skipped(self):
        self.assertEqual([log["prompt"] for log in history.list_logs(self.cfg)], ["new", "old"])

    def test_delete_removes_empty_date_dir(self):
        history.delete_log(self.cfg, "2024-01-01", "old.json")
        self.assertFalse((self.logs / "2024-01-01").exists())
        with self.assertRaises(NotFound):
            history.delete_log(self.cfg, "2024-01-01", "old.json")

    def test_delete_keeps_non_empty_date_dir(self):
        history.delete_log(self.cfg, "2024-02-01", "new.json")
        self.assertTrue((self.logs / "2024-02-01").is_dir())

    def test_delete_rejects_traversal(self):
        with self.assertRaises(ValidationError):
            history.delete_log(self.cfg, "..", "config.yaml")

    def test_clear(self):
        self.assertEqual(history.clear_logs(self.cfg), 2)
        self.assertEqual(history.list_logs(self.cfg), [])

    def test_missing_logs_dir(self):
        shutil.rmtree(self.logs)
        self.assertEqual(history.list_logs(self.cfg), [])
        self.assertEqual(history.clear_logs(self.cfg), 0)


class TestChangelog(HistoryBase):
    def test_default_when_missing(self):
        self.assertEqual(history.load_changelog(self.cfg), DEFAULT_CHANGELOG)

    def test_reads_initialized_file(self):
        initialize_directories(self.cfg)
        changelog = history.load_changelog(self.cfg)
        self.assertEqual(changelog["entries"][0]["title"], "Added Multi-Provider Support")


if __name__ == "__main__":
    unittest.main()
