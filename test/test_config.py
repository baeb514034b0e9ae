#!/usr/bin/env python3
"""Configuration, directory bootstrap and model registry tests."""

import json
import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

# Ensure bin/ is importable
_project = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_project / "bin"))

from config import (
    Config,
    _env_bool,
    directories,
    format_model_name,
    get_actual_model_id,
    initialize_directories,
    known_providers,
    load_config,
    parse_args,
    provider_configs,
)


class TestLoadConfig(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_env_overrides(self):
        env = {
            "MODELCOMPARE_ROOT": self.tmpdir,
            "PORT": "4000",
            "MODELCOMPARE_TIMEOUT_S": "30",
            "MODELCOMPARE_MAX_WORKERS": "0",
            "MODELCOMPARE_LEGACY_LAYOUT": "yes",
            "MODELCOMPARE_ALLOWED_ORIGINS": "http://a, http://b",
        }
        with patch.dict(os.environ, env):
            cfg = load_config()
        self.assertEqual(cfg.root_dir, Path(self.tmpdir).resolve())
        self.assertEqual(cfg.bind_port, 4000)
        self.assertEqual(cfg.timeout_s, 30.0)
        self.assertEqual(cfg.max_workers, 1)
        self.assertTrue(cfg.legacy_layout)
        self.assertEqual(cfg.allowed_origins, {"http://a", "http://b"})
        self.assertEqual(directories(cfg).threads.name, "threadLogs")

    def test_config_yaml_overrides_providers(self):
        Path(self.tmpdir, "config.yaml").write_text(
            "providers:\n  openai:\n    url: http://proxy.local/v1/\n    models: [gpt-4o]\n",
            encoding="utf-8")
        cfg = load_config(self.tmpdir)
        providers = provider_configs(cfg)
        self.assertEqual(providers["openai"]["url"], "http://proxy.local/v1")
        self.assertEqual(providers["openai"]["models"], ["gpt-4o"])
        self.assertEqual(providers["anthropic"]["url"], "https://api.anthropic.com/v1")

    def test_bad_yaml_is_ignored(self):
        Path(self.tmpdir, "config.yaml").write_text("providers: [unclosed\n", encoding="utf-8")
        self.assertEqual(load_config(self.tmpdir).config_yaml, {})

    def test_env_bool(self):
        with patch.dict(os.environ, {"X_FLAG": "On"}):
            self.assertTrue(_env_bool("X_FLAG", False))
        with patch.dict(os.environ, {"X_FLAG": "0"}):
            self.assertFalse(_env_bool("X_FLAG", True))
        self.assertTrue(_env_bool("X_FLAG_UNSET_FOR_TEST", True))


class TestInitializeDirectories(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.cfg = Config(root_dir=Path(self.tmpdir))

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_creates_layout_and_files(self):
        dirs = initialize_directories(self.cfg)
        for path in dirs.all():
            self.assertTrue(path.is_dir(), path)
        self.assertEqual(json.loads(dirs.api_config.read_text(encoding="utf-8")), {"apis": []})
        self.assertTrue(dirs.changelog.is_file())

    def test_copies_example_api_config(self):
        example = Path(self.tmpdir, "config", "apis.example.json")
        example.parent.mkdir(parents=True)
        example.write_text('{"apis": [{"id": "1", "name": "n", "provider": "openai", "key": "k"}]}',
                           encoding="utf-8")
        dirs = initialize_directories(self.cfg)
        self.assertEqual(len(json.loads(dirs.api_config.read_text(encoding="utf-8"))["apis"]), 1)

    def test_existing_files_are_kept(self):
        dirs = initialize_directories(self.cfg)
        dirs.api_config.write_text('{"apis": [{"id": "x"}]}', encoding="utf-8")
        initialize_directories(self.cfg)
        self.assertIn('"x"', dirs.api_config.read_text(encoding="utf-8"))


class TestRegistry(unittest.TestCase):
    def test_actual_model_id(self):
        self.assertEqual(get_actual_model_id("claude-3-opus"), "claude-3-opus-20240229")
        self.assertEqual(get_actual_model_id("unknown-model"), "unknown-model")
        self.assertIsNone(get_actual_model_id(None))

    def test_format_model_name(self):
        self.assertEqual(format_model_name("gpt-4-turbo"), "GPT-4 Turbo")
        self.assertEqual(format_model_name("gpt-4o-mini"), "GPT 4o mini")

    def test_known_providers_include_custom(self):
        self.assertEqual(known_providers()[-1], "custom")
        self.assertIn("gemini", known_providers())


class TestParseArgs(unittest.TestCase):
    def test_migrate_subcommand(self):
        args = parse_args(["--debug", "migrate", "old", "new"])
        self.assertTrue(args.debug)
        self.assertEqual((args.cmd, args.old_id, args.new_id), ("migrate", "old", "new"))

    def test_default_serve(self):
        args = parse_args([])
        self.assertIsNone(args.cmd)
        self.assertIsNone(args.port)


if __name__ == "__main__":
    unittest.main()
