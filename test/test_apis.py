#!/usr/bin/env python3
"""Provider API config (apis.json) tests."""

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

import apis as apis_mod
from config import Config, directories, initialize_directories
from store import NotFound, ValidationError


class ApisBase(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.cfg = Config(root_dir=Path(self.tmpdir))
        initialize_directories(self.cfg)
        env = {k: v for k, v in os.environ.items() if k != "OPENAI_API_KEY"}
        self._env = patch.dict(os.environ, env, clear=True)
        self._env.start()

    def tearDown(self):
        self._env.stop()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def stored(self):
        return json.loads(directories(self.cfg).api_config.read_text(encoding="utf-8"))


class TestValidation(unittest.TestCase):
    def test_required_fields(self):
        with self.assertRaises(ValidationError) as ctx:
            apis_mod.validate_provider_config({"provider": "openai"})
        self.assertIn("name", str(ctx.exception))
        self.assertIn("key", str(ctx.exception))

    def test_unknown_provider(self):
        with self.assertRaises(ValidationError):
            apis_mod.validate_provider_config({"name": "x", "provider": "acme", "key": "k"})

    def test_custom_and_known_providers_pass(self):
        for provider in ("openai", "anthropic", "deepseek", "gemini", "custom"):
            with self.subTest(provider=provider):
                apis_mod.validate_provider_config({"name": "x", "provider": provider, "key": "k"})

    def test_not_a_mapping(self):
        with self.assertRaises(ValidationError):
            apis_mod.validate_provider_config(["openai"])


class TestCrud(ApisBase):
    def test_add_fills_default_url_and_persists(self):
        created = apis_mod.add_api(self.cfg, {"name": "Main", "provider": "deepseek", "key": "sk-1"})
        self.assertEqual(created["url"], "https://api.deepseek.com/v1")
        self.assertTrue(created["active"])
        self.assertEqual(self.stored()["apis"], [created])

    def test_add_two_gets_distinct_ids(self):
        a = apis_mod.add_api(self.cfg, {"name": "A", "provider": "openai", "key": "k1"})
        b = apis_mod.add_api(self.cfg, {"name": "B", "provider": "openai", "key": "k2"})
        self.assertNotEqual(a["id"], b["id"])

    def test_add_invalid_is_not_persisted(self):
        with self.assertRaises(ValidationError):
            apis_mod.add_api(self.cfg, {"name": "A", "provider": "acme", "key": "k"})
        self.assertEqual(self.stored()["apis"], [])

    def test_update_merges_and_revalidates(self):
        created = apis_mod.add_api(self.cfg, {"name": "A", "provider": "openai", "key": "k1"})
        updated = apis_mod.update_api(self.cfg, created["id"], {"active": False, "name": "Renamed"})
        self.assertFalse(updated["active"])
        self.assertEqual(updated["name"], "Renamed")
        self.assertEqual(apis_mod.active_apis(self.cfg), [])
        with self.assertRaises(ValidationError):
            apis_mod.update_api(self.cfg, created["id"], {"provider": "acme"})
        self.assertEqual(apis_mod.get_api(self.cfg, created["id"])["provider"], "openai")

    def test_update_unknown_id(self):
        with self.assertRaises(NotFound):
            apis_mod.update_api(self.cfg, "missing", {"name": "x"})

    def test_delete(self):
        created = apis_mod.add_api(self.cfg, {"name": "A", "provider": "openai", "key": "k1"})
        apis_mod.delete_api(self.cfg, created["id"])
        self.assertEqual(apis_mod.list_apis(self.cfg), [])
        with self.assertRaises(NotFound):
            apis_mod.delete_api(self.cfg, created["id"])

    def test_numeric_ids_from_older_files_are_matched(self):
        directories(self.cfg).api_config.write_text(json.dumps({"apis": [
            {"id": 1700000000000, "name": "Old", "provider": "openai", "key": "sk-old-key", "active": True},
        ]}), encoding="utf-8")
        self.assertEqual(apis_mod.get_api(self.cfg, "1700000000000")["name"], "Old")
        updated = apis_mod.update_api(self.cfg, "1700000000000", {"active": False})
        self.assertFalse(updated["active"])
        self.assertEqual(self.stored()["apis"][0]["id"], 1700000000000)

        with patch("store.time.time", return_value=1700000000.0):
            created = apis_mod.add_api(self.cfg, {"name": "New", "provider": "openai", "key": "sk-new"})
        self.assertEqual(created["id"], "1700000000001")

        apis_mod.delete_api(self.cfg, "1700000000000")
        self.assertEqual([a["name"] for a in self.stored()["apis"]], ["New"])


class TestEnvInjection(ApisBase):
    def test_env_key_added_once(self):
        with patch.dict(os.environ, {"OPENAI_API_KEY": "sk-env-123456"}):
            first = apis_mod.list_apis(self.cfg)
            second = apis_mod.list_apis(self.cfg)
        self.assertEqual(len(first), 1)
        self.assertEqual(first[0]["name"], apis_mod.ENV_API_NAME)
        self.assertEqual(first[0]["provider"], "openai")
        self.assertEqual(len(second), 1)
        self.assertEqual(len(self.stored()["apis"]), 1)


class TestMasking(unittest.TestCase):
    def test_mask_key(self):
        self.assertEqual(apis_mod.mask_key("sk-abcdef123456"), "sk-...3456")
        self.assertEqual(apis_mod.mask_key(""), "")
        self.assertEqual(apis_mod.mask_key("short"), "...rt")

    def test_public_view_does_not_mutate(self):
        api = {"id": "1", "key": "sk-abcdef123456"}
        view = apis_mod.public_view(api)
        self.assertEqual(view["key"], "sk-...3456")
        self.assertEqual(api["key"], "sk-abcdef123456")


if __name__ == "__main__":
    unittest.main()
