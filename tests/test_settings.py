import json
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

from yarl import URL

from droppilot.config.settings import Settings, default_settings
from droppilot.utils import json_load, json_save, merge_json


def make_args(**overrides):
    values = {"log": False, "web": True, "port": 8080, "debug_gql": 0, "logging_level": 20}
    values.update(overrides)
    return SimpleNamespace(**values)


class TestMergeJson(unittest.TestCase):
    def test_merge(self):
        obj = {"keep": 1, "unknown": 2, "wrong": "text", "nested": {"a": 1, "b": 2}}
        template = {"keep": 0, "wrong": 5, "missing": True, "nested": {"a": 0}}
        merge_json(obj, template)
        self.assertEqual(obj, {"keep": 1, "wrong": 5, "missing": True, "nested": {"a": 1}})

    def test_free_form_mapping(self):
        obj = {"claims_by_game": {"Game A": 3}}
        merge_json(obj, {"claims_by_game": {}})
        self.assertEqual(obj, {"claims_by_game": {"Game A": 3}})

    def test_int_into_float(self):
        obj = {"at": 5}
        merge_json(obj, {"at": 0.0})
        self.assertEqual(obj, {"at": 5.0})
        self.assertIsInstance(obj["at"], float)


class TestJsonFiles(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name, "data.json")

    def tearDown(self):
        self.tmp.cleanup()

    def test_missing_file_returns_copy_of_defaults(self):
        defaults = {"games": [], "proxy": URL()}
        loaded = json_load(self.path, defaults)
        loaded["games"].append("Game A")
        self.assertEqual(defaults["games"], [])
        self.assertEqual(loaded["proxy"], URL())

    def test_save_and_load(self):
        json_save(self.path, {"proxy": URL("http://proxy:8080"), "games": ["A"]}, sort=True)
        raw = json.loads(self.path.read_text(encoding="utf8"))
        self.assertEqual(raw["proxy"], {"__type": "URL", "data": "http://proxy:8080"})
        loaded = json_load(self.path, {"proxy": URL(), "games": [], "extra": 1})
        self.assertEqual(loaded, {"proxy": URL("http://proxy:8080"), "games": ["A"], "extra": 1})

    def test_unknown_types_are_dropped(self):
        self.path.write_text(json.dumps({"value": {"__type": "Nope", "data": 1}}), encoding="utf8")
        self.assertEqual(json_load(self.path, {"value": 3}), {"value": 3})


class TestSettings(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name, "settings.json")
        self.patcher = patch("droppilot.config.settings.SETTINGS_PATH", self.path)
        self.patcher.start()

    def tearDown(self):
        self.patcher.stop()
        self.tmp.cleanup()

    def test_defaults(self):
        settings = Settings(make_args())
        for name, value in default_settings.items():
            self.assertEqual(getattr(settings, name), value)
        self.assertFalse(settings.altered)

    def test_args_come_first(self):
        settings = Settings(make_args(port=9000))
        self.assertEqual(settings.port, 9000)
        self.assertFalse(settings.log)

    def test_set_and_save(self):
        settings = Settings(make_args())
        settings.priority_games = ["Game A"]
        settings.proxy = URL("http://proxy:3128")
        self.assertTrue(settings.altered)
        settings.save()
        self.assertFalse(settings.altered)
        reloaded = Settings(make_args())
        self.assertEqual(reloaded.priority_games, ["Game A"])
        self.assertEqual(reloaded.proxy, URL("http://proxy:3128"))

    def test_save_skipped_when_unaltered(self):
        Settings(make_args()).save()
        self.assertFalse(self.path.exists())
        Settings(make_args()).save(force=True)
        self.assertTrue(self.path.exists())

    def test_unknown_setting(self):
        settings = Settings(make_args())
        with self.assertRaises(TypeError):
            settings.not_a_setting = 1
        with self.assertRaises(RuntimeError):
            del settings.proxy


if __name__ == "__main__":
    unittest.main()
