"""
Quote Commander — Environment Config Loader Tests

Tests three-tier config loading: base file → overlay files → QC_ env vars,
and the typed Settings built from the merged dict.
"""

import os
import shutil
import sys
import tempfile
import unittest
from unittest import mock

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.config import (
    Settings, _load_env_overrides, _set_nested, deep_merge, get_config_value, load_config,
)


def _clean_env():
    return {k: v for k, v in os.environ.items() if not k.startswith("QC_") and k != "REDIS_URL"}


class TestDeepMerge(unittest.TestCase):
    """Core merge logic."""

    def test_nested_merge(self):
        base = {"call": {"ttl_seconds": 3600, "lock_ttl_ms": 15000}}
        overlay = {"call": {"ttl_seconds": 1800}}
        result = deep_merge(base, overlay)
        self.assertEqual(result, {"call": {"ttl_seconds": 1800, "lock_ttl_ms": 15000}})

    def test_lists_replaced(self):
        self.assertEqual(deep_merge({"items": [1, 2]}, {"items": [9]}), {"items": [9]})

    def test_base_not_mutated(self):
        base = {"a": {"b": 1}}
        deep_merge(base, {"a": {"b": 2}})
        self.assertEqual(base, {"a": {"b": 1}})

    def test_set_nested(self):
        d = {}
        _set_nested(d, ["commander", "init_retries"], 3)
        self.assertEqual(d, {"commander": {"init_retries": 3}})


class TestLoadConfig(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.base = os.path.join(self.tmp, "commander_config.yaml")
        with open(self.base, "w") as f:
            f.write("store:\n  backend: memory\ncall:\n  ttl_seconds: 3600\n")
        os.makedirs(os.path.join(self.tmp, "config"))
        with open(os.path.join(self.tmp, "config", "prod.yaml"), "w") as f:
            f.write("store:\n  backend: redis\n")

    def tearDown(self):
        shutil.rmtree(self.tmp)

    def test_base_only(self):
        with mock.patch.dict(os.environ, _clean_env(), clear=True):
            cfg = load_config(self.base)
        self.assertEqual(get_config_value("store.backend", cfg), "memory")
        self.assertEqual(cfg["_active_env"], "default")

    def test_overlay_beside_base(self):
        with mock.patch.dict(os.environ, _clean_env(), clear=True):
            cfg = load_config(self.base, env="prod", config_dir=os.path.join(self.tmp, "missing"))
        self.assertEqual(get_config_value("store.backend", cfg), "redis")
        self.assertEqual(get_config_value("call.ttl_seconds", cfg), 3600)

    def test_env_overrides_win(self):
        env = _clean_env()
        env.update({"QC_ENV": "prod", "QC_CALL__TTL_SECONDS": "1800", "QC_STORE__BACKEND": "memory"})
        with mock.patch.dict(os.environ, env, clear=True):
            cfg = load_config(self.base, config_dir=os.path.join(self.tmp, "config"))
        self.assertEqual(get_config_value("call.ttl_seconds", cfg), 1800)
        self.assertEqual(get_config_value("store.backend", cfg), "memory")
        self.assertEqual(cfg["_active_env"], "prod")

    def test_missing_base(self):
        with mock.patch.dict(os.environ, _clean_env(), clear=True):
            cfg = load_config(os.path.join(self.tmp, "nope.yaml"))
        self.assertIsNone(get_config_value("store.backend", cfg))

    def test_get_config_value_default(self):
        self.assertEqual(get_config_value("a.b.c", {"a": {}}, 7), 7)


class TestEnvOverrides(unittest.TestCase):

    def test_double_underscore_nesting(self):
        env = _clean_env()
        env.update({"QC_COMMANDER__INIT_RETRY_DELAY_SECONDS": "0.25", "QC_ENV": "dev",
                    "QC_COMMANDER_PARTITION": "2"})
        with mock.patch.dict(os.environ, env, clear=True):
            overrides = _load_env_overrides()
        self.assertEqual(overrides, {"commander": {"init_retry_delay_seconds": 0.25}})


class TestSettings(unittest.TestCase):

    def test_defaults(self):
        s = Settings()
        self.assertEqual(s.store_backend, "memory")
        self.assertEqual(s.commander_init_retries, 1)
        self.assertEqual(s.max_negotiation_attempts, 2)

    def test_from_config(self):
        cfg = {
            "store": {"backend": "redis"},
            "commander": {"partitions": 8, "init_retry_delay_seconds": 1},
            "negotiation": {"threshold": "0.3"},
        }
        with mock.patch.dict(os.environ, _clean_env(), clear=True):
            s = Settings.from_config(cfg)
        self.assertEqual(s.store_backend, "redis")
        self.assertEqual(s.commander_partitions, 8)
        self.assertEqual(s.commander_init_retry_delay_seconds, 1.0)
        self.assertIsInstance(s.commander_init_retry_delay_seconds, float)
        self.assertEqual(s.negotiation_threshold, 0.3)

    def test_invalid_value_ignored(self):
        with mock.patch.dict(os.environ, _clean_env(), clear=True):
            s = Settings.from_config({"call": {"ttl_seconds": "forever"}})
        self.assertEqual(s.call_ttl_seconds, 3600)

    def test_redis_url_env_wins(self):
        env = _clean_env()
        env["REDIS_URL"] = "redis://cache:6380/1"
        with mock.patch.dict(os.environ, env, clear=True):
            s = Settings.from_config({"redis": {"url": "redis://localhost:6379"}})
        self.assertEqual(s.redis_url, "redis://cache:6380/1")

    def test_boolean_settings(self):
        with mock.patch.dict(os.environ, _clean_env(), clear=True):
            off = Settings.from_config({"overseer": {"enabled": "false"}})
            on = Settings.from_config({"overseer": {"enabled": True, "nudge_ttl_seconds": "60"}})
        self.assertFalse(off.overseer_enabled)
        self.assertTrue(on.overseer_enabled)
        self.assertEqual(on.nudge_ttl_seconds, 60)

    def test_repo_base_config_loads(self):
        with mock.patch.dict(os.environ, _clean_env(), clear=True):
            s = Settings.from_config(load_config())
        self.assertEqual(s.commander_partitions, 4)
        self.assertEqual(s.turn_model, "fast")


if __name__ == "__main__":
    unittest.main()
