"""Tests for the layered config loader (base file, overlay, EPH_ overrides)."""

import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from infra.config import (
    _load_env_overrides,
    _resolve_env_path,
    _set_nested,
    deep_merge,
    get_config_value,
    load_config,
)


class TestDeepMerge(unittest.TestCase):
    """Test recursive dict merging."""

    def test_flat_merge(self):
        result = deep_merge({"a": 1, "b": 2}, {"b": 3, "c": 4})
        self.assertEqual(result, {"a": 1, "b": 3, "c": 4})

    def test_nested_merge(self):
        base = {"lease": {"backend": "sqlite", "ttl_seconds": 300}, "b": 3}
        overlay = {"lease": {"ttl_seconds": 30, "redis_url": "redis://x"}}
        result = deep_merge(base, overlay)
        self.assertEqual(result["lease"],
                         {"backend": "sqlite", "ttl_seconds": 30, "redis_url": "redis://x"})
        self.assertEqual(result["b"], 3)

    def test_overlay_replaces_list(self):
        result = deep_merge({"services": [1, 2, 3]}, {"services": [4]})
        self.assertEqual(result["services"], [4])

    def test_overlay_replaces_scalar_with_dict(self):
        result = deep_merge({"a": "string_value"}, {"a": {"nested": True}})
        self.assertEqual(result["a"], {"nested": True})

    def test_immutability(self):
        """Merge should not modify originals."""
        base = {"a": {"x": 1}}
        overlay = {"a": {"y": 2}}
        deep_merge(base, overlay)
        self.assertEqual(base, {"a": {"x": 1}})
        self.assertEqual(overlay, {"a": {"y": 2}})


class TestEnvPathResolution(unittest.TestCase):

    REFERENCE = {
        "sweeper": {"interval_seconds": 900, "inactivity_threshold_hours": 24},
        "lease": {"backend": "sqlite", "redis_url": ""},
        "rate_limits": {"provisioner": {"max_concurrent": 10}},
    }

    def test_underscored_leaf(self):
        self.assertEqual(_resolve_env_path(["sweeper", "interval", "seconds"], self.REFERENCE),
                         ["sweeper", "interval_seconds"])

    def test_underscored_section(self):
        parts = ["rate", "limits", "provisioner", "max", "concurrent"]
        self.assertEqual(_resolve_env_path(parts, self.REFERENCE),
                         ["rate_limits", "provisioner", "max_concurrent"])

    def test_unknown_keys_split_per_segment(self):
        self.assertEqual(_resolve_env_path(["custom", "flag"], self.REFERENCE),
                         ["custom", "flag"])

    def test_unknown_leaf_under_known_section(self):
        self.assertEqual(_resolve_env_path(["lease", "new", "knob"], self.REFERENCE),
                         ["lease", "new", "knob"])

    def test_set_nested_replaces_scalars(self):
        d = {"a": 1}
        _set_nested(d, ["a", "b", "c"], 5)
        self.assertEqual(d, {"a": {"b": {"c": 5}}})


class TestEnvOverrides(unittest.TestCase):

    def test_values_parsed_as_yaml(self):
        env = {
            "EPH_SWEEPER_INTERVAL_SECONDS": "60",
            "EPH_LEASE_BACKEND": "redis",
            "EPH_CUSTOM_ENABLED": "true",
        }
        with patch.dict(os.environ, env):
            overrides = _load_env_overrides(TestEnvPathResolution.REFERENCE)
        self.assertEqual(overrides["sweeper"]["interval_seconds"], 60)
        self.assertEqual(overrides["lease"]["backend"], "redis")
        self.assertIs(overrides["custom"]["enabled"], True)

    def test_control_variables_excluded(self):
        with patch.dict(os.environ, {"EPH_ENV": "prod", "EPH_CONFIG_DIR": "/tmp",
                                     "EPH_VERSION": "1.0"}):
            overrides = _load_env_overrides({})
        self.assertNotIn("env", overrides)
        self.assertNotIn("config", overrides)
        self.assertNotIn("version", overrides)


class TestLoadConfig(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name)
        (self.root / "ephemera.yaml").write_text(
            "dispatcher:\n  max_workers: 8\n"
            "sweeper:\n  interval_seconds: 900\n"
            "lease:\n  backend: sqlite\n"
        )
        (self.root / "config").mkdir()
        (self.root / "config" / "dev.yaml").write_text(
            "lease:\n  backend: memory\n"
        )
        self.base = str(self.root / "ephemera.yaml")
        self.config_dir = str(self.root / "config")

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_load_base_file(self):
        cfg = load_config(self.base, include_env_vars=False)
        self.assertEqual(cfg["dispatcher"]["max_workers"], 8)
        self.assertEqual(cfg["_config_source"], self.base)

    def test_missing_base_file_is_ok(self):
        cfg = load_config(str(self.root / "nope.yaml"), include_env_vars=False)
        self.assertNotIn("dispatcher", cfg)
        self.assertIn("_active_env", cfg)

    def test_overlay_merges_over_base(self):
        cfg = load_config(self.base, env="dev", config_dir=self.config_dir,
                          include_env_vars=False)
        self.assertEqual(cfg["lease"]["backend"], "memory")
        self.assertEqual(cfg["dispatcher"]["max_workers"], 8)
        self.assertEqual(cfg["_active_env"], "dev")

    def test_overlay_found_next_to_base(self):
        cfg = load_config(self.base, env="dev", config_dir=str(self.root / "elsewhere"),
                          include_env_vars=False)
        self.assertEqual(cfg["lease"]["backend"], "memory")

    def test_no_overlay_file_is_ok(self):
        cfg = load_config(self.base, env="staging", config_dir=self.config_dir,
                          include_env_vars=False)
        self.assertEqual(cfg["lease"]["backend"], "sqlite")

    def test_env_vars_override_overlay(self):
        with patch.dict(os.environ, {"EPH_LEASE_BACKEND": "redis",
                                     "EPH_SWEEPER_INTERVAL_SECONDS": "30"}):
            cfg = load_config(self.base, env="dev", config_dir=self.config_dir)
        self.assertEqual(cfg["lease"]["backend"], "redis")
        self.assertEqual(cfg["sweeper"]["interval_seconds"], 30)

    def test_shipped_config_loads(self):
        cfg = load_config(os.path.join(_project_root, "ephemera.yaml"),
                          include_env_vars=False)
        self.assertEqual(cfg["environment"]["prefix"], "pr")
        self.assertEqual([s["name"] for s in cfg["environment"]["services"]], ["web", "api"])
        self.assertEqual(cfg["sweeper"]["inactivity_threshold_hours"], 24)

    def test_shipped_dev_overlay(self):
        cfg = load_config(os.path.join(_project_root, "ephemera.yaml"), env="dev",
                          config_dir=os.path.join(_project_root, "config"),
                          include_env_vars=False)
        self.assertEqual(cfg["registry"]["backend"], "memory")
        self.assertEqual(cfg["lease"]["ttl_seconds"], 120)


class TestGetConfigValue(unittest.TestCase):

    CFG = {"dispatcher": {"max_workers": 4}, "notifications": {"webhooks": []}}

    def test_dotted_path(self):
        self.assertEqual(get_config_value("dispatcher.max_workers", self.CFG), 4)

    def test_default_for_missing(self):
        self.assertEqual(get_config_value("dispatcher.nope", self.CFG, 7), 7)
        self.assertIsNone(get_config_value("a.b.c", self.CFG))

    def test_falsy_values_returned(self):
        self.assertEqual(get_config_value("notifications.webhooks", self.CFG, None), [])


if __name__ == "__main__":
    unittest.main()
