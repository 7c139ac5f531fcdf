"""
Casework — Environment Config Loader Tests

Tests three-tier config loading: base file → overlay file → env vars,
and engine construction from the merged config.
"""

import os
import shutil
import sys
import tempfile
import unittest
from unittest import mock

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from casework.permissions import Action, Scope
from casework.ports import NullAuditRecorder
from casework.runtime import CaseWorkflowEngine
from casework.store import SQLiteMeetingRepository
from casework.types import Role
from services.audit import AuditTrail
from services.config import (
    _load_env_overrides, _set_nested, deep_merge, get_config_value, load_config,
)
from services.notifications import WebhookDispatcher


class TestDeepMerge(unittest.TestCase):

    def test_nested_merge(self):
        base = {"outer": {"a": 1, "b": 2, "inner": {"x": 10}}}
        overlay = {"outer": {"b": 99, "inner": {"y": 20}}}
        result = deep_merge(base, overlay)
        self.assertEqual(result, {"outer": {"a": 1, "b": 99, "inner": {"x": 10, "y": 20}}})

    def test_overlay_replaces_list(self):
        result = deep_merge({"webhooks": [{"url": "a"}, {"url": "b"}]}, {"webhooks": []})
        self.assertEqual(result["webhooks"], [])

    def test_base_not_mutated(self):
        base = {"sweep": {"interval_seconds": 300}}
        deep_merge(base, {"sweep": {"interval_seconds": 60}})
        self.assertEqual(base["sweep"]["interval_seconds"], 300)

    def test_set_nested(self):
        d = {}
        _set_nested(d, ["sweep", "on_read"], True)
        self.assertEqual(d, {"sweep": {"on_read": True}})


class _ConfigDirTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.base_path = os.path.join(self.tmpdir, "casework.yaml")
        with open(self.base_path, "w") as f:
            f.write(
                "database:\n  path: base.db\n"
                "sweep:\n  interval_seconds: 300\n  on_read: false\n"
                "logging:\n  level: INFO\n"
            )
        with open(os.path.join(self.tmpdir, "staging.yaml"), "w") as f:
            f.write("sweep:\n  interval_seconds: 60\n")
        self._env = mock.patch.dict(os.environ, {}, clear=False)
        self._env.start()
        for key in list(os.environ):
            if key.startswith("MDT_"):
                del os.environ[key]

    def tearDown(self):
        self._env.stop()
        shutil.rmtree(self.tmpdir, ignore_errors=True)


class TestLoadConfig(_ConfigDirTestCase):

    def test_base_only(self):
        cfg = load_config(self.base_path)
        self.assertEqual(cfg["database"]["path"], "base.db")
        self.assertEqual(cfg["_active_env"], "default")

    def test_overlay_from_argument(self):
        cfg = load_config(self.base_path, env="staging", config_dir=self.tmpdir)
        self.assertEqual(cfg["sweep"]["interval_seconds"], 60)
        self.assertFalse(cfg["sweep"]["on_read"])
        self.assertEqual(cfg["_active_env"], "staging")

    def test_overlay_from_env_var(self):
        os.environ["MDT_ENV"] = "staging"
        cfg = load_config(self.base_path, config_dir=self.tmpdir)
        self.assertEqual(cfg["sweep"]["interval_seconds"], 60)

    def test_missing_overlay_is_ignored(self):
        cfg = load_config(self.base_path, env="nowhere", config_dir=self.tmpdir)
        self.assertEqual(cfg["sweep"]["interval_seconds"], 300)

    def test_env_overrides_win(self):
        os.environ["MDT_SWEEP__INTERVAL_SECONDS"] = "15"
        os.environ["MDT_SWEEP__ON_READ"] = "true"
        cfg = load_config(self.base_path, env="staging", config_dir=self.tmpdir)
        self.assertEqual(cfg["sweep"]["interval_seconds"], 15)
        self.assertIs(cfg["sweep"]["on_read"], True)

    def test_meta_vars_not_treated_as_overrides(self):
        os.environ["MDT_CONFIG_DIR"] = self.tmpdir
        self.assertEqual(_load_env_overrides(), {})

    def test_env_vars_can_be_disabled(self):
        os.environ["MDT_DATABASE__PATH"] = "env.db"
        cfg = load_config(self.base_path, include_env_vars=False)
        self.assertEqual(cfg["database"]["path"], "base.db")

    def test_missing_base_file(self):
        cfg = load_config(os.path.join(self.tmpdir, "absent.yaml"))
        self.assertEqual(get_config_value("database.path", cfg, ":memory:"), ":memory:")

    def test_get_config_value(self):
        cfg = load_config(self.base_path)
        self.assertEqual(get_config_value("logging.level", cfg), "INFO")
        self.assertIsNone(get_config_value("logging.level.deeper", cfg))
        self.assertEqual(get_config_value("worker.max_jobs", cfg, 4), 4)

    def test_shipped_config_parses(self):
        shipped = os.path.join(_base, "config", "casework.yaml")
        cfg = load_config(shipped, env="prod", config_dir=os.path.join(_base, "config"))
        self.assertEqual(cfg["sweep"]["interval_seconds"], 900)
        self.assertEqual(cfg["permissions"]["overrides"], {})


class TestEngineFromConfig(_ConfigDirTestCase):

    def test_defaults(self):
        engine = CaseWorkflowEngine.from_config({
            "database": {"path": ":memory:"},
            "audit": {"path": ""},
        })
        try:
            self.assertIsInstance(engine.audit, NullAuditRecorder)
            self.assertIsInstance(engine.dispatcher, WebhookDispatcher)
            self.assertIsInstance(engine.meeting_repository, SQLiteMeetingRepository)
            self.assertFalse(engine.sweep_on_read)
            self.assertEqual(engine.sweep_interval_seconds, 300.0)
        finally:
            engine.close()

    def test_configured_collaborators(self):
        engine = CaseWorkflowEngine.from_config({
            "database": {"path": ":memory:"},
            "audit": {"path": ":memory:"},
            "sweep": {"on_read": True, "interval_seconds": 30},
            "directory": {"consultants": {"onc": ["u1", "u2"]}},
            "notifications": {
                "base_url": "https://mdt.example.org/",
                "webhooks": [{"url": "https://hooks.example.org/a", "format": "slack"}],
            },
            "permissions": {"overrides": {"Consultant": {"archive": "creator_in_department"}}},
        })
        try:
            self.assertIsInstance(engine.audit, AuditTrail)
            self.assertTrue(engine.sweep_on_read)
            self.assertEqual(engine.sweep_interval_seconds, 30.0)
            self.assertEqual(engine.users.consultants_in_department("onc"), ["u1", "u2"])
            self.assertEqual(engine.dispatcher.base_url, "https://mdt.example.org")
            self.assertEqual(engine.dispatcher.configs[0].format, "slack")
            self.assertEqual(
                engine.permissions.rules[Role.CONSULTANT][Action.ARCHIVE],
                Scope.CREATOR_IN_DEPARTMENT,
            )
        finally:
            engine.close()

    def test_bad_permission_override_rejected(self):
        with self.assertRaises(ValueError):
            CaseWorkflowEngine.from_config({
                "database": {"path": ":memory:"},
                "audit": {"path": ""},
                "permissions": {"overrides": {"Consultant": {"archive": "all"}}},
            })


if __name__ == "__main__":
    unittest.main()
