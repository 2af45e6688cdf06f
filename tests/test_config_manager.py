import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from tasksync.config_manager import MASK, ConfigManager
from tasksync.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = Path(self.temp_dir.name) / "nested" / "config.yaml"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_missing_file_is_created_with_defaults(self) -> None:
        manager = ConfigManager(str(self.config_path))
        self.assertTrue(self.config_path.exists())
        config = manager.load()
        self.assertEqual(config.sync.interval_seconds, 60)
        self.assertEqual(config.filters.completed_task_age_days, 30)
        self.assertEqual(config.retry.max_attempts, 3)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        manager = ConfigManager(str(self.config_path))
        config = AppConfig.from_dict(
            {
                "caldav": {"base_url": "https://dav.example.com", "username": "u", "password": "p"},
                "vault": {"path": "/vault", "name": "Notes"},
            }
        )

        original_replace = Path.replace

        def replace_side_effect(self: Path, target: Path) -> Path:
            if str(self).endswith(".tmp"):
                raise OSError(errno.EBUSY, "Device or resource busy")
            return original_replace(self, target)

        with mock.patch("pathlib.Path.replace", new=replace_side_effect):
            manager.save(config)

        data = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        self.assertEqual(data["caldav"]["base_url"], "https://dav.example.com")
        self.assertEqual(data["vault"]["name"], "Notes")
        self.assertFalse(self.config_path.with_suffix(".yaml.tmp").exists())

    def test_other_replace_errors_propagate(self) -> None:
        manager = ConfigManager(str(self.config_path))

        def replace_side_effect(self: Path, target: Path) -> Path:
            raise OSError(errno.EACCES, "Permission denied")

        with mock.patch("pathlib.Path.replace", new=replace_side_effect):
            with self.assertRaises(OSError):
                manager.save(AppConfig())

    def test_update_deep_merges(self) -> None:
        manager = ConfigManager(str(self.config_path))
        manager.update({"caldav": {"base_url": "https://dav.example.com", "password": "secret"}})
        config = manager.update({"caldav": {"username": "alice"}, "filters": {"excluded_tags": ["#private"]}})
        self.assertEqual(config.caldav.base_url, "https://dav.example.com")
        self.assertEqual(config.caldav.username, "alice")
        self.assertEqual(config.caldav.password, "secret")
        self.assertEqual(manager.load().filters.excluded_tags, ["#private"])

    def test_update_rejects_unknown_keys_and_values(self) -> None:
        manager = ConfigManager(str(self.config_path))
        manager.update({"sync": {"hyperlink_mode": "move"}})
        for payload in (
            {"sink": {"interval_seconds": 60}},
            {"sync": {"interval": 60}},
            {"sync": "often"},
            {"sync": {"hyperlink_mode": "rewrite"}},
            {"logging": {"level": "TRACE"}},
        ):
            with self.subTest(payload=payload):
                with self.assertRaises(ValueError):
                    manager.update(payload)
        self.assertEqual(manager.load().sync.hyperlink_mode, "move")
        self.assertEqual(manager.load().logging.level, "INFO")

    def test_update_accepts_supported_modes_in_any_case(self) -> None:
        manager = ConfigManager(str(self.config_path))
        config = manager.update({"sync": {"hyperlink_mode": "Strip"}, "logging": {"level": "debug"}})
        self.assertEqual(config.sync.hyperlink_mode, "strip")
        self.assertEqual(config.logging.level, "DEBUG")

    def test_masked_hides_password_only(self) -> None:
        manager = ConfigManager(str(self.config_path))
        self.assertEqual(manager.masked()["caldav"]["password"], "")
        manager.update({"caldav": {"username": "alice", "password": "secret"}})
        masked = manager.masked()
        self.assertEqual(masked["caldav"]["password"], MASK)
        self.assertEqual(masked["caldav"]["username"], "alice")


if __name__ == "__main__":
    unittest.main()
