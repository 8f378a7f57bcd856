import errno
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from docket.config_manager import ConfigManager
from docket.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_missing_file_is_created_with_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))

            self.assertTrue(config_path.exists())
            config = manager.load()
            self.assertEqual(config.aggregation.default_time, "09:00")
            self.assertEqual(config.storage.db_path, "data/docket.db")

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "remote": {"base_url": "https://docs.example.com", "api_key": "k"},
                    "storage": {"db_path": "/var/lib/docket/docket.db"},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            self.assertFalse(Path(str(config_path) + ".tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["remote"]["base_url"], "https://docs.example.com")
            self.assertEqual(data["remote"]["api_key"], "k")

    def test_non_mapping_file_falls_back_to_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            config_path.write_text("- just\n- a list\n", encoding="utf-8")
            with self.assertLogs("docket.config_manager", level="WARNING"):
                config = ConfigManager(str(config_path)).load()
            self.assertEqual(config.remote.base_url, "")

    def test_update_merges_nested_sections(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"remote": {"base_url": "https://docs.example.com", "api_key": "secret"}})
            config = manager.update({"remote": {"timeout_seconds": 3}, "aggregation": {"default_time": "8:00"}})

            self.assertEqual(config.remote.base_url, "https://docs.example.com")
            self.assertEqual(config.remote.timeout_seconds, 3.0)
            self.assertEqual(config.aggregation.default_time, "08:00")
            self.assertEqual(manager.load().remote.api_key, "secret")

    def test_masked_hides_api_key(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            self.assertEqual(manager.masked()["remote"]["api_key"], "")
            manager.update({"remote": {"api_key": "secret"}})
            self.assertEqual(manager.masked()["remote"]["api_key"], "***")

    def test_environment_overrides_apply_on_load_only(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            manager.update({"remote": {"base_url": "https://docs.example.com"}})
            overrides = {"DOCKET_REMOTE_API_KEY": "from-env", "DOCKET_DB_PATH": "/srv/docket.db"}

            with mock.patch.dict(os.environ, overrides):
                config = manager.load()
                manager.update({"remote": {"timeout_seconds": 4}})
                masked = manager.masked()

            self.assertEqual(config.remote.api_key, "from-env")
            self.assertEqual(config.storage.db_path, "/srv/docket.db")
            self.assertEqual(config.remote.base_url, "https://docs.example.com")
            self.assertEqual(masked["remote"]["api_key"], "***")
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["remote"]["api_key"], "")
            self.assertEqual(data["remote"]["timeout_seconds"], 4.0)
            self.assertEqual(data["storage"]["db_path"], "data/docket.db")


if __name__ == "__main__":
    unittest.main()
