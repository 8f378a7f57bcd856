from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from docket.models import AppConfig, default_app_config


logger = logging.getLogger(__name__)


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# Environment variables that take precedence over the file. They are applied
# on load only, so a secret passed this way never lands in the YAML.
ENV_OVERRIDES = {
    "DOCKET_REMOTE_BASE_URL": ("remote", "base_url"),
    "DOCKET_REMOTE_API_KEY": ("remote", "api_key"),
    "DOCKET_DB_PATH": ("storage", "db_path"),
}

MASK = "***"


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(data)
    for variable, (section, key) in ENV_OVERRIDES.items():
        value = os.getenv(variable)
        if not value:
            continue
        target = merged.get(section)
        if not isinstance(target, dict):
            target = merged[section] = {}
        target[key] = value
    return merged


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())
        logger.info("Wrote default config to %s", self.config_path)

    def _read_file(self) -> dict[str, Any]:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            logger.warning("Config %s is not a mapping, using defaults", self.config_path)
            return {}
        return data

    def load(self) -> AppConfig:
        return AppConfig.from_dict(_apply_env_overrides(self._read_file()))

    def _dump(self, config_dict: dict[str, Any], path: Path) -> None:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(
                config_dict,
                handle,
                sort_keys=False,
                allow_unicode=True,
                default_flow_style=False,
            )

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            self._dump(config_dict, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be replaced atomically.
                if exc.errno != errno.EBUSY:
                    raise
                self._dump(config_dict, self.config_path)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            current = AppConfig.from_dict(self._read_file()).to_dict()
            merged = _deep_merge(current, payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
            return self.load()

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        if config.get("remote", {}).get("api_key"):
            config["remote"]["api_key"] = MASK
        return config
