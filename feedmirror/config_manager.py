from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from feedmirror.models import AppConfig, default_app_config

logger = logging.getLogger(__name__)

MASK = "***"
SECRET_FIELDS = (("caldav", "password"),)


class ConfigError(RuntimeError):
    """The config file exists but cannot be read as a YAML mapping."""


def deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _write_yaml(data: dict[str, Any], path: Path) -> None:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)


class ConfigManager:
    """YAML-backed AppConfig. Every read goes back to disk so edits apply to the next run."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            logger.info("Writing default config to %s", self.config_path)
            self.save(default_app_config())

    def _read_mapping(self) -> dict[str, Any]:
        try:
            data = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ConfigError(f"{self.config_path}: invalid YAML: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"{self.config_path}: top level must be a mapping, got {type(data).__name__}")
        return data

    def load(self) -> AppConfig:
        with self._lock:
            return AppConfig.from_dict(self._read_mapping())

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            data = config.to_dict()
            staging = self.config_path.with_name(self.config_path.name + ".tmp")
            _write_yaml(data, staging)
            try:
                staging.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files cannot be replaced; overwrite in place.
                if exc.errno != errno.EBUSY:
                    raise
                logger.debug("Atomic replace of %s busy, writing in place", self.config_path)
                _write_yaml(data, self.config_path)
                staging.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            config = AppConfig.from_dict(deep_merge(self.load().to_dict(), payload))
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        data = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if data.get(section, {}).get(key):
                data[section][key] = MASK
        return data
