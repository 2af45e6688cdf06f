from __future__ import annotations

import copy
import dataclasses
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from tasksync.models import LOG_LEVELS, AppConfig, HyperlinkMode, default_app_config

MASK = "***"


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def validate_payload(payload: dict[str, Any]) -> None:
    """Reject config updates that would otherwise be dropped or coerced on load.

    Unknown sections and keys raise, as do a hyperlink mode or log level
    outside the supported set. Type errors are left to ``AppConfig.from_dict``.
    """
    sections = {item.name for item in dataclasses.fields(AppConfig)}
    for section, values in payload.items():
        if section not in sections:
            raise ValueError(f"Unknown config section: {section}")
        if not isinstance(values, dict):
            raise ValueError(f"Config section {section} must be a mapping")
        known = {item.name for item in dataclasses.fields(getattr(AppConfig(), section))}
        for key in values:
            if key not in known:
                raise ValueError(f"Unknown config key: {section}.{key}")

    mode = payload.get("sync", {}).get("hyperlink_mode")
    if mode is not None and str(mode).strip().lower() not in {item.value for item in HyperlinkMode}:
        raise ValueError(f"Unsupported hyperlink mode: {mode}")
    level = payload.get("logging", {}).get("level")
    if level is not None and str(level).strip().upper() not in LOG_LEVELS:
        raise ValueError(f"Unsupported log level: {level}")


def _dump(config_dict: dict[str, Any], handle: Any) -> None:
    yaml.safe_dump(
        config_dict,
        handle,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )


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

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                _dump(config_dict, handle)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be replaced atomically.
                if exc.errno != errno.EBUSY:
                    raise
                with self.config_path.open("w", encoding="utf-8") as handle:
                    _dump(config_dict, handle)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        validate_payload(payload)
        with self._lock:
            current = self.load().to_dict()
            merged = _deep_merge(current, payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        if config.get("caldav", {}).get("password"):
            config["caldav"]["password"] = MASK
        return config
