from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from schoolcal.models import AppConfig, default_app_config

MASK = "***"

ENV_OVERRIDES = {
    "SCHOOLCAL_CAL_URL": ("calendar", "base_url"),
    "SCHOOLCAL_CAL_USER": ("calendar", "username"),
    "SCHOOLCAL_CAL_PASSWORD": ("calendar", "password"),
    "SCHOOLCAL_UID_PREFIX": ("calendar", "uid_prefix"),
    "SCHOOLCAL_ARCHIVE_DIR": ("storage", "archive_dir"),
}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_env_overrides(data: dict[str, Any], environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    environ = os.environ if environ is None else environ
    updated = copy.deepcopy(data)
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_name, "").strip()
        if not value:
            continue
        section_data = updated.get(section)
        if not isinstance(section_data, dict):
            section_data = {}
            updated[section] = section_data
        section_data[key] = value
    return updated


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str], environ: Mapping[str, str] | None = None) -> None:
        self.config_path = Path(config_path)
        self.environ = environ
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def _load_file(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        return data if isinstance(data, dict) else {}

    def load(self) -> AppConfig:
        with self._lock:
            return AppConfig.from_dict(apply_env_overrides(self._load_file(), self.environ))

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(
                    config_dict,
                    handle,
                    sort_keys=False,
                    allow_unicode=True,
                    default_flow_style=False,
                )
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Some bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                with self.config_path.open("w", encoding="utf-8") as handle:
                    yaml.safe_dump(
                        config_dict,
                        handle,
                        sort_keys=False,
                        allow_unicode=True,
                        default_flow_style=False,
                    )
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            current = AppConfig.from_dict(self._load_file()).to_dict()
            merged = _deep_merge(current, payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        if config.get("calendar", {}).get("password"):
            config["calendar"]["password"] = MASK
        for account in config.get("accounts", []):
            if account.get("password"):
                account["password"] = MASK
        return config
