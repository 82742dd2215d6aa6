from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from keytally.models import AGGREGATE_MODES, CALENDAR_PROVIDERS, AppConfig, default_app_config


logger = logging.getLogger(__name__)

SECRET_FIELDS = (("google", "access_token"), ("caldav", "password"))
MASK = "***"

_CHOICES = {
    ("calendar", "provider"): CALENDAR_PROVIDERS,
    ("sync", "aggregate_mode"): AGGREGATE_MODES,
    ("logging", "level"): {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"},
}
_NON_NEGATIVE_INTS = (
    ("sync", "window_past_days"),
    ("sync", "window_future_days"),
    ("sync", "max_samples"),
    ("google", "max_results"),
    ("google", "timeout_seconds"),
)


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def validate_config_dict(data: dict[str, Any]) -> None:
    """Reject values that ``AppConfig.from_dict`` would otherwise coerce silently.

    Raises ``ValueError`` naming the offending ``section.field``.
    """
    for section_name, section in data.items():
        if section is not None and not isinstance(section, dict):
            raise ValueError(f"{section_name} must be a mapping")
    for (section_name, field_name), allowed in _CHOICES.items():
        value = (data.get(section_name) or {}).get(field_name)
        if value is None:
            continue
        normalized = str(value).strip()
        normalized = normalized.upper() if section_name == "logging" else normalized.lower()
        if normalized not in allowed:
            choices = ", ".join(sorted(allowed))
            raise ValueError(f"{section_name}.{field_name} must be one of: {choices} (got {value!r})")
    for section_name, field_name in _NON_NEGATIVE_INTS:
        value = (data.get(section_name) or {}).get(field_name)
        if value is None:
            continue
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ValueError(f"{section_name}.{field_name} must be an integer (got {value!r})") from None
        if number < 0:
            raise ValueError(f"{section_name}.{field_name} must not be negative (got {number})")


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Writing default config to %s", self.config_path)
        self.save(default_app_config())

    def _read_raw(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.config_path} must contain a YAML mapping")
        return data

    def load(self) -> AppConfig:
        with self._lock:
            return AppConfig.from_dict(self._read_raw())

    def _write(self, config_dict: dict[str, Any], path: Path) -> None:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(config_dict, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            self._write(config_dict, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                self._write(config_dict, self.config_path)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        """Deep-merge ``payload`` into the stored config, validate and persist it.

        Nothing is written when validation fails.
        """
        with self._lock:
            merged = _deep_merge(self.load().to_dict(), payload)
            validate_config_dict(merged)
            config = AppConfig.from_dict(merged)
            self.save(config)
            logger.info("Config updated: %s", ", ".join(sorted(payload)) or "no sections")
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section_name, field_name in SECRET_FIELDS:
            if config.get(section_name, {}).get(field_name):
                config[section_name][field_name] = MASK
        return config
