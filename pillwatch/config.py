"""
Configuration

YAML-backed settings with dotted-key lookup, e.g.
``config.get("reconciliation.tick_minutes", 30)``. User files are merged
over DEFAULTS so a partial config.yaml only needs the keys it changes.
"""

import copy
import os
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from pillwatch.errors import ConfigurationError


DEFAULTS = {
    "logging": {
        "level": "INFO",
        "file": None,
        "console": True,
        "propagate": False,
    },
    "store": {
        "db_path": "data/pillwatch.db",
    },
    "schedule": {
        "max_times_per_day": 10,
        "max_days": 365,
        "strict_validation": True,
        "preserve_taken_on_edit": False,
    },
    "scheduler": {
        "capacity": 64,
        "cancel_timeout_seconds": 5.0,
    },
    "delivery": {
        "capacity": 64,
        "desktop_notifications": False,
    },
    "escalation": {
        "nudge_delay_minutes": 5,
    },
    "reconciliation": {
        "tick_minutes": 30,
        "missed_after_minutes": 120,
        "window_minutes": 120,
        "ceiling_hours": 8,
    },
    "timers": {
        "poll_interval_seconds": 5,
    },
    "snooze": {
        "default_minutes": 15,
    },
}


def _merge(base: dict, override: dict) -> dict:
    """Recursively merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Config:
    """Nested settings dict with dotted-key access."""

    def __init__(self, data: Optional[dict] = None):
        self._data = _merge(DEFAULTS, data or {})

    def get(self, key: str, default: Any = None) -> Any:
        node = self._data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any) -> None:
        parts = key.split(".")
        node = self._data
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value

    def as_dict(self) -> dict:
        return copy.deepcopy(self._data)


def load_config(path: Optional[Union[str, Path]] = None) -> Config:
    """Load config from YAML.

    Resolution order: explicit path, $PILLWATCH_CONFIG, ./config.yaml.
    A missing file yields the defaults; a malformed one raises
    ConfigurationError.
    """
    if path is None:
        path = os.environ.get("PILLWATCH_CONFIG", "config.yaml")
    path = Path(path)

    if not path.exists():
        return Config()

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}", cause=e)

    if not isinstance(data, dict):
        raise ConfigurationError(f"Top level of {path} must be a mapping")

    return Config(data)
