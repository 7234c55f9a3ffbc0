"""
dagmesh Configuration
=====================

YAML-based configuration with sensible defaults.
Loads from dagmesh_config.yaml if present, otherwise uses built-in defaults.
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import yaml

from dagmesh.models import ValidationResult

_DEFAULTS = {
    "mesh": {
        "id": "dagmesh",
        "max_concurrency": 10,
        "workflow_timeout": 300.0,
        "retry_attempts": 3,
        "enable_tracing": True,
        "history_limit": 1000,
    },
    "engine": {
        "max_concurrency": 4,
        "retention_seconds": None,
    },
    "scheduler": {
        "max_concurrency": 4,
        "task_timeout": 30.0,
    },
    "router": {
        "event_timeout": 30.0,
        "interaction_limit": 1000,
    },
    "snapshots": {
        "max_snapshots": 20,
        "snapshot_dir": None,
    },
    "logging": {
        "level": "info",
        "audit_dir": None,
    },
}

_POSITIVE_KEYS = [
    ("mesh", "max_concurrency"),
    ("mesh", "workflow_timeout"),
    ("engine", "max_concurrency"),
    ("scheduler", "max_concurrency"),
    ("router", "event_timeout"),
]


def default_config() -> dict:
    return copy.deepcopy(_DEFAULTS)


def merge_config(overrides: dict | None) -> dict:
    """Merge a partial config dict (section -> values) over the defaults."""
    config = default_config()
    for section, values in (overrides or {}).items():
        if section in config and isinstance(values, dict):
            config[section].update(values)
        else:
            config[section] = values
    return config


def load_config(path: str | Path = "dagmesh_config.yaml") -> dict:
    """Load configuration from YAML file, merging with defaults.

    Args:
        path: Path to YAML config file. If relative, resolved from CWD.

    Returns:
        Merged config dict with all sections populated.
    """
    config_path = Path(path)
    user: dict = {}
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            user = yaml.safe_load(f) or {}
    return merge_config(user)


def validate_configuration(config: dict[str, Any]) -> ValidationResult:
    """Check that concurrency limits and timeouts are positive and retry budgets non-negative."""
    for section, key in _POSITIVE_KEYS:
        value = config.get(section, {}).get(key)
        if value is None:
            continue
        if not isinstance(value, (int, float)) or value <= 0:
            return ValidationResult.fail(
                f"{section}.{key} must be greater than 0",
                type="configuration_validation",
                key=f"{section}.{key}",
            )
    retries = config.get("mesh", {}).get("retry_attempts")
    if retries is not None and (not isinstance(retries, int) or retries < 0):
        return ValidationResult.fail(
            "mesh.retry_attempts must be a non-negative integer",
            type="configuration_validation",
            key="mesh.retry_attempts",
        )
    return ValidationResult.ok("configuration validation passed", type="configuration_validation")
