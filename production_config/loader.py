"""
Configuration Loader (``production_config.loader``).

Responsibility
--------------
Loads a YAML configuration set and parses it into a frozen
``LifecycleConfig``.  Callers go through
``production_config.get_active_config()``; the loader is internal tooling.

Invariants enforced
-------------------
* Unknown keys in the ``lifecycle`` section are rejected, so a typo never
  silently falls back to a default.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing ``config_id`` / ``version`` or invalid values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from production_config.schema import LifecycleConfig

_LIFECYCLE_KEYS = frozenset(
    {
        "gap_threshold_days",
        "lock_nowait",
        "require_production_clearance",
        "auto_open_qc_records",
    }
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_lifecycle_config(data: dict[str, Any]) -> LifecycleConfig:
    """
    Parse a loaded configuration mapping.

    Raises:
        ValueError: Missing identity fields, unknown keys or invalid values.
    """
    for key in ("config_id", "version"):
        if key not in data:
            raise ValueError(f"configuration is missing required key {key!r}")

    lifecycle = data.get("lifecycle") or {}
    if not isinstance(lifecycle, dict):
        raise ValueError("lifecycle section must be a mapping")
    unknown = sorted(set(lifecycle) - _LIFECYCLE_KEYS)
    if unknown:
        raise ValueError(f"unknown lifecycle keys: {', '.join(unknown)}")

    return LifecycleConfig(
        config_id=str(data["config_id"]),
        version=data["version"],
        checksum=compute_checksum(data),
        **lifecycle,
    )


def load_lifecycle_config(path: Path) -> LifecycleConfig:
    return parse_lifecycle_config(load_yaml_file(path))
