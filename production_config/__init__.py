"""
production_config -- single public entrypoint for lifecycle configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration files
    directly.

Architecture position:
    Configuration -- sits above ``production_kernel``.  The kernel MUST
    NEVER import from ``production_config``; ``bridges`` translates the
    loaded config into the kernel's ``LifecyclePolicy``.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``ValueError`` -- missing keys, unknown keys or invalid values.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``PRODUCTION_CONFIG_TRACE`` log entry with the config id, version and
    checksum, tying kernel behavior to the exact configuration in force.
"""

from __future__ import annotations

import logging
from pathlib import Path

from production_config.loader import load_lifecycle_config
from production_config.schema import LifecycleConfig

_logger = logging.getLogger("production_kernel.config")

# Default configuration set
_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(config_path: Path | None = None) -> LifecycleConfig:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: Override path to a configuration YAML file.
            Defaults to production_config/sets/default.yaml.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        ValueError: If the configuration fails validation.
    """
    path = Path(config_path) if config_path is not None else _DEFAULT_CONFIG_PATH
    if not path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    config = load_lifecycle_config(path)

    _logger.info(
        "PRODUCTION_CONFIG_TRACE",
        extra={
            "trace_type": "PRODUCTION_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "gap_threshold_days": config.gap_threshold_days,
            "lock_nowait": config.lock_nowait,
            "require_production_clearance": config.require_production_clearance,
            "auto_open_qc_records": config.auto_open_qc_records,
        },
    )
    return config


__all__ = ["LifecycleConfig", "get_active_config"]
