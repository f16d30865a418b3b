"""
LifecycleConfig schema.

The human-authored, reviewable configuration of the batch lifecycle
kernel.  YAML sets are parsed into these frozen types by the loader and
converted into the kernel's ``LifecyclePolicy`` by ``bridges``.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class LifecycleConfig:
    """Tunable lifecycle behavior, validated on construction."""

    config_id: str
    version: int
    gap_threshold_days: int = 7
    lock_nowait: bool = False
    require_production_clearance: bool = False
    auto_open_qc_records: bool = True
    checksum: str = ""

    def __post_init__(self) -> None:
        if not self.config_id:
            raise ValueError("config_id is required")
        if isinstance(self.version, bool) or not isinstance(self.version, int) or self.version < 1:
            raise ValueError(f"version must be a positive integer, got {self.version!r}")
        if (
            isinstance(self.gap_threshold_days, bool)
            or not isinstance(self.gap_threshold_days, int)
            or self.gap_threshold_days <= 0
        ):
            raise ValueError(
                f"gap_threshold_days must be a positive integer, got {self.gap_threshold_days!r}"
            )
        for name in ("lock_nowait", "require_production_clearance", "auto_open_qc_records"):
            value = getattr(self, name)
            if not isinstance(value, bool):
                raise ValueError(f"{name} must be a boolean, got {value!r}")
