"""Lifecycle configuration: YAML loading, validation, trace logging and the kernel bridge."""

from pathlib import Path

import pytest
import yaml

from production_config import LifecycleConfig, get_active_config
from production_config.bridges import to_lifecycle_policy
from production_config.loader import compute_checksum, parse_lifecycle_config
from production_kernel.domain.dtos import LifecyclePolicy


def _write(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "lifecycle.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestDefaultSet:
    def test_default_values(self):
        config = get_active_config()

        assert config.config_id == "production-default"
        assert config.version == 1
        assert config.gap_threshold_days == 7
        assert config.lock_nowait is False
        assert config.require_production_clearance is False
        assert config.auto_open_qc_records is True
        assert len(config.checksum) == 64

    def test_trace_logged(self, captured_logs):
        config = get_active_config()

        traces = [r for r in captured_logs() if r["message"] == "PRODUCTION_CONFIG_TRACE"]

        assert len(traces) == 1
        assert traces[0]["logger"] == "production_kernel.config"
        assert traces[0]["config_id"] == "production-default"
        assert traces[0]["checksum"] == config.checksum

    def test_checksum_is_stable(self):
        assert get_active_config().checksum == get_active_config().checksum


class TestCustomSets:
    def test_overrides(self, tmp_path):
        path = _write(
            tmp_path,
            {
                "config_id": "plant-2",
                "version": 3,
                "lifecycle": {"gap_threshold_days": 2, "require_production_clearance": True},
            },
        )

        config = get_active_config(path)

        assert config.config_id == "plant-2"
        assert config.version == 3
        assert config.gap_threshold_days == 2
        assert config.require_production_clearance is True
        assert config.auto_open_qc_records is True

    def test_lifecycle_section_optional(self, tmp_path):
        config = get_active_config(_write(tmp_path, {"config_id": "bare", "version": 1}))
        assert config.gap_threshold_days == 7

    def test_checksum_tracks_content(self):
        base = {"config_id": "a", "version": 1}
        changed = {"config_id": "a", "version": 1, "lifecycle": {"lock_nowait": True}}
        assert compute_checksum(base) != compute_checksum(changed)
        assert compute_checksum(base) == compute_checksum(dict(reversed(list(base.items()))))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "absent.yaml")

    @pytest.mark.parametrize(
        "data",
        [
            {"version": 1},
            {"config_id": "x"},
            {"config_id": "x", "version": 0},
            {"config_id": "x", "version": 1, "lifecycle": {"gap_days": 3}},
            {"config_id": "x", "version": 1, "lifecycle": {"gap_threshold_days": 0}},
            {"config_id": "x", "version": 1, "lifecycle": {"gap_threshold_days": True}},
            {"config_id": "x", "version": 1, "lifecycle": {"lock_nowait": "yes"}},
            {"config_id": "x", "version": 1, "lifecycle": ["gap_threshold_days"]},
        ],
    )
    def test_invalid_sets_rejected(self, data):
        with pytest.raises(ValueError):
            parse_lifecycle_config(data)

    def test_non_mapping_file_rejected(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- one\n- two\n")
        with pytest.raises(ValueError):
            get_active_config(path)


class TestBridge:
    def test_policy_mirrors_config(self):
        config = LifecycleConfig(
            config_id="bridge",
            version=1,
            gap_threshold_days=3,
            lock_nowait=True,
            require_production_clearance=True,
            auto_open_qc_records=False,
        )

        policy = to_lifecycle_policy(config)

        assert policy == LifecyclePolicy(
            gap_threshold_days=3,
            lock_nowait=True,
            require_production_clearance=True,
            auto_open_qc_records=False,
        )

    def test_default_set_gives_default_policy(self):
        assert to_lifecycle_policy(get_active_config()) == LifecyclePolicy()
