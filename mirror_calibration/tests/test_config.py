"""Tests for configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from mirror_calibration.configs.loader import (
    ConfigError,
    RunnerSettings,
    load_config,
    parse_runner_settings,
)

DEFAULT_YAML = Path(__file__).resolve().parents[1] / "configs" / "calibration.yaml"


def _write_variant(tmp_path, **section_overrides) -> Path:
    data = yaml.safe_load(DEFAULT_YAML.read_text())
    for section, values in section_overrides.items():
        if values is None:
            del data[section]
        else:
            data[section].update(values)
    path = tmp_path / "calibration.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestLoadConfig:
    def test_default_config(self) -> None:
        cfg = load_config()
        assert cfg.motor.min_position_steps == -1200
        assert cfg.motor.max_position_steps == 1200
        assert cfg.motor.steps_per_degree == 190.0
        assert cfg.timeouts.ack_timeout_s == 5.0
        assert cfg.detection.min_samples == 5
        assert cfg.runner == RunnerSettings()
        assert cfg.camera.aspect == pytest.approx(16 / 9)
        assert cfg.logging.log_file is None

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_missing_section(self, tmp_path) -> None:
        with pytest.raises(ConfigError, match="Missing required configuration key"):
            load_config(_write_variant(tmp_path, motor=None))

    def test_inverted_motor_range(self, tmp_path) -> None:
        path = _write_variant(tmp_path, motor={"min_position_steps": 100, "max_position_steps": -100})
        with pytest.raises(ConfigError, match="min_position_steps"):
            load_config(path)

    def test_median_deviation_above_ignore_threshold(self, tmp_path) -> None:
        path = _write_variant(tmp_path, detection={"max_median_deviation": 0.5})
        with pytest.raises(ConfigError, match="max_median_deviation"):
            load_config(path)

    def test_delta_exceeding_travel(self, tmp_path) -> None:
        path = _write_variant(tmp_path, runner={"delta_steps": 5000})
        with pytest.raises(ConfigError, match="exceeds motor travel"):
            load_config(path)

    def test_bad_rotation(self, tmp_path) -> None:
        with pytest.raises(ConfigError, match="array_rotation"):
            load_config(_write_variant(tmp_path, runner={"array_rotation": 45}))


class TestRunnerSettings:
    def test_missing_keys_default(self) -> None:
        assert parse_runner_settings({}) == RunnerSettings()
        assert parse_runner_settings({"delta_steps": "600"}).delta_steps == 600

    def test_unconvertible_value(self) -> None:
        with pytest.raises(ConfigError, match="Invalid runner setting"):
            parse_runner_settings({"dwell_s": "slow"})

    @pytest.mark.parametrize("field, value", [
        ("delta_steps", 0),
        ("grid_gap_normalized", 1.5),
        ("staging_position", "diagonal"),
        ("sample_timeout_s", 0.0),
        ("max_detection_retries", 0),
        ("first_tile_tolerance", 3.0),
        ("outlier_mad_threshold", -1.0),
    ])
    def test_out_of_range(self, field: str, value) -> None:
        with pytest.raises(ConfigError, match=field):
            RunnerSettings().replace(**{field: value})

    def test_replace_returns_validated_copy(self) -> None:
        base = RunnerSettings()
        updated = base.replace(delta_steps=800, array_rotation=270)
        assert updated.delta_steps == 800
        assert base.delta_steps == 1200
