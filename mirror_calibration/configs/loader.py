"""Configuration loader for mirror-array calibration.

Loads and validates ``calibration.yaml`` into typed, frozen dataclasses.
Motor travel limits, command timeouts, detection thresholds and runner
tunables all come from the config and are passed explicitly to the objects
that need them, so several grids with different hardware can be driven
side by side.

Times are stored in **seconds** throughout Python.  Step values are native
actuator steps; positions in the camera frame are normalized ``[-1, 1]``.

Usage::

    from mirror_calibration.configs.loader import load_config
    cfg = load_config()                           # default path
    cfg = load_config("/custom/calibration.yaml") # explicit path
"""

from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from mirror_calibration.utils.fs import load_yaml

logger = logging.getLogger(__name__)

ARRAY_ROTATIONS: tuple[int, ...] = (0, 90, 180, 270)
STAGING_POSITIONS: tuple[str, ...] = ("nearest-corner", "corner", "bottom", "left")
DEFAULT_CAMERA_ASPECT: float = 16 / 9


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(Exception):
    """Raised when configuration validation fails."""

    pass


# ---------------------------------------------------------------------------
# Dataclasses -- mirror the YAML structure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MotorLimitsConfig:
    """Actuator travel range and conversion constants.

    The range is symmetric on the shipped hardware (``±1200`` steps) but
    both ends are configurable.
    """

    min_position_steps: int = -1200
    max_position_steps: int = 1200
    steps_per_degree: float = 190.0
    nudge_delta_steps: int = 500

    @property
    def span(self) -> int:
        """Total travel in steps."""
        return self.max_position_steps - self.min_position_steps


@dataclass(frozen=True)
class CommandTimeoutsConfig:
    """Windows for device acknowledgement and motion completion."""

    ack_timeout_s: float = 5.0
    completion_timeout_s: float = 15.0


@dataclass(frozen=True)
class DetectionConfig:
    """Acceptance thresholds for stable blob samples (normalized units)."""

    min_samples: int = 5
    ignore_sample_above_deviation: float = 0.1
    max_median_deviation: float = 0.005
    capture_delay_s: float = 0.1
    poll_interval_s: float = 0.02


@dataclass(frozen=True)
class RunnerSettings:
    """Tunables of one calibration run.

    ``grid_gap_normalized`` is the gap between neighbouring tiles as a
    fraction of the normalized half-frame.  ``staging_position`` selects where
    tiles are parked while their siblings are measured.
    """

    delta_steps: int = 1200
    dwell_s: float = 0.1
    grid_gap_normalized: float = 0.0
    staging_position: str = "nearest-corner"
    array_rotation: int = 0
    sample_timeout_s: float = 1.5
    max_detection_retries: int = 5
    retry_delay_s: float = 0.15
    max_blob_distance_threshold: float = 0.15
    first_tile_tolerance: float = 0.25
    robust_tile_size: bool = True
    outlier_mad_threshold: float = 3.0

    def replace(self, **overrides: Any) -> RunnerSettings:
        """Return a validated copy with *overrides* applied.

        Raises
        ------
        ConfigError
            If the resulting settings are out of range.
        """
        updated = dataclasses.replace(self, **overrides)
        validate_runner_settings(updated)
        return updated


@dataclass(frozen=True)
class CameraConfig:
    """Calibration camera frame size in pixels."""

    source_width: int = 1920
    source_height: int = 1080

    @property
    def aspect(self) -> float:
        """Width / height ratio used to correct normalized Y."""
        return self.source_width / self.source_height


@dataclass(frozen=True)
class LoggingConfig:
    """Arguments for :func:`mirror_calibration.utils.logging_config.setup_logging`."""

    log_level: str = "INFO"
    log_file: str | None = None
    json: bool = False


@dataclass(frozen=True)
class CalibrationConfig:
    """Complete calibration configuration loaded from ``calibration.yaml``."""

    motor: MotorLimitsConfig = field(default_factory=MotorLimitsConfig)
    timeouts: CommandTimeoutsConfig = field(default_factory=CommandTimeoutsConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    camera: CameraConfig = field(default_factory=CameraConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def with_runner(self, **overrides: Any) -> CalibrationConfig:
        """Copy with runner settings overridden (validated)."""
        return dataclasses.replace(self, runner=self.runner.replace(**overrides))


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _parse_motor(data: dict[str, Any]) -> MotorLimitsConfig:
    return MotorLimitsConfig(
        min_position_steps=int(data["min_position_steps"]),
        max_position_steps=int(data["max_position_steps"]),
        steps_per_degree=float(data.get("steps_per_degree", 190.0)),
        nudge_delta_steps=int(data.get("nudge_delta_steps", 500)),
    )


def _parse_detection(data: dict[str, Any]) -> DetectionConfig:
    return DetectionConfig(
        min_samples=int(data["min_samples"]),
        ignore_sample_above_deviation=float(data["ignore_sample_above_deviation"]),
        max_median_deviation=float(data["max_median_deviation"]),
        capture_delay_s=float(data.get("capture_delay_s", 0.1)),
        poll_interval_s=float(data.get("poll_interval_s", 0.02)),
    )


def parse_runner_settings(data: dict[str, Any]) -> RunnerSettings:
    """Build :class:`RunnerSettings` from a mapping, defaulting missing keys.

    Raises
    ------
    ConfigError
        If a value cannot be converted or is out of range.
    """
    defaults = RunnerSettings()
    try:
        settings = RunnerSettings(
            delta_steps=int(data.get("delta_steps", defaults.delta_steps)),
            dwell_s=float(data.get("dwell_s", defaults.dwell_s)),
            grid_gap_normalized=float(
                data.get("grid_gap_normalized", defaults.grid_gap_normalized)
            ),
            staging_position=str(
                data.get("staging_position", defaults.staging_position)
            ),
            array_rotation=int(data.get("array_rotation", defaults.array_rotation)),
            sample_timeout_s=float(
                data.get("sample_timeout_s", defaults.sample_timeout_s)
            ),
            max_detection_retries=int(
                data.get("max_detection_retries", defaults.max_detection_retries)
            ),
            retry_delay_s=float(data.get("retry_delay_s", defaults.retry_delay_s)),
            max_blob_distance_threshold=float(
                data.get(
                    "max_blob_distance_threshold",
                    defaults.max_blob_distance_threshold,
                )
            ),
            first_tile_tolerance=float(
                data.get("first_tile_tolerance", defaults.first_tile_tolerance)
            ),
            robust_tile_size=bool(
                data.get("robust_tile_size", defaults.robust_tile_size)
            ),
            outlier_mad_threshold=float(
                data.get("outlier_mad_threshold", defaults.outlier_mad_threshold)
            ),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid runner setting: {exc}") from exc
    validate_runner_settings(settings)
    return settings


def validate_runner_settings(settings: RunnerSettings) -> None:
    """Check every runner tunable against its documented range.

    Raises
    ------
    ConfigError
        On the first out-of-range field.
    """
    if settings.delta_steps <= 0:
        raise ConfigError(f"delta_steps must be > 0, got {settings.delta_steps}")
    if not 0.0 <= settings.grid_gap_normalized <= 1.0:
        raise ConfigError(
            f"grid_gap_normalized must be in [0, 1], "
            f"got {settings.grid_gap_normalized}"
        )
    if settings.staging_position not in STAGING_POSITIONS:
        raise ConfigError(
            f"staging_position must be one of {STAGING_POSITIONS}, "
            f"got '{settings.staging_position}'"
        )
    if settings.array_rotation not in ARRAY_ROTATIONS:
        raise ConfigError(
            f"array_rotation must be one of {ARRAY_ROTATIONS}, "
            f"got {settings.array_rotation}"
        )
    for name in ("dwell_s", "retry_delay_s"):
        value = getattr(settings, name)
        if not math.isfinite(value) or value < 0:
            raise ConfigError(f"{name} must be >= 0, got {value}")
    if not math.isfinite(settings.sample_timeout_s) or settings.sample_timeout_s <= 0:
        raise ConfigError(
            f"sample_timeout_s must be > 0, got {settings.sample_timeout_s}"
        )
    if settings.max_detection_retries < 1:
        raise ConfigError(
            f"max_detection_retries must be >= 1, "
            f"got {settings.max_detection_retries}"
        )
    for name in ("max_blob_distance_threshold", "first_tile_tolerance"):
        value = getattr(settings, name)
        if not 0.0 < value <= 2.0:
            raise ConfigError(f"{name} must be in (0, 2], got {value}")
    if settings.outlier_mad_threshold <= 0:
        raise ConfigError(
            f"outlier_mad_threshold must be > 0, "
            f"got {settings.outlier_mad_threshold}"
        )


def _validate_config(cfg: CalibrationConfig) -> None:
    """Validate cross-field consistency.

    Raises
    ------
    ConfigError
        On any invalid combination.
    """
    m = cfg.motor
    if m.min_position_steps >= m.max_position_steps:
        raise ConfigError(
            f"min_position_steps ({m.min_position_steps}) must be below "
            f"max_position_steps ({m.max_position_steps})"
        )
    if m.steps_per_degree <= 0:
        raise ConfigError(f"steps_per_degree must be > 0, got {m.steps_per_degree}")
    if not 0 < m.nudge_delta_steps <= m.span:
        raise ConfigError(
            f"nudge_delta_steps must be in (0, {m.span}], "
            f"got {m.nudge_delta_steps}"
        )

    t = cfg.timeouts
    if t.ack_timeout_s <= 0:
        raise ConfigError(f"ack_timeout_s must be > 0, got {t.ack_timeout_s}")
    if t.completion_timeout_s <= 0:
        raise ConfigError(
            f"completion_timeout_s must be > 0, got {t.completion_timeout_s}"
        )

    d = cfg.detection
    if d.min_samples < 1:
        raise ConfigError(f"min_samples must be >= 1, got {d.min_samples}")
    if d.max_median_deviation <= 0 or d.ignore_sample_above_deviation <= 0:
        raise ConfigError("Detection deviation thresholds must be > 0")
    if d.max_median_deviation > d.ignore_sample_above_deviation:
        raise ConfigError(
            f"max_median_deviation ({d.max_median_deviation}) cannot exceed "
            f"ignore_sample_above_deviation ({d.ignore_sample_above_deviation})"
        )
    if d.poll_interval_s <= 0:
        raise ConfigError(f"poll_interval_s must be > 0, got {d.poll_interval_s}")

    validate_runner_settings(cfg.runner)
    if cfg.runner.delta_steps > m.span:
        raise ConfigError(
            f"runner.delta_steps ({cfg.runner.delta_steps}) exceeds motor "
            f"travel ({m.span} steps)"
        )

    if cfg.camera.source_width <= 0 or cfg.camera.source_height <= 0:
        raise ConfigError(
            f"Camera size must be positive, got "
            f"{cfg.camera.source_width}x{cfg.camera.source_height}"
        )


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(path: str | Path | None = None) -> CalibrationConfig:
    """Load and validate calibration configuration from YAML.

    Parameters
    ----------
    path : str | Path | None
        Path to ``calibration.yaml``.  ``None`` loads the default shipped
        alongside this module.

    Returns
    -------
    CalibrationConfig
        Fully validated, frozen configuration object.

    Raises
    ------
    ConfigError
        If any field is missing or fails validation.
    FileNotFoundError
        If *path* does not exist.
    """
    if path is None:
        path = Path(__file__).parent / "calibration.yaml"
    else:
        path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    logger.info("Loading configuration from %s", path)

    data: dict[str, Any] = load_yaml(path)
    if data is None:
        raise ConfigError(f"Empty configuration file: {path}")

    try:
        motor = _parse_motor(data["motor"])

        t_data = data["timeouts"]
        timeouts = CommandTimeoutsConfig(
            ack_timeout_s=float(t_data["ack_timeout_s"]),
            completion_timeout_s=float(t_data["completion_timeout_s"]),
        )

        detection = _parse_detection(data["detection"])
        runner = parse_runner_settings(data.get("runner", {}))

        cam_data = data.get("camera", {})
        camera = CameraConfig(
            source_width=int(cam_data.get("source_width", 1920)),
            source_height=int(cam_data.get("source_height", 1080)),
        )

        log_data = data.get("logging", {})
        log_file = log_data.get("log_file")
        logging_cfg = LoggingConfig(
            log_level=str(log_data.get("log_level", "INFO")),
            log_file=str(log_file) if log_file else None,
            json=bool(log_data.get("json", False)),
        )
    except KeyError as exc:
        raise ConfigError(
            f"Missing required configuration key: {exc}"
        ) from exc
    except (TypeError, ValueError) as exc:
        raise ConfigError(
            f"Invalid configuration value: {exc}"
        ) from exc

    cfg = CalibrationConfig(
        motor=motor,
        timeouts=timeouts,
        detection=detection,
        runner=runner,
        camera=camera,
        logging=logging_cfg,
    )
    _validate_config(cfg)
    return cfg
