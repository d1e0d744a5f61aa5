"""Calibration configuration loading and validation."""

from mirror_calibration.configs.loader import (
    ARRAY_ROTATIONS,
    DEFAULT_CAMERA_ASPECT,
    STAGING_POSITIONS,
    CalibrationConfig,
    CameraConfig,
    CommandTimeoutsConfig,
    ConfigError,
    DetectionConfig,
    LoggingConfig,
    MotorLimitsConfig,
    RunnerSettings,
    load_config,
    parse_runner_settings,
    validate_runner_settings,
)

__all__ = [
    "ARRAY_ROTATIONS",
    "DEFAULT_CAMERA_ASPECT",
    "STAGING_POSITIONS",
    "CalibrationConfig",
    "CameraConfig",
    "CommandTimeoutsConfig",
    "ConfigError",
    "DetectionConfig",
    "LoggingConfig",
    "MotorLimitsConfig",
    "RunnerSettings",
    "load_config",
    "parse_runner_settings",
    "validate_runner_settings",
]
