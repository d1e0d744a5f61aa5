"""Persisted runner settings.

Operators tune runner settings between runs; the last values are kept in a
small YAML document::

    version: 1
    settings:
      delta_steps: 800
      array_rotation: 90
      ...

Fields are validated one at a time: an invalid or missing field falls back
to its default while the valid ones are kept.  A document with another
version loads as ``None``.
"""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from mirror_calibration.configs.loader import RunnerSettings, parse_runner_settings
from mirror_calibration.utils import fs

logger = logging.getLogger(__name__)

SETTINGS_VERSION = 1

_DEFAULTS = RunnerSettings()


class StoredRunnerSettings(BaseModel):
    """Schema of the persisted settings block (ranges match the runner's)."""

    delta_steps: int = Field(_DEFAULTS.delta_steps, gt=0)
    dwell_s: float = Field(_DEFAULTS.dwell_s, ge=0.0, allow_inf_nan=False)
    grid_gap_normalized: float = Field(_DEFAULTS.grid_gap_normalized, ge=0.0, le=1.0)
    staging_position: Literal["nearest-corner", "corner", "bottom", "left"] = (
        _DEFAULTS.staging_position
    )
    array_rotation: Literal[0, 90, 180, 270] = _DEFAULTS.array_rotation
    sample_timeout_s: float = Field(_DEFAULTS.sample_timeout_s, gt=0.0, allow_inf_nan=False)
    max_detection_retries: int = Field(_DEFAULTS.max_detection_retries, ge=1)
    retry_delay_s: float = Field(_DEFAULTS.retry_delay_s, ge=0.0, allow_inf_nan=False)
    max_blob_distance_threshold: float = Field(
        _DEFAULTS.max_blob_distance_threshold, gt=0.0, le=2.0
    )
    first_tile_tolerance: float = Field(_DEFAULTS.first_tile_tolerance, gt=0.0, le=2.0)
    robust_tile_size: bool = _DEFAULTS.robust_tile_size
    outlier_mad_threshold: float = Field(_DEFAULTS.outlier_mad_threshold, gt=0.0)


def sanitize_settings(raw: Dict[str, Any]) -> StoredRunnerSettings:
    """Validate *raw*, replacing each invalid field with its default."""
    known = {k: v for k, v in raw.items() if k in StoredRunnerSettings.model_fields}
    while True:
        try:
            return StoredRunnerSettings.model_validate(known)
        except ValidationError as e:
            bad = {str(err["loc"][0]) for err in e.errors() if err["loc"]}
            if not bad & known.keys():
                raise
            for name in bad:
                logger.warning(
                    "Stored setting %s=%r is invalid; using default", name, known.pop(name, None)
                )


def load_runner_settings(path: Union[str, Path]) -> Optional[RunnerSettings]:
    """Load persisted runner settings, or ``None`` when absent or unusable."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        payload = fs.load_yaml(path)
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to read runner settings from %s: %s", path, e)
        return None
    if not isinstance(payload, dict) or payload.get("version") != SETTINGS_VERSION:
        return None
    block = payload.get("settings")
    if not isinstance(block, dict):
        return None
    return parse_runner_settings(sanitize_settings(block).model_dump())


def save_runner_settings(settings: RunnerSettings, path: Union[str, Path]) -> None:
    """Write *settings* atomically."""
    fs.atomic_yaml_dump(
        {"version": SETTINGS_VERSION, "settings": dataclasses.asdict(settings)},
        path,
    )
    logger.debug("Saved runner settings to %s", path)


def clear_runner_settings(path: Union[str, Path]) -> None:
    fs.safe_remove(path)


def are_settings_default(settings: RunnerSettings) -> bool:
    return settings == _DEFAULTS
