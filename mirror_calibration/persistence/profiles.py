"""Versioned calibration profile storage.

A calibration profile is the durable output of a run: the grid blueprint
plus per-tile results, tagged with the array rotation and camera aspect the
measurements were taken with.  Profiles are stored together in one JSON
document::

    {"version": 1, "entries": [ {...profile...}, ... ]}

A document with another version is ignored (treated as empty), never
migrated.  Entries that fail schema validation are logged and dropped; the
rest of the document still loads.

Usage::

    store = ProfileStore("~/.mirror_calibration/profiles.json")
    profile = build_profile_from_summary(
        summary, grid, assignments, cfg.runner, cfg.camera, name="Wall A",
    )
    store.save(profile)
    # after re-running a few tiles
    store.save(merge_tile_results(profile, rerun_summary, cfg.motor))
    for profile in store.load_all():
        ...
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Annotated, Any, Dict, List, Mapping, Optional, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    ValidationError,
    field_validator,
    model_validator,
)

from mirror_calibration.calibration.models import (
    CalibrationRunSummary,
    GridBlueprint,
    GridSize,
    MirrorAssignment,
    RunMetrics,
    StepTestSettings,
    TileCalibrationResults,
    TileStatus,
)
from mirror_calibration.calibration.summary import compute_run_metrics, refine_tile
from mirror_calibration.configs.loader import (
    ARRAY_ROTATIONS,
    DEFAULT_CAMERA_ASPECT,
    CameraConfig,
    MotorLimitsConfig,
    RunnerSettings,
)
from mirror_calibration.utils import fs

logger = logging.getLogger(__name__)

STORAGE_VERSION = 1
UNTITLED_PROFILE_NAME = "Untitled calibration"

# Read-only view of the per-tile results; serialized as a plain mapping.
TileTable = Annotated[
    Dict[str, TileCalibrationResults],
    AfterValidator(lambda tiles: MappingProxyType(dict(tiles))),
    PlainSerializer(lambda tiles: dict(tiles), return_type=Dict[str, TileCalibrationResults]),
]


class ProfileStorageError(Exception):
    """Raised when the profile document cannot be read or written."""

    pass


# ============================================================================
# PROFILE SCHEMA
# ============================================================================


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CalibrationProfile(BaseModel):
    """Persisted calibration of one mirror array (immutable once loaded)."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), min_length=1)
    name: str = Field(UNTITLED_PROFILE_NAME, description="Display name")
    created_at: str = Field(default_factory=_utc_now, description="ISO-8601 UTC")
    updated_at: str = Field(default_factory=_utc_now, description="ISO-8601 UTC")
    grid_size: GridSize
    grid_blueprint: Optional[GridBlueprint] = None
    step_test_settings: StepTestSettings
    grid_state_fingerprint: Optional[str] = Field(
        None, description="Hash of grid size + motor assignments at save time"
    )
    array_rotation: int = Field(0, description="Physical array rotation (degrees)")
    calibration_camera_aspect: float = Field(DEFAULT_CAMERA_ASPECT, gt=0.0)
    tiles: TileTable = Field(default_factory=lambda: MappingProxyType({}))
    metrics: RunMetrics = Field(default_factory=RunMetrics)

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        return v or UNTITLED_PROFILE_NAME

    @field_validator('array_rotation')
    @classmethod
    def validate_rotation(cls, v: int) -> int:
        if v not in ARRAY_ROTATIONS:
            raise ValueError(f"array_rotation must be one of {ARRAY_ROTATIONS}, got {v}")
        return v

    @model_validator(mode='after')
    def validate_tile_keys(self) -> 'CalibrationProfile':
        """Every tile entry must belong to the ``rows x cols`` grid."""
        rows, cols = self.grid_size.rows, self.grid_size.cols
        for key, entry in self.tiles.items():
            if entry.key != key:
                raise ValueError(f"Tile entry '{key}' holds results for tile '{entry.key}'")
            if not (0 <= entry.tile.row < rows and 0 <= entry.tile.col < cols):
                raise ValueError(f"Tile '{key}' is outside the {rows}x{cols} grid")
        return self

    def calibrated_tiles(self) -> Dict[str, TileCalibrationResults]:
        """Tiles that completed calibration."""
        return {
            key: entry for key, entry in self.tiles.items()
            if entry.status == TileStatus.COMPLETED
        }


# ============================================================================
# CONSTRUCTION
# ============================================================================


def compute_grid_state_fingerprint(
    grid: GridSize,
    assignments: Mapping[str, MirrorAssignment],
) -> str:
    """Stable hash of grid size and motor wiring.

    Two snapshots share a fingerprint iff they have the same dimensions and
    every tile inside them is driven by the same motors.  Assignments for
    keys outside the grid are ignored.
    """
    wiring = {}
    for tile in grid.tiles():
        assignment = assignments.get(tile.key)
        if assignment is None or assignment.motor_count == 0:
            continue
        wiring[tile.key] = {
            axis: motor.key if motor is not None else None
            for axis, motor in (("x", assignment.x), ("y", assignment.y))
        }
    canonical = json.dumps(
        {"rows": grid.rows, "cols": grid.cols, "wiring": wiring},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_profile_from_summary(
    summary: CalibrationRunSummary,
    grid: GridSize,
    assignments: Mapping[str, MirrorAssignment],
    settings: RunnerSettings,
    camera: CameraConfig,
    *,
    name: str = UNTITLED_PROFILE_NAME,
    profile_id: Optional[str] = None,
) -> CalibrationProfile:
    """Freeze a run summary into a new profile.

    The array rotation comes from the run's *settings* and the camera aspect
    from *camera*.  Skipped tiles are not persisted; metrics are recomputed
    over the tiles that are.
    """
    tiles = {
        key: entry for key, entry in summary.tiles.items()
        if entry.status != TileStatus.SKIPPED
    }
    fields: Dict[str, Any] = dict(
        name=name,
        grid_size=grid,
        grid_blueprint=summary.grid_blueprint,
        step_test_settings=summary.step_test_settings,
        grid_state_fingerprint=compute_grid_state_fingerprint(grid, assignments),
        array_rotation=settings.array_rotation,
        calibration_camera_aspect=camera.aspect,
        tiles=tiles,
        metrics=compute_run_metrics(tiles),
    )
    if profile_id is not None:
        fields["id"] = profile_id
    return CalibrationProfile(**fields)


def merge_tile_results(
    profile: CalibrationProfile,
    summary: CalibrationRunSummary,
    limits: MotorLimitsConfig,
) -> CalibrationProfile:
    """Fold a partial re-run into an existing profile.

    Tiles measured again (completed or failed) replace their entries; skipped
    tiles keep the stored results.  The profile's blueprint is kept so the
    rest of the grid does not shift: re-measured tiles are recentred on it.
    A profile without a blueprint takes the re-run's.

    Parameters
    ----------
    profile : CalibrationProfile
        Stored calibration to update.
    summary : CalibrationRunSummary
        Summary of a run over a subset of the tiles.
    limits : MotorLimitsConfig
        Travel range for the alignment steps of re-measured tiles.

    Returns
    -------
    CalibrationProfile
        Same id, name and creation time, with merged tiles and metrics.
    """
    blueprint = profile.grid_blueprint or summary.grid_blueprint
    run_offset = (
        summary.grid_blueprint.camera_origin_offset
        if summary.grid_blueprint is not None else None
    )

    tiles = dict(profile.tiles)
    updated = []
    for key, entry in summary.tiles.items():
        if entry.status == TileStatus.SKIPPED:
            continue
        if (
            profile.grid_blueprint is not None
            and entry.status == TileStatus.COMPLETED
            and entry.home_measurement is not None
        ):
            raw = entry.home_measurement
            if run_offset is not None:
                raw = raw.shifted(run_offset.x, run_offset.y)
            entry = refine_tile(replace(entry, home_measurement=raw), profile.grid_blueprint, limits)
        tiles[key] = entry
        updated.append(key)

    logger.info(
        "Merged %d re-calibrated tile(s) into profile '%s': %s",
        len(updated), profile.name, ", ".join(updated) or "none",
    )
    return CalibrationProfile(
        id=profile.id,
        name=profile.name,
        created_at=profile.created_at,
        grid_size=profile.grid_size,
        grid_blueprint=blueprint,
        step_test_settings=profile.step_test_settings,
        grid_state_fingerprint=profile.grid_state_fingerprint,
        array_rotation=profile.array_rotation,
        calibration_camera_aspect=profile.calibration_camera_aspect,
        tiles=tiles,
        metrics=compute_run_metrics(tiles),
    )


def profile_to_run_summary(profile: CalibrationProfile) -> CalibrationRunSummary:
    """Rebuild a run summary so a saved profile can seed a new run view."""
    return CalibrationRunSummary(
        grid_blueprint=profile.grid_blueprint,
        tiles=dict(profile.tiles),
        step_test_settings=profile.step_test_settings,
        metrics=profile.metrics,
    )


# ============================================================================
# STORAGE
# ============================================================================


class ProfileStore:
    """JSON-file backed collection of calibration profiles.

    The last selected profile id is kept in a sibling ``<name>.last`` file.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path).expanduser()
        self._last_path = self.path.with_suffix(self.path.suffix + ".last")

    # --- reading ---

    def _read_payload(self) -> Any:
        if not self.path.exists():
            return None
        try:
            return fs.load_json(self.path)
        except (OSError, json.JSONDecodeError) as e:
            raise ProfileStorageError(f"Failed to read profiles from {self.path}: {e}") from e

    def load_all(self) -> List[CalibrationProfile]:
        """Load every valid profile in storage order.

        Raises
        ------
        ProfileStorageError
            If the document exists but is not readable JSON.
        """
        payload = self._read_payload()
        if payload is None:
            return []
        if (
            not isinstance(payload, dict)
            or payload.get("version") != STORAGE_VERSION
            or not isinstance(payload.get("entries"), list)
        ):
            logger.warning(
                "Ignoring profile store %s: unsupported version %r",
                self.path,
                payload.get("version") if isinstance(payload, dict) else None,
            )
            return []

        profiles: List[CalibrationProfile] = []
        for index, entry in enumerate(payload["entries"]):
            try:
                profiles.append(CalibrationProfile.model_validate(entry))
            except ValidationError as e:
                logger.warning(
                    "Dropping malformed profile entry %d in %s: %s",
                    index, self.path, e.errors()[0]["msg"] if e.errors() else e,
                )
        return profiles

    def get(self, profile_id: str) -> Optional[CalibrationProfile]:
        for profile in self.load_all():
            if profile.id == profile_id:
                return profile
        return None

    # --- writing ---

    def _write(self, profiles: List[CalibrationProfile]) -> None:
        payload = {
            "version": STORAGE_VERSION,
            "entries": [profile.model_dump(mode="json") for profile in profiles],
        }
        try:
            fs.atomic_write_text(self.path, json.dumps(payload, indent=2))
        except RuntimeError as e:
            raise ProfileStorageError(str(e)) from e
        logger.debug("Wrote %d profile(s) to %s", len(profiles), self.path)

    def save(self, profile: CalibrationProfile) -> CalibrationProfile:
        """Insert *profile*, or replace the stored profile with the same id.

        Replacing keeps the original ``created_at`` and refreshes
        ``updated_at``.  Returns the profile as stored.
        """
        profiles = self.load_all()
        for index, existing in enumerate(profiles):
            if existing.id == profile.id:
                stored = profile.model_copy(
                    update={"created_at": existing.created_at, "updated_at": _utc_now()}
                )
                profiles[index] = stored
                logger.info("Updated calibration profile '%s' (%s)", stored.name, stored.id)
                break
        else:
            stored = profile
            profiles.append(stored)
            logger.info("Saved calibration profile '%s' (%s)", stored.name, stored.id)
        self._write(profiles)
        return stored

    def delete(self, profile_id: str) -> bool:
        """Remove a profile; returns False if it was not stored."""
        profiles = self.load_all()
        remaining = [profile for profile in profiles if profile.id != profile_id]
        if len(remaining) == len(profiles):
            return False
        self._write(remaining)
        if self.load_last_profile_id() == profile_id:
            self.persist_last_profile_id(None)
        logger.info("Deleted calibration profile %s", profile_id)
        return True

    # --- last selection ---

    def load_last_profile_id(self) -> Optional[str]:
        if not self._last_path.exists():
            return None
        try:
            value = self._last_path.read_text(encoding="utf-8").strip()
        except OSError as e:
            logger.warning("Failed to load last calibration profile id: %s", e)
            return None
        return value or None

    def persist_last_profile_id(self, profile_id: Optional[str]) -> None:
        if not profile_id:
            fs.safe_remove(self._last_path)
            return
        fs.atomic_write_text(self._last_path, profile_id)
