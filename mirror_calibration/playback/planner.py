"""Calibration-profile playback planner.

Maps a pattern onto the calibrated mirror array:

1. Pattern points are rotated into the calibrated frame and Y is scaled by
   the calibration camera aspect (see :func:`transform_point`).
2. Calibrated tiles with both motors assigned are candidates.  Points with
   the fewest reachable candidates are assigned first, each to the free
   candidate nearest its ideal grid position.
3. Every assigned tile gets one absolute step target per axis::

       steps = adjusted_home.steps + (target - adjusted_home) / per_step

   rounded and clamped to the tile's step range, with ``clamped`` set when
   the requested position was out of reach.

Problems are reported as :class:`PlaybackError` records; planning itself
never raises.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional, Tuple, Union

from mirror_calibration.calibration.geometry import convert_delta_to_steps
from mirror_calibration.calibration.models import (
    AXES,
    GridSize,
    MirrorAssignment,
    Pattern,
    TileCalibrationResults,
    TileStatus,
)
from mirror_calibration.configs.loader import MotorLimitsConfig
from mirror_calibration.hardware.command_protocol import MotorRef, clamp_target
from mirror_calibration.persistence.profiles import CalibrationProfile
from mirror_calibration.validation.bounds import transform_point

logger = logging.getLogger(__name__)

# Error codes
MISSING_PROFILE = "missing_profile"
MISSING_PATTERN = "missing_pattern"
PROFILE_MISSING_BLUEPRINT = "profile_missing_blueprint"
PATTERN_EXCEEDS_MIRRORS = "pattern_exceeds_mirrors"
INSUFFICIENT_CALIBRATED_TILES = "insufficient_calibrated_tiles"
TILE_NOT_CALIBRATED = "tile_not_calibrated"
MISSING_MOTOR = "missing_motor"
MISSING_AXIS_CALIBRATION = "missing_axis_calibration"
TARGET_OUT_OF_BOUNDS = "target_out_of_bounds"


@dataclass(frozen=True)
class PlaybackError:
    code: str
    message: str
    mirror_id: Optional[str] = None
    axis: Optional[str] = None
    pattern_point_id: Optional[str] = None


@dataclass(frozen=True)
class ProfileAxisTarget:
    key: str
    mirror_id: str
    row: int
    col: int
    axis: str
    motor: MotorRef
    pattern_point_id: str
    normalized_target: float
    requested_steps: float
    target_steps: int
    clamped: bool


@dataclass(frozen=True)
class TilePlaybackPlan:
    mirror_id: str
    row: int
    col: int
    pattern_point_id: Optional[str] = None
    target: Optional[Tuple[float, float]] = None
    axis_targets: Mapping[str, ProfileAxisTarget] = field(default_factory=dict)
    errors: Tuple[PlaybackError, ...] = ()


@dataclass(frozen=True)
class ProfilePlaybackPlan:
    pattern_id: Optional[str]
    tiles: Tuple[TilePlaybackPlan, ...] = ()
    playable_axis_targets: Tuple[ProfileAxisTarget, ...] = ()
    errors: Tuple[PlaybackError, ...] = ()

    @property
    def is_playable(self) -> bool:
        return not self.errors and bool(self.playable_axis_targets)


@dataclass(frozen=True)
class _Candidate:
    key: str
    row: int
    col: int
    tile: TileCalibrationResults
    ideal_x: float
    ideal_y: float


def is_tile_calibrated(tile: Optional[TileCalibrationResults]) -> bool:
    """True when a tile has everything needed to compute step targets."""
    return bool(
        tile is not None
        and tile.status == TileStatus.COMPLETED
        and tile.adjusted_home is not None
        and tile.adjusted_home.steps_x is not None
        and tile.adjusted_home.steps_y is not None
        and tile.step_to_displacement.x is not None
        and tile.step_to_displacement.y is not None
    )


def _ideal_position(index: int, count: int) -> float:
    return index / (count - 1) * 2 - 1 if count > 1 else 0.0


def _axis_target(
    axis: str,
    tile: TileCalibrationResults,
    motor: Optional[MotorRef],
    point_id: str,
    target: float,
    mirror_id: str,
    limits: MotorLimitsConfig,
) -> Union[ProfileAxisTarget, PlaybackError]:
    context = dict(mirror_id=mirror_id, axis=axis, pattern_point_id=point_id)
    if motor is None:
        return PlaybackError(
            MISSING_MOTOR, f"Mirror {mirror_id} is missing a motor on axis {axis}.", **context
        )

    per_step = tile.step_to_displacement.get(axis)
    home = tile.adjusted_home
    base_steps = home.steps(axis) if home is not None else None
    if per_step is None or home is None or base_steps is None:
        return PlaybackError(
            MISSING_AXIS_CALIBRATION,
            f"Tile {mirror_id} is missing step calibration on axis {axis}.",
            **context,
        )

    bounds = tile.combined_bounds.axis(axis) if tile.combined_bounds is not None else None
    if bounds is not None and not bounds.contains(target):
        return PlaybackError(
            TARGET_OUT_OF_BOUNDS,
            f"Target {target:.3f} is outside calibrated {axis.upper()} bounds "
            f"[{bounds.min:.3f}, {bounds.max:.3f}].",
            **context,
        )

    home_coord = home.x if axis == "x" else home.y
    delta_steps = convert_delta_to_steps(target - home_coord, per_step)
    if delta_steps is None:
        return PlaybackError(
            MISSING_AXIS_CALIBRATION,
            f"Unable to convert normalized delta to steps for axis {axis}.",
            **context,
        )

    axis_cal = tile.axes.get(axis)
    if axis_cal is not None:
        min_steps, max_steps = axis_cal.step_range
        limits = replace(limits, min_position_steps=min_steps, max_position_steps=max_steps)
    steps = clamp_target(base_steps + delta_steps, limits)
    if steps.clamped:
        logger.warning(
            "Mirror %s axis %s: requested %.1f steps, clamped to %d",
            mirror_id, axis, steps.requested, steps.target,
        )

    return ProfileAxisTarget(
        key=f"{mirror_id}:{axis}:{motor.node_mac}:{motor.motor_index}",
        mirror_id=mirror_id,
        row=tile.tile.row,
        col=tile.tile.col,
        axis=axis,
        motor=motor,
        pattern_point_id=point_id,
        normalized_target=target,
        requested_steps=steps.requested,
        target_steps=steps.target,
        clamped=steps.clamped,
    )


def plan_profile_playback(
    grid_size: GridSize,
    assignments: Mapping[str, MirrorAssignment],
    profile: Optional[CalibrationProfile],
    pattern: Optional[Pattern],
    limits: Optional[MotorLimitsConfig] = None,
) -> ProfilePlaybackPlan:
    """Plan absolute step targets that reproduce *pattern* on the array.

    Parameters
    ----------
    grid_size : GridSize
        Current array dimensions; may be a subset of the profiled grid.
    assignments : Mapping[str, MirrorAssignment]
        Motor wiring keyed by tile key.
    profile : CalibrationProfile, optional
        Calibration to plan against.
    pattern : Pattern, optional
        Points in normalized pattern space.
    limits : MotorLimitsConfig, optional
        Travel range for tiles without a recorded step range.

    Returns
    -------
    ProfilePlaybackPlan
        One tile plan per grid position (row-major), the playable axis
        targets and every global and per-tile error.
    """
    limits = limits or MotorLimitsConfig()
    if pattern is None:
        return ProfilePlaybackPlan(
            pattern_id=None,
            errors=(PlaybackError(MISSING_PATTERN, "Select a pattern to start playback."),),
        )
    if profile is None:
        return ProfilePlaybackPlan(
            pattern_id=pattern.id,
            errors=(PlaybackError(MISSING_PROFILE, "Select a calibration profile to continue."),),
        )
    if profile.grid_blueprint is None:
        return ProfilePlaybackPlan(
            pattern_id=pattern.id,
            errors=(
                PlaybackError(
                    PROFILE_MISSING_BLUEPRINT,
                    "Selected profile is missing grid blueprint data. Run calibration again.",
                ),
            ),
        )

    global_errors: List[PlaybackError] = []
    points = {
        point.id: transform_point(
            point.x, point.y, profile.array_rotation, profile.calibration_camera_aspect
        )
        for point in pattern.points
    }

    if len(points) > grid_size.total:
        global_errors.append(
            PlaybackError(
                PATTERN_EXCEEDS_MIRRORS,
                f"Pattern has {len(points)} points, but the array only exposes "
                f"{grid_size.total} mirrors.",
            )
        )

    candidates: List[_Candidate] = []
    for address in grid_size.tiles():
        tile = profile.tiles.get(address.key)
        assignment = assignments.get(address.key, MirrorAssignment())
        if is_tile_calibrated(tile) and assignment.x is not None and assignment.y is not None:
            candidates.append(
                _Candidate(
                    key=address.key,
                    row=address.row,
                    col=address.col,
                    tile=tile,
                    ideal_x=_ideal_position(address.col, grid_size.cols),
                    ideal_y=_ideal_position(address.row, grid_size.rows),
                )
            )

    if len(points) > len(candidates):
        global_errors.append(
            PlaybackError(
                INSUFFICIENT_CALIBRATED_TILES,
                f"Pattern needs {len(points)} calibrated mirrors, but only "
                f"{len(candidates)} are available.",
            )
        )

    # Most constrained points first; sort is stable so ties keep pattern order.
    options = []
    for point_id, point in points.items():
        reachable = [
            c for c in candidates
            if c.tile.combined_bounds is None or c.tile.combined_bounds.contains(point.x, point.y)
        ]
        options.append((point_id, point, reachable))
    options.sort(key=lambda option: len(option[2]))

    assigned: Dict[str, str] = {}
    for point_id, point, reachable in options:
        free = [c for c in reachable if c.key not in assigned]
        if not free:
            continue
        best = min(free, key=lambda c: (point.x - c.ideal_x) ** 2 + (point.y - c.ideal_y) ** 2)
        assigned[best.key] = point_id

    tiles: List[TilePlaybackPlan] = []
    for address in grid_size.tiles():
        key = address.key
        point_id = assigned.get(key)
        if point_id is None:
            tiles.append(TilePlaybackPlan(key, address.row, address.col))
            continue

        point = points[point_id]
        tile = profile.tiles.get(key)
        assignment = assignments.get(key, MirrorAssignment())
        errors: List[PlaybackError] = []
        targets: Dict[str, ProfileAxisTarget] = {}
        if not is_tile_calibrated(tile):
            errors.append(
                PlaybackError(
                    TILE_NOT_CALIBRATED,
                    f"Tile {key} is not calibrated for playback.",
                    mirror_id=key,
                    pattern_point_id=point_id,
                )
            )
        else:
            for axis in AXES:
                result = _axis_target(
                    axis, tile, assignment.motor(axis), point_id,
                    point.x if axis == "x" else point.y, key, limits,
                )
                if isinstance(result, PlaybackError):
                    errors.append(result)
                else:
                    targets[axis] = result
        tiles.append(
            TilePlaybackPlan(
                mirror_id=key,
                row=address.row,
                col=address.col,
                pattern_point_id=point_id,
                target=(point.x, point.y),
                axis_targets=targets,
                errors=tuple(errors),
            )
        )

    placed = set(assigned.values())
    for point_id in points:
        if point_id not in placed:
            global_errors.append(
                PlaybackError(
                    INSUFFICIENT_CALIBRATED_TILES,
                    f"Unable to assign pattern point {point_id} to any valid tile "
                    f"(constraints or capacity).",
                    pattern_point_id=point_id,
                )
            )

    playable = tuple(
        plan.axis_targets[axis]
        for plan in tiles
        for axis in AXES
        if axis in plan.axis_targets
    )
    errors = tuple(global_errors) + tuple(e for plan in tiles for e in plan.errors)
    if errors:
        logger.info("Playback plan for pattern %s has %d error(s)", pattern.id, len(errors))
    return ProfilePlaybackPlan(
        pattern_id=pattern.id,
        tiles=tuple(tiles),
        playable_axis_targets=playable,
        errors=errors,
    )
