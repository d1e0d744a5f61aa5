"""Staging (move-aside) targets.

While one tile is measured, every other tile is parked at a pose that
throws its reflection out of the camera frame.  Where a tile parks depends
on the configured staging strategy and on the array rotation, since the
rotation decides which motor end points which way.

Strategies:

``nearest-corner``
    Each tile goes to the frame corner closest to its grid position.
``corner``
    Every tile goes to the same corner.
``bottom``
    Tiles spread along the bottom edge by column.
``left``
    Tiles spread along the left edge by column.
"""

from __future__ import annotations

from dataclasses import dataclass

from mirror_calibration.calibration.models import GridSize, TileAddress
from mirror_calibration.configs.loader import MotorLimitsConfig
from mirror_calibration.hardware.command_protocol import clamp_steps


@dataclass(frozen=True)
class PoseTargets:
    """Absolute step targets for both axes of one tile."""

    x: int
    y: int


HOME_POSE = PoseTargets(0, 0)


def _baseline_orientation(rotation: int) -> bool:
    return rotation in (0, 90)


def compute_distributed_axis_target(
    column: int, total_cols: int, limits: MotorLimitsConfig,
) -> int:
    """Spread columns evenly over the travel range (midpoint for one column)."""
    cols = max(1, total_cols)
    if cols == 1:
        return int(clamp_steps((limits.max_position_steps + limits.min_position_steps) / 2, limits))
    raw = limits.min_position_steps + column / (cols - 1) * limits.span
    return int(round(clamp_steps(raw, limits)))


def compute_nearest_corner_target(
    tile: TileAddress,
    grid: GridSize,
    rotation: int,
    limits: MotorLimitsConfig,
) -> PoseTargets:
    center_row = (grid.rows - 1) / 2
    center_col = (grid.cols - 1) / 2
    is_top = tile.row < center_row
    is_left = tile.col < center_col

    hi, lo = limits.max_position_steps, limits.min_position_steps
    if _baseline_orientation(rotation):
        left_x, right_x, top_y, bottom_y = hi, lo, hi, lo
    else:
        left_x, right_x, top_y, bottom_y = lo, hi, lo, hi

    return PoseTargets(
        x=left_x if is_left else right_x,
        y=top_y if is_top else bottom_y,
    )


def compute_pose_targets(
    tile: TileAddress,
    pose: str,
    grid: GridSize,
    rotation: int,
    staging_position: str,
    limits: MotorLimitsConfig,
) -> PoseTargets:
    """Step targets for *tile* at ``home`` or ``aside``.

    Parameters
    ----------
    tile : TileAddress
        Tile being positioned.
    pose : str
        ``"home"`` (both axes at step 0) or ``"aside"``.
    grid : GridSize
        Array layout.
    rotation : int
        Array rotation in degrees.
    staging_position : str
        One of ``nearest-corner``, ``corner``, ``bottom``, ``left``.
    limits : MotorLimitsConfig
        Travel range supplying the extreme positions.

    Returns
    -------
    PoseTargets
    """
    if pose == "home":
        return HOME_POSE
    if pose != "aside":
        raise ValueError(f"Unknown pose '{pose}'")

    hi, lo = limits.max_position_steps, limits.min_position_steps
    baseline = _baseline_orientation(rotation)
    aside_x = hi if baseline else lo
    aside_y = lo if baseline else hi

    if staging_position == "nearest-corner":
        return compute_nearest_corner_target(tile, grid, rotation, limits)
    if staging_position == "corner":
        return PoseTargets(aside_x, aside_y)
    if staging_position == "bottom":
        return PoseTargets(
            compute_distributed_axis_target(tile.col, grid.cols, limits), aside_y,
        )
    if staging_position == "left":
        return PoseTargets(
            aside_x, compute_distributed_axis_target(tile.col, grid.cols, limits),
        )
    raise ValueError(f"Unknown staging position '{staging_position}'")
