"""Pure grid geometry shared by the runner, the summary and the validator.

Single source of truth for:

* projecting a motor's step range through a measured step-to-displacement
  ratio (``motor_reach_bounds``)
* the ideal grid blueprint (grid size + configured gap) and the per-tile
  ideal rectangle and centre
* the adjusted-blueprint helpers (implied origin, grid origin, camera origin
  offset, adjusted centre, home offset)
* bounds union / intersection

Isotropic space: centered coordinates are stretched by the camera aspect, so
equal physical distances differ between X and Y.  Multiplying an X value by
``source_width / avg_dim`` and a Y value by ``source_height / avg_dim``
(``avg_dim`` being the mean of width and height) gives comparable units.
"""

from __future__ import annotations

import math
from typing import Iterable, Sequence

from mirror_calibration.calibration.models import (
    AxisRange,
    Bounds,
    Footprint,
    GridBlueprint,
    GridSize,
    HomeOffset,
    Point,
    StepVector,
    TileAddress,
)
from mirror_calibration.calibration.statistics import median
from mirror_calibration.configs.loader import MotorLimitsConfig

STEP_EPSILON = 1e-9
NORMALIZED_MIN = -1.0
NORMALIZED_MAX = 1.0


def clamp_normalized(value: float) -> float:
    """Clamp into ``[-1, 1]``; non-finite input maps to 0."""
    if not math.isfinite(value):
        return 0.0
    return min(NORMALIZED_MAX, max(NORMALIZED_MIN, value))


def clamp_gap(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return min(1.0, max(0.0, value))


def iso_factors(source_width: float, source_height: float) -> tuple[float, float]:
    """``(x, y)`` factors converting centered deltas into isotropic units."""
    avg_dim = (source_width + source_height) / 2
    return source_width / avg_dim, source_height / avg_dim


# ---------------------------------------------------------------------------
# Step <-> displacement
# ---------------------------------------------------------------------------


def convert_delta_to_steps(delta: float, per_step: float | None) -> float | None:
    """Steps needed to move by *delta*; ``None`` for an unusable ratio."""
    if per_step is None or not math.isfinite(per_step) or abs(per_step) < STEP_EPSILON:
        return None
    return delta / per_step


def compute_step_scale(per_step: float | None) -> float | None:
    """Steps per normalized unit (inverse of step-to-displacement)."""
    if per_step is None or not math.isfinite(per_step) or abs(per_step) < STEP_EPSILON:
        return None
    return 1.0 / per_step


# ---------------------------------------------------------------------------
# Bounds
# ---------------------------------------------------------------------------


def compute_axis_bounds(
    center: float | None,
    center_steps: float | None,
    per_step: float | None,
    limits: MotorLimitsConfig,
) -> AxisRange | None:
    """Normalized range reachable on one axis.

    The motor range ``[min_position_steps, max_position_steps]`` is
    projected through *per_step* around *center*, which is where the mirror
    points when the motor sits at *center_steps*.  A negative ratio swaps
    the ends.  Both ends are clamped into ``[-1, 1]``.

    Returns ``None`` when any input is missing or the ratio is ~0.
    """
    if (
        center is None
        or center_steps is None
        or per_step is None
        or not math.isfinite(per_step)
        or abs(per_step) < STEP_EPSILON
    ):
        return None
    cand_a = clamp_normalized(center + (limits.min_position_steps - center_steps) * per_step)
    cand_b = clamp_normalized(center + (limits.max_position_steps - center_steps) * per_step)
    return AxisRange(min(cand_a, cand_b), max(cand_a, cand_b))


def collapsed_axis(value: float) -> AxisRange:
    """Degenerate range for an axis that cannot move."""
    point = clamp_normalized(value)
    return AxisRange(point, point)


def compute_tile_bounds(
    home: Point,
    home_steps: tuple[float | None, float | None],
    step_to_displacement: StepVector,
    limits: MotorLimitsConfig,
    movable: tuple[bool, bool] = (True, True),
) -> Bounds | None:
    """Reach rectangle around *home*, per axis.

    An axis flagged not *movable* (no motor) collapses to the home
    coordinate.  ``None`` if a movable axis has no usable ratio.
    """
    ranges: list[AxisRange] = []
    for index, center in enumerate((home.x, home.y)):
        if not movable[index]:
            ranges.append(collapsed_axis(center))
            continue
        per_step = step_to_displacement.x if index == 0 else step_to_displacement.y
        axis_range = compute_axis_bounds(center, home_steps[index], per_step, limits)
        if axis_range is None:
            return None
        ranges.append(axis_range)
    return Bounds(ranges[0], ranges[1])


def compute_live_tile_bounds(
    home: Point,
    step_to_displacement: StepVector,
    limits: MotorLimitsConfig,
    movable: tuple[bool, bool] = (True, True),
) -> Bounds | None:
    """Reach rectangle around a home measured with the motors at step 0."""
    return compute_tile_bounds(home, (0, 0), step_to_displacement, limits, movable)


def union_bounds(current: Bounds | None, candidate: Bounds) -> Bounds:
    """Outer envelope of both rectangles."""
    if current is None:
        return candidate
    return Bounds(
        AxisRange(min(current.x.min, candidate.x.min), max(current.x.max, candidate.x.max)),
        AxisRange(min(current.y.min, candidate.y.min), max(current.y.max, candidate.y.max)),
    )


def intersect_bounds(current: Bounds | None, candidate: Bounds) -> Bounds | None:
    """Overlap of both rectangles; ``None`` when they are disjoint."""
    if current is None:
        return candidate
    min_x = max(current.x.min, candidate.x.min)
    max_x = min(current.x.max, candidate.x.max)
    min_y = max(current.y.min, candidate.y.min)
    max_y = min(current.y.max, candidate.y.max)
    if min_x > max_x or min_y > max_y:
        return None
    return Bounds(AxisRange(min_x, max_x), AxisRange(min_y, max_y))


def merge_all_bounds(bounds: Iterable[Bounds | None], mode: str = "union") -> Bounds | None:
    """Fold many rectangles with ``union`` or ``intersection``."""
    merged: Bounds | None = None
    started = False
    for entry in bounds:
        if entry is None:
            continue
        if mode == "union":
            merged = union_bounds(merged, entry)
        elif mode == "intersection":
            if started and merged is None:
                return None
            merged = intersect_bounds(merged, entry)
        else:
            raise ValueError(f"Unknown merge mode '{mode}'")
        started = True
    return merged


# ---------------------------------------------------------------------------
# Blueprint
# ---------------------------------------------------------------------------


def build_ideal_blueprint(
    grid: GridSize,
    gap_normalized: float,
    source_width: int,
    source_height: int,
) -> GridBlueprint:
    """Ideal layout: square tiles (in pixels) centred in the frame.

    The configured gap fraction is scaled to the 2-unit normalized span.
    The pitch is the largest that fits both frame dimensions.

    Raises
    ------
    ValueError
        If the gap leaves no room for tiles.
    """
    gap = clamp_gap(gap_normalized) * 2
    iso_x, iso_y = iso_factors(source_width, source_height)
    pitch = min(
        (2 * iso_x + gap) / grid.cols,
        (2 * iso_y + gap) / grid.rows,
    )
    iso_tile = pitch - gap
    if iso_tile <= 0:
        raise ValueError(
            f"Grid gap {gap_normalized} leaves no room for a "
            f"{grid.rows}x{grid.cols} grid"
        )
    footprint = Footprint(iso_tile / iso_x, iso_tile / iso_y)
    total_w = grid.cols * (footprint.width + gap) - gap
    total_h = grid.rows * (footprint.height + gap) - gap
    return GridBlueprint(
        grid_origin=Point(-total_w / 2, -total_h / 2),
        ideal_tile_footprint=footprint,
        adjusted_tile_footprint=footprint,
        tile_gap=Point(gap, gap),
        camera_origin_offset=Point(0.0, 0.0),
        source_width=source_width,
        source_height=source_height,
    )


def tile_footprint_bounds(blueprint: GridBlueprint, row: int, col: int) -> Bounds:
    """Rectangle covered by tile ``(row, col)`` under the adjusted footprint."""
    spacing = blueprint.spacing
    min_x = blueprint.grid_origin.x + col * spacing.x
    min_y = blueprint.grid_origin.y + row * spacing.y
    return Bounds(
        AxisRange(min_x, min_x + blueprint.adjusted_tile_footprint.width),
        AxisRange(min_y, min_y + blueprint.adjusted_tile_footprint.height),
    )


def tile_center(blueprint: GridBlueprint, tile: TileAddress) -> Point:
    """Centre of *tile* in the blueprint (the adjusted centre)."""
    return compute_adjusted_center(
        blueprint.grid_origin,
        tile,
        blueprint.spacing,
        Point(
            blueprint.adjusted_tile_footprint.width / 2,
            blueprint.adjusted_tile_footprint.height / 2,
        ),
    )


def compute_implied_origin(
    center: Point, tile: TileAddress, spacing: Point, half_tile: Point,
) -> Point:
    """Grid origin implied by one measured tile centre."""
    return Point(
        center.x - (tile.col * spacing.x + half_tile.x),
        center.y - (tile.row * spacing.y + half_tile.y),
    )


def compute_grid_origin(implied_origins: Sequence[Point]) -> Point:
    """Per-axis median of implied origins; ``(0, 0)`` when empty."""
    if not implied_origins:
        return Point(0.0, 0.0)
    return Point(
        median([p.x for p in implied_origins]),
        median([p.y for p in implied_origins]),
    )


def compute_camera_origin_offset(grid_origin: Point, total: Footprint) -> Point:
    """Offset of the grid centre from the camera centre."""
    return Point(grid_origin.x + total.width / 2, grid_origin.y + total.height / 2)


def compute_adjusted_center(
    grid_origin: Point, tile: TileAddress, spacing: Point, half_tile: Point,
) -> Point:
    return Point(
        grid_origin.x + tile.col * spacing.x + half_tile.x,
        grid_origin.y + tile.row * spacing.y + half_tile.y,
    )


def compute_home_offset(measured: Point, center: Point) -> HomeOffset:
    return HomeOffset(measured.x - center.x, measured.y - center.y)


def compute_axis_pitch(deltas: Sequence[float]) -> float:
    return median(deltas) if deltas else 0.0


def estimate_expected_position(
    blueprint: GridBlueprint,
    tile: TileAddress,
    measured: Sequence[tuple[TileAddress, Point]] = (),
) -> Point:
    """Where the blob of *tile* should appear at home.

    The ideal centre, shifted by the median drift of tiles already measured
    from their own ideal centres.
    """
    ideal = tile_center(blueprint, tile)
    if not measured:
        return ideal
    drift_x = []
    drift_y = []
    for address, position in measured:
        center = tile_center(blueprint, address)
        drift_x.append(position.x - center.x)
        drift_y.append(position.y - center.y)
    return Point(ideal.x + median(drift_x), ideal.y + median(drift_y))
