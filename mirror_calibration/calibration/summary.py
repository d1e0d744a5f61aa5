"""Run summary: adjusted grid blueprint and per-tile refinement.

After measurement the ideal blueprint is replaced by one fitted to the
measured home centroids:

1. Tile size is the (robust) maximum blob size.
2. Pitch is the median neighbour distance in isotropic space; the configured
   gap is kept fixed and the tile size derived as ``pitch - gap``.
3. The grid origin is the median of the origins implied by each tile.
4. The grid is re-centred on the camera: the offset of its centre from the
   frame centre becomes ``camera_origin_offset`` and every measurement is
   shifted by it.

Each completed tile then gets its adjusted home (blueprint centre), home
offset, motor reach bounds and alignment steps.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Mapping, Sequence

from mirror_calibration.calibration import geometry
from mirror_calibration.calibration.models import (
    AXES,
    AxisCalibration,
    CalibrationRunSummary,
    Footprint,
    GridBlueprint,
    GridSize,
    OutlierAnalysis,
    Point,
    RunMetrics,
    StepTestSettings,
    TileAddress,
    TileAxes,
    TileCalibrationResults,
    TilePosition,
    TileStatus,
)
from mirror_calibration.calibration.statistics import detect_outliers
from mirror_calibration.calibration.step_test import (
    compute_alignment_target_steps,
    is_usable_per_step,
)
from mirror_calibration.configs.loader import MotorLimitsConfig, RunnerSettings
from mirror_calibration.detection.sampler import BlobMeasurement

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_WIDTH = 1920
DEFAULT_SOURCE_HEIGHT = 1080
ALIGNMENT_WARNING_SUFFIX = "exceeds the travel range"


@dataclass(frozen=True)
class MeasuredTile:
    tile: TileAddress
    measurement: BlobMeasurement


# ---------------------------------------------------------------------------
# Blueprint
# ---------------------------------------------------------------------------


def _tile_size(
    measured: Sequence[MeasuredTile], settings: RunnerSettings,
) -> tuple[float, OutlierAnalysis]:
    sizes = [entry.measurement.size for entry in measured]
    if settings.robust_tile_size and len(measured) > 1:
        split = detect_outliers(sizes, settings.outlier_mad_threshold, direction="high")
        size = max(split.inliers) if split.inliers else max(sizes)
        analysis = OutlierAnalysis(
            enabled=True,
            outlier_tile_keys=tuple(measured[i].tile.key for i in split.outlier_indices),
            median=split.median,
            mad=split.mad,
            nmad=split.nmad,
            upper_threshold=split.upper_threshold,
            computed_tile_size=size,
        )
        if analysis.outlier_count:
            logger.info(
                "Excluded %d oversized blob(s) from tile sizing: %s",
                analysis.outlier_count, ", ".join(analysis.outlier_tile_keys),
            )
        return size, analysis

    size = max(sizes, default=0.0)
    return size, OutlierAnalysis(
        enabled=False,
        median=size,
        upper_threshold=size,
        computed_tile_size=size,
    )


def compute_grid_blueprint(
    measured: Sequence[MeasuredTile],
    grid: GridSize,
    settings: RunnerSettings,
    ideal: GridBlueprint | None = None,
) -> tuple[GridBlueprint | None, OutlierAnalysis]:
    """Fit the adjusted blueprint to measured home centroids.

    Parameters
    ----------
    measured : Sequence[MeasuredTile]
        Tiles with a home measurement (raw camera coordinates).
    grid : GridSize
        Array layout.
    settings : RunnerSettings
        Gap, robust sizing switch and MAD threshold.
    ideal : GridBlueprint, optional
        Ideal blueprint whose footprint is carried along.

    Returns
    -------
    tuple
        ``(blueprint, outlier_analysis)``; blueprint is ``None`` without
        measurements.
    """
    if not measured:
        return None, OutlierAnalysis(enabled=settings.robust_tile_size)

    first = measured[0].measurement
    source_width = first.source_width or DEFAULT_SOURCE_WIDTH
    source_height = first.source_height or DEFAULT_SOURCE_HEIGHT

    tile_size, analysis = _tile_size(measured, settings)
    iso_x, iso_y = geometry.iso_factors(source_width, source_height)

    by_key = {entry.tile.key: entry.measurement for entry in measured}
    deltas_x: list[float] = []
    deltas_y: list[float] = []
    for entry in measured:
        row, col = entry.tile.row, entry.tile.col
        right = by_key.get(f"{row}-{col + 1}")
        if right is not None:
            deltas_x.append(abs(right.x - entry.measurement.x) * iso_x)
        down = by_key.get(f"{row + 1}-{col}")
        if down is not None:
            deltas_y.append(abs(down.y - entry.measurement.y) * iso_y)

    gap = geometry.clamp_gap(settings.grid_gap_normalized) * 2

    pitch_x = geometry.compute_axis_pitch(deltas_x)
    pitch_y = geometry.compute_axis_pitch(deltas_y)
    if pitch_y <= 0 < pitch_x:
        pitch_y = pitch_x
    if pitch_x > 0 and pitch_y > 0:
        iso_pitch = (pitch_x + pitch_y) / 2
    else:
        iso_pitch = max(pitch_x, pitch_y, 0.0)

    tile_w = tile_h = tile_size
    if iso_pitch > gap:
        iso_tile = iso_pitch - gap
        tile_w = iso_tile / iso_x
        tile_h = iso_tile / iso_y

    spacing = Point(tile_w + gap, tile_h + gap)
    half = Point(tile_w / 2, tile_h / 2)
    total = Footprint(grid.cols * spacing.x - gap, grid.rows * spacing.y - gap)

    origin = geometry.compute_grid_origin([
        geometry.compute_implied_origin(
            Point(entry.measurement.x, entry.measurement.y), entry.tile, spacing, half,
        )
        for entry in measured
    ])
    offset = geometry.compute_camera_origin_offset(origin, total)

    adjusted = Footprint(tile_w, tile_h)
    blueprint = GridBlueprint(
        grid_origin=Point(origin.x - offset.x, origin.y - offset.y),
        ideal_tile_footprint=ideal.ideal_tile_footprint if ideal else adjusted,
        adjusted_tile_footprint=adjusted,
        tile_gap=Point(gap, gap),
        camera_origin_offset=offset,
        source_width=source_width,
        source_height=source_height,
    )
    logger.debug(
        "Adjusted blueprint: tile=%.4fx%.4f gap=%.4f origin=(%.4f, %.4f) offset=(%.4f, %.4f)",
        tile_w, tile_h, gap, blueprint.grid_origin.x, blueprint.grid_origin.y,
        offset.x, offset.y,
    )
    return blueprint, analysis


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def refine_tile(
    result: TileCalibrationResults,
    blueprint: GridBlueprint,
    limits: MotorLimitsConfig,
) -> TileCalibrationResults:
    """Recentre one completed tile on *blueprint*.

    *result* holds the raw home measurement.  Alignment warnings from an
    earlier refinement are replaced.
    """
    offset = blueprint.camera_origin_offset
    home = result.home_measurement.shifted(-offset.x, -offset.y)
    home_point = Point(home.x, home.y)
    per_step = result.step_to_displacement

    movable = (is_usable_per_step(per_step.x), is_usable_per_step(per_step.y))
    reach = geometry.compute_live_tile_bounds(home_point, per_step, limits, movable)

    center = geometry.tile_center(blueprint, result.tile)
    home_offset = geometry.compute_home_offset(home_point, center)

    # Per axis: adjusted centre if alignment can reach it, else stay at home.
    coords: dict[str, float] = {}
    steps: dict[str, int | None] = {}
    warnings = [w for w in result.warnings if not w.endswith(ALIGNMENT_WARNING_SUFFIX)]
    for axis, moves in zip(AXES, movable):
        target = getattr(center, axis)
        measured = getattr(home_point, axis)
        if not moves:
            coords[axis], steps[axis] = measured, None
            continue
        displacement = -(home_offset.dx if axis == "x" else home_offset.dy)
        aligned = compute_alignment_target_steps(displacement, per_step.get(axis), limits)
        if aligned is None:
            warnings.append(f"Alignment on {axis.upper()} {ALIGNMENT_WARNING_SUFFIX}")
            coords[axis], steps[axis] = measured, 0
        else:
            coords[axis], steps[axis] = target, aligned

    axes = TileAxes(**{
        axis: AxisCalibration(
            step_range=(limits.min_position_steps, limits.max_position_steps),
            step_scale=geometry.compute_step_scale(per_step.get(axis)),
        ) if moves else None
        for axis, moves in zip(AXES, movable)
    })

    return replace(
        result,
        warnings=tuple(warnings),
        home_measurement=home,
        home_offset=home_offset,
        adjusted_home=TilePosition(coords["x"], coords["y"], steps["x"], steps["y"]),
        axes=axes,
        motor_reach_bounds=reach,
        footprint_bounds=geometry.tile_footprint_bounds(
            blueprint, result.tile.row, result.tile.col,
        ),
        combined_bounds=reach,
    )


def compute_run_metrics(tiles: Mapping[str, TileCalibrationResults]) -> RunMetrics:
    statuses = [entry.status for entry in tiles.values()]
    return RunMetrics(
        total_tiles=len(statuses),
        completed_tiles=statuses.count(TileStatus.COMPLETED),
        failed_tiles=statuses.count(TileStatus.FAILED),
        skipped_tiles=statuses.count(TileStatus.SKIPPED),
    )


def compute_calibration_summary(
    tiles: Mapping[str, TileCalibrationResults],
    grid: GridSize,
    settings: RunnerSettings,
    limits: MotorLimitsConfig,
    ideal: GridBlueprint | None = None,
) -> CalibrationRunSummary:
    """Build the run summary from per-tile results.

    Only completed tiles are refined; failed and skipped tiles are carried
    through unchanged.  Without any measured tile the ideal blueprint is
    kept.
    """
    measured = [
        MeasuredTile(entry.tile, entry.home_measurement)
        for entry in tiles.values()
        if entry.status == TileStatus.COMPLETED and entry.home_measurement is not None
    ]
    blueprint, analysis = compute_grid_blueprint(measured, grid, settings, ideal)

    refined: dict[str, TileCalibrationResults] = {}
    for key, entry in tiles.items():
        if (
            blueprint is not None
            and entry.status == TileStatus.COMPLETED
            and entry.home_measurement is not None
        ):
            refined[key] = refine_tile(entry, blueprint, limits)
        else:
            refined[key] = entry

    return CalibrationRunSummary(
        grid_blueprint=blueprint or ideal,
        tiles=refined,
        step_test_settings=StepTestSettings(settings.delta_steps, settings.dwell_s),
        metrics=compute_run_metrics(refined),
        outlier_analysis=analysis,
    )
