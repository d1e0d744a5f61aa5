"""Tests for the pure calibration math.

Covers rotation, robust statistics, bounds and blueprint geometry, staging
targets and step-test conversions.
"""

from __future__ import annotations

import pytest

from mirror_calibration.calibration import geometry
from mirror_calibration.calibration.models import (
    AxisRange,
    Bounds,
    GridSize,
    Point,
    StepVector,
    TileAddress,
)
from mirror_calibration.calibration.rotation import (
    get_step_test_jog_direction,
    is_valid_rotation,
    rotate_vector,
    rotate_vector_inverse,
)
from mirror_calibration.calibration.staging import (
    HOME_POSE,
    PoseTargets,
    compute_pose_targets,
)
from mirror_calibration.calibration.statistics import (
    detect_outliers,
    mad,
    median,
    robust_max,
)
from mirror_calibration.calibration.step_test import (
    combine_step_test_results,
    compute_alignment_target_steps,
    compute_axis_step_test_result,
    get_axis_step_delta,
)
from mirror_calibration.configs.loader import MotorLimitsConfig
from mirror_calibration.detection.sampler import BlobMeasurement

LIMITS = MotorLimitsConfig()


def blob(x: float, y: float, size: float = 0.1) -> BlobMeasurement:
    return BlobMeasurement(x=x, y=y, size=size, response=1.0, captured_at=0.0)


# ---------------------------------------------------------------------------
# Rotation
# ---------------------------------------------------------------------------


class TestRotation:
    @pytest.mark.parametrize("rotation, expected", [
        (0, (0.3, -0.7)),
        (90, (-0.7, -0.3)),
        (180, (-0.3, 0.7)),
        (270, (0.7, 0.3)),
    ])
    def test_rotate_vector(self, rotation: int, expected) -> None:
        v = rotate_vector(0.3, -0.7, rotation)
        assert (v.x, v.y) == pytest.approx(expected)

    def test_four_quarter_turns_are_identity(self) -> None:
        x, y = 0.25, -0.6
        for _ in range(4):
            v = rotate_vector(x, y, 90)
            x, y = v.x, v.y
        assert (x, y) == pytest.approx((0.25, -0.6))

    def test_inverse_undoes_rotation(self) -> None:
        for rotation in (0, 90, 180, 270):
            v = rotate_vector(0.1, 0.9, rotation)
            back = rotate_vector_inverse(v.x, v.y, rotation)
            assert (back.x, back.y) == pytest.approx((0.1, 0.9))

    def test_composition(self) -> None:
        first = rotate_vector(0.4, 0.2, 90)
        a = rotate_vector(first.x, first.y, 180)
        b = rotate_vector(0.4, 0.2, 270)
        assert (a.x, a.y) == pytest.approx((b.x, b.y))

    def test_invalid_rotation(self) -> None:
        assert not is_valid_rotation(45)
        with pytest.raises(ValueError):
            rotate_vector(0, 0, 45)

    @pytest.mark.parametrize("rotation, x_dir, y_dir", [
        (0, -1, 1),
        (90, -1, -1),
        (180, 1, -1),
        (270, 1, 1),
    ])
    def test_jog_direction(self, rotation: int, x_dir: int, y_dir: int) -> None:
        assert get_step_test_jog_direction("x", rotation) == x_dir
        assert get_step_test_jog_direction("y", rotation) == y_dir


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


class TestStatistics:
    def test_median_and_mad(self) -> None:
        values = [1.0, 2.0, 3.0, 4.0, 100.0]
        assert median(values) == 3.0
        assert mad(values, 3.0) == 1.0
        assert median([]) == 0.0

    def test_high_outlier(self) -> None:
        split = detect_outliers([1.0, 1.1, 0.9, 1.05, 5.0], 3.0, direction="high")
        assert split.outlier_indices == [4]
        assert split.median == pytest.approx(1.05)
        assert robust_max([1.0, 1.1, 0.9, 1.05, 5.0]) == pytest.approx(1.1)

    def test_zero_spread_keeps_everything(self) -> None:
        split = detect_outliers([2.0, 2.0, 2.0, 9.0])
        assert split.outliers == []
        assert split.upper_threshold == float("inf")

    def test_bad_direction(self) -> None:
        with pytest.raises(ValueError):
            detect_outliers([1.0, 2.0], direction="sideways")


# ---------------------------------------------------------------------------
# Bounds
# ---------------------------------------------------------------------------


class TestBounds:
    def test_axis_bounds_project_step_range(self) -> None:
        axis = geometry.compute_axis_bounds(0.0, 0, 2.5e-4, LIMITS)
        assert (axis.min, axis.max) == pytest.approx((-0.3, 0.3))

    def test_negative_ratio_swaps_ends(self) -> None:
        axis = geometry.compute_axis_bounds(0.1, 0, -1e-4, LIMITS)
        assert (axis.min, axis.max) == pytest.approx((-0.02, 0.22))

    def test_axis_bounds_clamped_to_frame(self) -> None:
        axis = geometry.compute_axis_bounds(0.5, 0, 1e-3, LIMITS)
        assert (axis.min, axis.max) == pytest.approx((-0.7, 1.0))

    def test_axis_bounds_with_offset_home_steps(self) -> None:
        axis = geometry.compute_axis_bounds(0.0, 200, 1e-4, LIMITS)
        assert (axis.min, axis.max) == pytest.approx((-0.14, 0.10))

    def test_unusable_ratio(self) -> None:
        assert geometry.compute_axis_bounds(0.0, 0, 0.0, LIMITS) is None
        assert geometry.compute_axis_bounds(0.0, 0, None, LIMITS) is None
        assert geometry.compute_axis_bounds(None, 0, 1e-4, LIMITS) is None

    def test_missing_axis_collapses_to_home(self) -> None:
        bounds = geometry.compute_live_tile_bounds(
            Point(0.2, -0.4), StepVector(1e-4, None), LIMITS, movable=(True, False),
        )
        assert (bounds.y.min, bounds.y.max) == (-0.4, -0.4)
        assert bounds.x.span == pytest.approx(0.24)

    def test_contains_is_inclusive(self) -> None:
        bounds = Bounds(AxisRange(-0.5, 0.5), AxisRange(-0.25, 0.25))
        assert bounds.contains(0.5, 0.25)
        assert bounds.contains(-0.5, -0.25)
        assert not bounds.contains(0.5000001, 0.0)

    def test_union_and_intersection(self) -> None:
        a = Bounds(AxisRange(0, 1), AxisRange(0, 1))
        b = Bounds(AxisRange(0.5, 2), AxisRange(-1, 0.5))
        c = Bounds(AxisRange(5, 6), AxisRange(5, 6))
        union = geometry.merge_all_bounds([a, None, b])
        assert (union.x.min, union.x.max, union.y.min, union.y.max) == (0, 2, -1, 1)
        inter = geometry.merge_all_bounds([a, b], mode="intersection")
        assert (inter.x.min, inter.x.max, inter.y.min, inter.y.max) == (0.5, 1, 0, 0.5)
        assert geometry.merge_all_bounds([a, c, b], mode="intersection") is None
        assert geometry.merge_all_bounds([]) is None


# ---------------------------------------------------------------------------
# Blueprint
# ---------------------------------------------------------------------------


class TestBlueprint:
    def test_ideal_blueprint_is_centered(self) -> None:
        bp = geometry.build_ideal_blueprint(GridSize(2, 2), 0.0, 1920, 1080)
        assert bp.ideal_tile_footprint.width == pytest.approx(0.5625)
        assert bp.ideal_tile_footprint.height == pytest.approx(1.0)
        assert (bp.grid_origin.x, bp.grid_origin.y) == pytest.approx((-0.5625, -1.0))
        center = geometry.tile_center(bp, TileAddress(1, 1))
        assert (center.x, center.y) == pytest.approx((0.28125, 0.5))

    def test_ideal_tiles_are_square_in_pixels(self) -> None:
        bp = geometry.build_ideal_blueprint(GridSize(3, 5), 0.05, 1920, 1080)
        fp = bp.ideal_tile_footprint
        assert fp.width * 1920 == pytest.approx(fp.height * 1080)
        assert bp.tile_gap.x == pytest.approx(0.1)

    def test_gap_leaving_no_room_raises(self) -> None:
        with pytest.raises(ValueError, match="no room"):
            geometry.build_ideal_blueprint(GridSize(2, 2), 1.0, 1920, 1080)

    def test_footprint_bounds(self) -> None:
        bp = geometry.build_ideal_blueprint(GridSize(2, 2), 0.0, 1920, 1080)
        bounds = geometry.tile_footprint_bounds(bp, 0, 1)
        assert (bounds.x.min, bounds.x.max) == pytest.approx((0.0, 0.5625))
        assert (bounds.y.min, bounds.y.max) == pytest.approx((-1.0, 0.0))

    def test_expected_position_follows_drift(self) -> None:
        bp = geometry.build_ideal_blueprint(GridSize(2, 2), 0.0, 1920, 1080)
        tile = TileAddress(1, 1)
        assert geometry.estimate_expected_position(bp, tile) == geometry.tile_center(bp, tile)
        measured = [(TileAddress(0, 0), Point(-0.25, -0.55))]
        expected = geometry.estimate_expected_position(bp, tile, measured)
        assert (expected.x, expected.y) == pytest.approx((0.3125, 0.45))

    def test_grid_origin_is_median(self) -> None:
        origin = geometry.compute_grid_origin([Point(0, 0), Point(1, 1), Point(0.2, 5)])
        assert (origin.x, origin.y) == (0.2, 1)
        assert geometry.compute_grid_origin([]) == Point(0.0, 0.0)


# ---------------------------------------------------------------------------
# Staging
# ---------------------------------------------------------------------------


class TestStaging:
    GRID = GridSize(2, 2)

    def _aside(self, row: int, col: int, rotation: int = 0, strategy: str = "nearest-corner"):
        return compute_pose_targets(
            TileAddress(row, col), "aside", self.GRID, rotation, strategy, LIMITS,
        )

    def test_home_pose(self) -> None:
        assert compute_pose_targets(
            TileAddress(0, 0), "home", self.GRID, 0, "corner", LIMITS,
        ) == HOME_POSE

    def test_nearest_corner_baseline(self) -> None:
        assert self._aside(0, 0) == PoseTargets(1200, 1200)
        assert self._aside(0, 1) == PoseTargets(-1200, 1200)
        assert self._aside(1, 1) == PoseTargets(-1200, -1200)

    def test_nearest_corner_flipped(self) -> None:
        assert self._aside(0, 0, rotation=180) == PoseTargets(-1200, -1200)
        assert self._aside(1, 1, rotation=270) == PoseTargets(1200, 1200)

    def test_corner(self) -> None:
        assert self._aside(1, 0, strategy="corner") == PoseTargets(1200, -1200)
        assert self._aside(1, 0, rotation=180, strategy="corner") == PoseTargets(-1200, 1200)

    def test_bottom_and_left_distribute_columns(self) -> None:
        assert self._aside(0, 0, strategy="bottom") == PoseTargets(-1200, -1200)
        assert self._aside(0, 1, strategy="bottom") == PoseTargets(1200, -1200)
        assert self._aside(0, 1, strategy="left") == PoseTargets(1200, 1200)

    def test_single_column_uses_midpoint(self) -> None:
        pose = compute_pose_targets(
            TileAddress(0, 0), "aside", GridSize(3, 1), 0, "bottom", LIMITS,
        )
        assert pose.x == 0

    def test_unknown_pose(self) -> None:
        with pytest.raises(ValueError):
            compute_pose_targets(TileAddress(0, 0), "sideways", self.GRID, 0, "corner", LIMITS)


# ---------------------------------------------------------------------------
# Step test
# ---------------------------------------------------------------------------


class TestStepTest:
    def test_signed_delta(self) -> None:
        assert get_axis_step_delta("x", 400, 0, LIMITS) == -400
        assert get_axis_step_delta("y", 400, 0, LIMITS) == 400
        assert get_axis_step_delta("x", 5000, 0, LIMITS) == -1200
        assert get_axis_step_delta("x", 0, 0, LIMITS) is None

    def test_per_step_keeps_sign(self) -> None:
        result = compute_axis_step_test_result(blob(0.0, 0.0, 0.1), blob(-0.1, 0.0, 0.12), "x", -400)
        assert result.displacement == pytest.approx(-0.1)
        assert result.per_step == pytest.approx(2.5e-4)
        assert result.size_delta == pytest.approx(0.02)

        result = compute_axis_step_test_result(blob(0.0, 0.0), blob(0.0, -0.08), "y", 400)
        assert result.per_step == pytest.approx(-2e-4)

    def test_combine_averages_size_delta(self) -> None:
        x = compute_axis_step_test_result(blob(0, 0, 0.1), blob(0.1, 0, 0.14), "x", 400)
        y = compute_axis_step_test_result(blob(0, 0, 0.1), blob(0, 0.1, 0.12), "y", 400)
        combined = combine_step_test_results(x, y)
        assert combined.size_delta_at_step_test == pytest.approx(0.03)
        assert combined.step_to_displacement.x == pytest.approx(2.5e-4)
        assert combine_step_test_results(None, None).size_delta_at_step_test is None

    def test_alignment_steps(self) -> None:
        assert compute_alignment_target_steps(0.05, 2.5e-4, LIMITS) == 200
        assert compute_alignment_target_steps(-0.05, -2.5e-4, LIMITS) == 200
        assert compute_alignment_target_steps(0.5, 2.5e-4, LIMITS) is None
        assert compute_alignment_target_steps(0.05, 1e-7, LIMITS) is None
        assert compute_alignment_target_steps(0.05, None, LIMITS) is None
