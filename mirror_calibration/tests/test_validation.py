"""Tests for pattern / waypoint reachability checks."""

from __future__ import annotations

from dataclasses import replace

import pytest

from mirror_calibration.calibration.models import (
    AxisRange,
    Bounds,
    GridSize,
    PatternPoint,
    Point,
    Waypoint,
)
from mirror_calibration.validation.bounds import (
    NO_VALID_TILE,
    transform_point,
    validate_pattern_in_profile,
    validate_waypoints_in_profile,
)

from conftest import calibrated_tile, make_profile

BOX = Bounds(AxisRange(-0.5, 0.5), AxisRange(-0.5, 0.5))


def _single_tile_profile(**fields):
    tiles = {"0-0": calibrated_tile("0-0", Point(0.0, 0.0), bounds=BOX)}
    return make_profile(tiles, grid=GridSize(1, 1), **fields)


class TestTransform:
    def test_aspect_scales_y_only(self) -> None:
        point = transform_point(0.4, 0.25, 0, 2.0)
        assert (point.x, point.y) == (0.4, 0.5)

    def test_default_aspect(self) -> None:
        point = transform_point(0.0, 0.9)
        assert point.y == pytest.approx(1.6)
        assert transform_point(0.0, 0.9, camera_aspect=0).y == pytest.approx(1.6)

    def test_rotation_before_aspect(self) -> None:
        point = transform_point(0.2, 0.0, 90, 2.0)
        assert (point.x, point.y) == pytest.approx((0.0, -0.4))


class TestValidatePattern:
    def test_boundary_is_inclusive(self) -> None:
        profile = _single_tile_profile(calibration_camera_aspect=2.0)
        result = validate_pattern_in_profile(
            [PatternPoint("edge", 0.5, 0.25), PatternPoint("corner", -0.5, -0.25)], profile,
        )
        assert result.is_valid
        assert result.point_results[0].valid_tile_keys == ("0-0",)

    def test_aspect_pushes_point_out(self) -> None:
        profile = _single_tile_profile(calibration_camera_aspect=2.0)
        result = validate_pattern_in_profile([PatternPoint("p", 0.0, 0.3)], profile)
        assert not result.is_valid
        assert result.invalid_point_ids == ("p",)

    def test_rotation_is_applied(self) -> None:
        profile = _single_tile_profile(calibration_camera_aspect=2.0, array_rotation=90)
        # (0.45, 0.0) rotates to (0.0, -0.45) and scales to y=-0.9.
        result = validate_pattern_in_profile([PatternPoint("p", 0.45, 0.0)], profile)
        assert not result.is_valid
        result = validate_pattern_in_profile([PatternPoint("p", 0.0, 0.2)], profile)
        assert result.is_valid

    def test_mixed_points_report_each_failure(self) -> None:
        profile = make_profile()
        points = [
            PatternPoint("a", -0.28, -0.28),
            PatternPoint("b", 0.99, 0.0),
            PatternPoint("c", 0.28, 0.28),
            PatternPoint("d", -0.99, 0.9),
        ]
        result = validate_pattern_in_profile(points, profile)

        assert not result.is_valid
        assert result.invalid_point_ids == ("b", "d")
        assert [e.point_id for e in result.errors] == ["b", "d"]
        assert all(e.code == NO_VALID_TILE for e in result.errors)
        assert len(result.point_results) == 4

    def test_error_message(self) -> None:
        profile = _single_tile_profile()
        result = validate_pattern_in_profile([PatternPoint("far", 0.9, -0.05)], profile)
        assert result.errors[0].message == 'Point "far" at (0.900, -0.050) is outside all tile bounds'

    def test_empty_pattern_is_valid(self) -> None:
        result = validate_pattern_in_profile([], _single_tile_profile())
        assert result.is_valid
        assert result.errors == ()

    def test_tiles_without_bounds_reach_nothing(self) -> None:
        tiles = {"0-0": calibrated_tile("0-0", Point(0.0, 0.0), bounds=BOX)}
        tiles["0-0"] = replace(tiles["0-0"], combined_bounds=None)
        profile = make_profile(tiles, grid=GridSize(1, 1))
        assert not validate_pattern_in_profile([PatternPoint("p", 0.0, 0.0)], profile).is_valid


class TestValidateWaypoints:
    def test_same_contract_as_patterns(self) -> None:
        profile = _single_tile_profile(calibration_camera_aspect=2.0)
        result = validate_waypoints_in_profile(
            [Waypoint("w1", 0.1, 0.1), Waypoint("w2", 0.1, 0.3)], profile,
        )
        assert result.invalid_point_ids == ("w2",)
