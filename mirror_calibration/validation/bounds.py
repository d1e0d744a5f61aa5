"""Pattern and waypoint validation against a calibration profile.

A point is valid when at least one calibrated tile can reach it, i.e. the
point lies inside that tile's ``combined_bounds`` (edges inclusive).
Points are first rotated into the calibrated frame by the profile's array
rotation, then Y is scaled by the calibration camera aspect because tile
bounds were measured in camera-normalized space.

Validation never raises for unreachable points; failures are reported as
structured result data.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, List, Optional, Protocol, Tuple

from mirror_calibration.calibration.models import Point
from mirror_calibration.calibration.rotation import rotate_vector
from mirror_calibration.configs.loader import DEFAULT_CAMERA_ASPECT

if TYPE_CHECKING:
    from mirror_calibration.persistence.profiles import CalibrationProfile

NO_VALID_TILE = "no_valid_tile_for_point"


class _IdentifiedPoint(Protocol):
    id: str
    x: float
    y: float


@dataclass(frozen=True)
class BoundsValidationError:
    code: str
    point_id: str
    message: str


@dataclass(frozen=True)
class PointValidationResult:
    point_id: str
    is_valid: bool
    valid_tile_keys: Tuple[str, ...] = ()
    error: Optional[BoundsValidationError] = None


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    invalid_point_ids: Tuple[str, ...] = ()
    errors: Tuple[BoundsValidationError, ...] = ()
    point_results: Tuple[PointValidationResult, ...] = field(default=())


def transform_point(
    x: float,
    y: float,
    rotation: int = 0,
    camera_aspect: Optional[float] = None,
) -> Point:
    """Map a pattern coordinate into calibrated camera-normalized space."""
    rotated = rotate_vector(x, y, rotation)
    aspect = camera_aspect if camera_aspect else DEFAULT_CAMERA_ASPECT
    return Point(rotated.x, rotated.y * aspect)


def _validate_point(point: _IdentifiedPoint, profile: "CalibrationProfile") -> PointValidationResult:
    target = transform_point(
        point.x, point.y, profile.array_rotation, profile.calibration_camera_aspect
    )
    valid = tuple(
        key
        for key, entry in profile.tiles.items()
        if entry.combined_bounds is not None
        and entry.combined_bounds.contains(target.x, target.y)
    )
    if valid:
        return PointValidationResult(point.id, True, valid)
    error = BoundsValidationError(
        code=NO_VALID_TILE,
        point_id=point.id,
        message=(
            f'Point "{point.id}" at ({point.x:.3f}, {point.y:.3f}) '
            f"is outside all tile bounds"
        ),
    )
    return PointValidationResult(point.id, False, (), error)


def _validate(points: Iterable[_IdentifiedPoint], profile: "CalibrationProfile") -> ValidationResult:
    results: List[PointValidationResult] = [_validate_point(p, profile) for p in points]
    errors = tuple(r.error for r in results if r.error is not None)
    invalid = tuple(r.point_id for r in results if not r.is_valid)
    return ValidationResult(
        is_valid=not invalid,
        invalid_point_ids=invalid,
        errors=errors,
        point_results=tuple(results),
    )


def validate_pattern_in_profile(points, profile: "CalibrationProfile") -> ValidationResult:
    """Check every pattern point is reachable by some calibrated tile.

    Parameters
    ----------
    points : Iterable[PatternPoint]
        Points in normalized ``[-1, 1]`` pattern space.
    profile : CalibrationProfile
        Profile whose tiles' ``combined_bounds`` define reachability.

    Returns
    -------
    ValidationResult
        ``is_valid`` is True for an empty pattern.
    """
    return _validate(points, profile)


def validate_waypoints_in_profile(waypoints, profile: "CalibrationProfile") -> ValidationResult:
    """Same contract as :func:`validate_pattern_in_profile`, for animation waypoints."""
    return _validate(waypoints, profile)
