"""
Validation module.

Reachability checks of patterns and animation waypoints against a saved
calibration profile.
"""

from mirror_calibration.validation.bounds import (
    NO_VALID_TILE,
    BoundsValidationError,
    PointValidationResult,
    ValidationResult,
    transform_point,
    validate_pattern_in_profile,
    validate_waypoints_in_profile,
)

__all__ = [
    "NO_VALID_TILE",
    "BoundsValidationError",
    "PointValidationResult",
    "ValidationResult",
    "transform_point",
    "validate_pattern_in_profile",
    "validate_waypoints_in_profile",
]
