"""Array rotation helpers.

The mirror array can be mounted at 0/90/180/270 degrees relative to the
camera.  Pattern coordinates are rotated into the calibrated frame before
validation and playback, and the physical jog direction used during step
tests depends on which motor ends up driving which visual axis.

Baseline frame (rotation 0): motor +X moves the reflection LEFT, motor +Y
moves it UP as seen by the camera.
"""

from __future__ import annotations

from dataclasses import dataclass

from mirror_calibration.configs.loader import ARRAY_ROTATIONS


@dataclass(frozen=True)
class Vec2:
    """Plain 2D vector in normalized coordinates."""

    x: float
    y: float


@dataclass(frozen=True)
class AxisMapping:
    """Which physical motor drives each visual axis, and whether it is inverted."""

    logical_x: str
    logical_y: str
    flip_x: bool
    flip_y: bool


_AXIS_MAPPINGS = {
    0: AxisMapping("x", "y", True, False),
    90: AxisMapping("y", "x", True, True),
    180: AxisMapping("x", "y", False, True),
    270: AxisMapping("y", "x", False, False),
}

_INVERSE = {0: 0, 90: 270, 180: 180, 270: 90}


def is_valid_rotation(value: object) -> bool:
    return value in ARRAY_ROTATIONS and isinstance(value, int)


def _check(rotation: int) -> None:
    if rotation not in _AXIS_MAPPINGS:
        raise ValueError(
            f"Array rotation must be one of {ARRAY_ROTATIONS}, got {rotation}"
        )


def rotate_vector(x: float, y: float, rotation: int) -> Vec2:
    """Rotate ``(x, y)`` clockwise by *rotation* degrees about the origin.

    90 maps ``(x, y) -> (y, -x)``, 180 maps to ``(-x, -y)`` and 270 maps to
    ``(-y, x)``.  Exact for the four supported angles.
    """
    _check(rotation)
    if rotation == 90:
        return Vec2(y, -x)
    if rotation == 180:
        return Vec2(-x, -y)
    if rotation == 270:
        return Vec2(-y, x)
    return Vec2(x, y)


def rotate_vector_inverse(x: float, y: float, rotation: int) -> Vec2:
    """Undo :func:`rotate_vector`."""
    _check(rotation)
    return rotate_vector(x, y, _INVERSE[rotation])


def get_axis_mapping(rotation: int) -> AxisMapping:
    _check(rotation)
    return _AXIS_MAPPINGS[rotation]


def get_step_test_jog_direction(axis: str, rotation: int) -> int:
    """Sign of the step-test jog for a physical *axis* under *rotation*.

    The jog is chosen so the probe produces positive displacement along the
    visual axis the motor drives.
    """
    mapping = get_axis_mapping(rotation)
    if axis == "x":
        if mapping.logical_y == "x":
            return -1 if mapping.flip_y else 1
        return -1 if mapping.flip_x else 1
    if axis == "y":
        if mapping.logical_x == "y":
            return -1 if mapping.flip_x else 1
        return -1 if mapping.flip_y else 1
    raise ValueError(f"Unknown axis '{axis}'")
