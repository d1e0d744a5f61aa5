"""Angle-based playback targets.

The angle path predates per-tile calibration: each mirror carries a yaw and
pitch from the geometric solver, which are converted to absolute steps with
the global ``steps_per_degree`` constant.  X motors take yaw, Y motors take
pitch, and the angle sign is negated because positive motor steps tilt the
mirror the opposite way.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Optional

from mirror_calibration.calibration.models import MirrorAssignment
from mirror_calibration.configs.loader import MotorLimitsConfig
from mirror_calibration.hardware.command_protocol import ClampResult, MotorRef, clamp_target

logger = logging.getLogger(__name__)

MISSING_MOTOR = "missing-motor"
MISSING_ANGLE = "missing-angle"


@dataclass(frozen=True)
class MirrorPlan:
    """Solver output for one mirror."""

    mirror_id: str
    row: int
    col: int
    assignment: MirrorAssignment
    pattern_id: Optional[str] = None
    yaw_deg: Optional[float] = None
    pitch_deg: Optional[float] = None


@dataclass(frozen=True)
class AxisTarget:
    key: str
    mirror_id: str
    row: int
    col: int
    axis: str
    pattern_id: str
    motor: MotorRef
    angle_deg: float
    requested_steps: float
    target_steps: int
    clamped: bool


@dataclass(frozen=True)
class SkippedAxis:
    mirror_id: str
    row: int
    col: int
    axis: str
    reason: str


@dataclass(frozen=True)
class AxisPlan:
    axes: tuple[AxisTarget, ...] = ()
    skipped: tuple[SkippedAxis, ...] = ()


def convert_angle_to_steps(
    angle_deg: float,
    limits: MotorLimitsConfig,
    steps_per_degree: Optional[float] = None,
    zero_offset: float = 0.0,
) -> ClampResult:
    """Absolute step target for a mirror angle.

    ``requested = angle * steps_per_degree + zero_offset``, then rounded and
    clamped to the travel range.  ``steps_per_degree`` defaults to the
    configured constant.
    """
    spd = limits.steps_per_degree if steps_per_degree is None else steps_per_degree
    return clamp_target(angle_deg * spd + zero_offset, limits)


def axis_target_key(mirror_id: str, axis: str, motor: MotorRef) -> str:
    return f"{mirror_id}:{axis}:{motor.node_mac}:{motor.motor_index}"


def build_axis_targets(
    mirrors: Iterable[MirrorPlan],
    limits: MotorLimitsConfig,
    steps_per_degree: Optional[float] = None,
) -> AxisPlan:
    """Convert solver angles into per-axis step targets.

    Mirrors without a pattern id are not part of the pattern and are
    ignored.  An axis without a motor or without a finite angle is reported
    in ``skipped``.
    """
    axes: list[AxisTarget] = []
    skipped: list[SkippedAxis] = []

    for mirror in mirrors:
        if not mirror.pattern_id:
            continue
        for axis, angle in (("x", mirror.yaw_deg), ("y", mirror.pitch_deg)):
            motor = mirror.assignment.motor(axis)
            if motor is None:
                skipped.append(SkippedAxis(mirror.mirror_id, mirror.row, mirror.col, axis, MISSING_MOTOR))
                continue
            if angle is None or not math.isfinite(angle):
                skipped.append(SkippedAxis(mirror.mirror_id, mirror.row, mirror.col, axis, MISSING_ANGLE))
                continue
            conversion = convert_angle_to_steps(-angle, limits, steps_per_degree)
            axes.append(
                AxisTarget(
                    key=axis_target_key(mirror.mirror_id, axis, motor),
                    mirror_id=mirror.mirror_id,
                    row=mirror.row,
                    col=mirror.col,
                    axis=axis,
                    pattern_id=mirror.pattern_id,
                    motor=motor,
                    angle_deg=angle,
                    requested_steps=conversion.requested,
                    target_steps=conversion.target,
                    clamped=conversion.clamped,
                )
            )

    if skipped:
        logger.debug("Skipped %d axis target(s)", len(skipped))
    return AxisPlan(axes=tuple(axes), skipped=tuple(skipped))
