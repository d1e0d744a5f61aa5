"""
Calibration module.

Per-tile measurement engine, run orchestrator and state machine, plus the
pure geometry, step-test and summary math they share with validation and
playback.
"""

from mirror_calibration.calibration.command_log import CommandLog, CommandLogEntry
from mirror_calibration.calibration.models import (
    AxisCalibration,
    AxisRange,
    Bounds,
    CalibrationRunSummary,
    Footprint,
    GridBlueprint,
    GridSize,
    HomeOffset,
    MirrorAssignment,
    Pattern,
    PatternPoint,
    Point,
    StepVector,
    TileAddress,
    TileCalibrationResults,
    TilePosition,
    TileRunState,
    TileStatus,
    Waypoint,
    tile_key,
)
from mirror_calibration.calibration.runner import CalibrationRunner
from mirror_calibration.calibration.state import (
    RunMode,
    RunnerState,
    RunPhase,
    transition,
)
from mirror_calibration.calibration.summary import compute_calibration_summary

__all__ = [
    "AxisCalibration",
    "AxisRange",
    "Bounds",
    "CalibrationRunSummary",
    "CalibrationRunner",
    "CommandLog",
    "CommandLogEntry",
    "Footprint",
    "GridBlueprint",
    "GridSize",
    "HomeOffset",
    "MirrorAssignment",
    "Pattern",
    "PatternPoint",
    "Point",
    "RunMode",
    "RunPhase",
    "RunnerState",
    "StepVector",
    "TileAddress",
    "TileCalibrationResults",
    "TilePosition",
    "TileRunState",
    "TileStatus",
    "Waypoint",
    "compute_calibration_summary",
    "tile_key",
    "transition",
]
