"""Calibration data model.

Immutable value objects (addresses, bounds, blueprint geometry) are frozen
dataclasses; per-tile results are plain dataclasses that the summary step
refines with :func:`dataclasses.replace`.

Coordinates are centered normalized camera coordinates: ``x`` in ``[-1, 1]``
left to right, ``y`` in ``[-1, 1]`` top to bottom.  Rows grow with ``y``
and columns with ``x``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterator

from mirror_calibration.detection.sampler import BlobMeasurement
from mirror_calibration.hardware.command_protocol import MotorRef

AXES: tuple[str, ...] = ("x", "y")


def tile_key(row: int, col: int) -> str:
    """Canonical ``row-col`` key."""
    return f"{row}-{col}"


# ---------------------------------------------------------------------------
# Grid identity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TileAddress:
    row: int
    col: int

    @property
    def key(self) -> str:
        return tile_key(self.row, self.col)


@dataclass(frozen=True)
class GridSize:
    """Fixed ``rows x cols`` layout of the mirror array."""

    rows: int
    cols: int

    def __post_init__(self) -> None:
        if self.rows < 1 or self.cols < 1:
            raise ValueError(f"Grid must be at least 1x1, got {self.rows}x{self.cols}")

    @property
    def total(self) -> int:
        return self.rows * self.cols

    def tiles(self) -> Iterator[TileAddress]:
        """Row-major iteration over every tile address."""
        for row in range(self.rows):
            for col in range(self.cols):
                yield TileAddress(row, col)


class TileStatus(str, Enum):
    PENDING = "pending"
    STAGED = "staged"
    MEASURING = "measuring"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class MirrorAssignment:
    """Motors driving one tile; either axis may be unassigned."""

    x: MotorRef | None = None
    y: MotorRef | None = None

    def motor(self, axis: str) -> MotorRef | None:
        if axis == "x":
            return self.x
        if axis == "y":
            return self.y
        raise ValueError(f"Unknown axis '{axis}'")

    def motors(self) -> list[MotorRef]:
        return [m for m in (self.x, self.y) if m is not None]

    @property
    def motor_count(self) -> int:
        return len(self.motors())


# ---------------------------------------------------------------------------
# Geometry values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True)
class AxisRange:
    """Closed interval ``[min, max]``."""

    min: float
    max: float

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max

    @property
    def span(self) -> float:
        return self.max - self.min


@dataclass(frozen=True)
class Bounds:
    """Axis-aligned rectangle in normalized space (inclusive edges)."""

    x: AxisRange
    y: AxisRange

    def contains(self, x: float, y: float) -> bool:
        return self.x.contains(x) and self.y.contains(y)

    def axis(self, name: str) -> AxisRange:
        return self.x if name == "x" else self.y


@dataclass(frozen=True)
class Footprint:
    width: float
    height: float


@dataclass(frozen=True)
class GridBlueprint:
    """Geometric layout of the array in the camera frame.

    ``ideal_tile_footprint`` comes from grid size and configured gap alone;
    ``adjusted_tile_footprint`` is fitted to measured tile centroids.  The
    origin is the top-left corner of tile ``0-0``.
    """

    grid_origin: Point
    ideal_tile_footprint: Footprint
    adjusted_tile_footprint: Footprint
    tile_gap: Point
    camera_origin_offset: Point = Point(0.0, 0.0)
    source_width: int = 1920
    source_height: int = 1080

    @property
    def spacing(self) -> Point:
        """Centre-to-centre distance between neighbouring tiles."""
        return Point(
            self.adjusted_tile_footprint.width + self.tile_gap.x,
            self.adjusted_tile_footprint.height + self.tile_gap.y,
        )


# ---------------------------------------------------------------------------
# Per-tile results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TilePosition:
    """Adjusted home: normalized position plus the motor steps that reach it."""

    x: float
    y: float
    steps_x: int | None = None
    steps_y: int | None = None

    def steps(self, axis: str) -> int | None:
        return self.steps_x if axis == "x" else self.steps_y


@dataclass(frozen=True)
class HomeOffset:
    dx: float
    dy: float


@dataclass(frozen=True)
class StepVector:
    """Normalized displacement per motor step; the sign encodes direction."""

    x: float | None = None
    y: float | None = None

    def get(self, axis: str) -> float | None:
        return self.x if axis == "x" else self.y


@dataclass(frozen=True)
class AxisCalibration:
    step_range: tuple[int, int]
    step_scale: float | None = None


@dataclass(frozen=True)
class TileAxes:
    x: AxisCalibration | None = None
    y: AxisCalibration | None = None

    def get(self, axis: str) -> AxisCalibration | None:
        return self.x if axis == "x" else self.y


@dataclass(frozen=True)
class TileCalibrationResults:
    """Durable calibration output for one tile."""

    tile: TileAddress
    status: TileStatus = TileStatus.PENDING
    error: str | None = None
    warnings: tuple[str, ...] = ()
    home_measurement: BlobMeasurement | None = None
    home_offset: HomeOffset | None = None
    adjusted_home: TilePosition | None = None
    step_to_displacement: StepVector = StepVector()
    size_delta_at_step_test: float | None = None
    axes: TileAxes = TileAxes()
    motor_reach_bounds: Bounds | None = None
    footprint_bounds: Bounds | None = None
    combined_bounds: Bounds | None = None

    @property
    def key(self) -> str:
        return self.tile.key


# ---------------------------------------------------------------------------
# Run summary
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StepTestSettings:
    delta_steps: int
    dwell_s: float = 0.0


@dataclass(frozen=True)
class RunMetrics:
    total_tiles: int = 0
    completed_tiles: int = 0
    failed_tiles: int = 0
    skipped_tiles: int = 0


@dataclass(frozen=True)
class OutlierAnalysis:
    """How the adjusted tile size was chosen from measured blob sizes."""

    enabled: bool = False
    outlier_tile_keys: tuple[str, ...] = ()
    median: float = 0.0
    mad: float = 0.0
    nmad: float = 0.0
    upper_threshold: float = 0.0
    computed_tile_size: float = 0.0

    @property
    def outlier_count(self) -> int:
        return len(self.outlier_tile_keys)


@dataclass
class CalibrationRunSummary:
    grid_blueprint: GridBlueprint | None
    tiles: dict[str, TileCalibrationResults]
    step_test_settings: StepTestSettings
    metrics: RunMetrics = RunMetrics()
    outlier_analysis: OutlierAnalysis | None = None


# ---------------------------------------------------------------------------
# Live run state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TileRunState:
    tile: TileAddress
    status: TileStatus
    assignment: MirrorAssignment
    error: str | None = None
    warnings: tuple[str, ...] = ()
    metrics: TileCalibrationResults | None = None


# ---------------------------------------------------------------------------
# Pattern input
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PatternPoint:
    """A pattern spot in normalized ``[-1, 1]`` space."""

    id: str
    x: float
    y: float


@dataclass(frozen=True)
class Pattern:
    """Named set of pattern points, one per mirror at most."""

    id: str
    points: tuple[PatternPoint, ...] = ()


@dataclass(frozen=True)
class Waypoint:
    """An animation path waypoint in normalized ``[-1, 1]`` space."""

    id: str
    x: float
    y: float
