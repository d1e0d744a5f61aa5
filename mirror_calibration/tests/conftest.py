"""Shared fakes for the calibration test suites.

``FakeTransport`` stands in for the controller nodes: it records every
published payload, tracks commanded motor positions and (optionally)
answers each command with ``ack`` then ``done`` on the next loop
iterations.  ``SimulatedArray`` is a blob source that reports the
reflection of whichever single tile has its motors near home, displaced
linearly by the motor positions.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import pytest

from mirror_calibration.calibration import geometry
from mirror_calibration.calibration.models import (
    Bounds,
    GridSize,
    HomeOffset,
    MirrorAssignment,
    Point,
    StepTestSettings,
    StepVector,
    TileAddress,
    TileCalibrationResults,
    TilePosition,
    TileStatus,
)
from mirror_calibration.configs.loader import (
    CalibrationConfig,
    CommandTimeoutsConfig,
    DetectionConfig,
    MotorLimitsConfig,
    RunnerSettings,
)
from mirror_calibration.detection.sampler import BlobMeasurement, BlobObservation
from mirror_calibration.hardware.command_protocol import MotorRef
from mirror_calibration.persistence.profiles import CalibrationProfile


# ---------------------------------------------------------------------------
# Fake transport
# ---------------------------------------------------------------------------


class FakeTransport:
    """Records payloads and replies like a well-behaved controller."""

    def __init__(self, auto_reply: bool = True) -> None:
        self.adapter: Any = None
        self.auto_reply = auto_reply
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.positions: dict[str, int] = {}
        self.fail_home_macs: set[str] = set()
        self.reject_motors: set[str] = set()
        self.raise_on_publish = False

    async def publish(self, node_mac: str, payload: dict[str, Any]) -> None:
        if self.raise_on_publish:
            raise ConnectionError("link down")
        self.published.append((node_mac, payload))
        if self.auto_reply:
            asyncio.get_running_loop().call_soon(self._reply, node_mac, payload)

    def actions(self, action: str) -> list[tuple[str, dict[str, Any]]]:
        return [(mac, p) for mac, p in self.published if p["action"] == action]

    def reply(self, payload: dict[str, Any], status: str, **extra: Any) -> bool:
        message = {"cmd_id": payload["cmd_id"], "action": payload["action"], "status": status}
        message.update(extra)
        return self.adapter.handle_reply(message)

    def _reply(self, node_mac: str, payload: dict[str, Any]) -> None:
        self.reply(payload, "ack", result={"est_ms": 10})
        params = payload["params"]
        if payload["action"] == "HOME":
            if node_mac in self.fail_home_macs:
                self.reply(payload, "error", errors=[{"code": "HOMING", "reason": "endstop", "message": "endstop not triggered"}])
                return
            for key in self.positions:
                if key.startswith(f"{node_mac}:"):
                    self.positions[key] = 0
        else:
            key = f"{node_mac}:{params['target_ids'][0]}"
            if key in self.reject_motors:
                self.reply(payload, "error", errors=[{"code": "BUSY", "reason": "busy", "message": "motor busy"}])
                return
            self.positions[key] = params["position_steps"]
        self.reply(payload, "done", result={"actual_ms": 12})


# ---------------------------------------------------------------------------
# Simulated array
# ---------------------------------------------------------------------------


@dataclass
class SimTile:
    assignment: MirrorAssignment
    home: Point
    per_step: tuple[float, float] = (2.5e-4, -2.0e-4)
    size: float = 0.2
    visible: bool = True


@dataclass
class SimulatedArray:
    """Blob source driven by the fake transport's motor positions."""

    transport: FakeTransport
    tiles: dict[str, SimTile] = field(default_factory=dict)
    visible_range: int = 600
    broken: bool = False
    reads: int = 0

    def _position(self, motor: MotorRef | None) -> int:
        if motor is None:
            return 0
        return self.transport.positions.get(motor.key, 0)

    async def read(self, expected_position=None) -> BlobObservation | None:
        await asyncio.sleep(0)
        self.reads += 1
        if self.broken:
            raise RuntimeError("camera disconnected")
        in_frame = [
            tile for tile in self.tiles.values()
            if all(abs(self._position(m)) <= self.visible_range for m in tile.assignment.motors())
        ]
        if len(in_frame) != 1 or not in_frame[0].visible:
            return None
        tile = in_frame[0]
        px, py = tile.per_step
        return BlobObservation(
            x=tile.home.x + self._position(tile.assignment.x) * px,
            y=tile.home.y + self._position(tile.assignment.y) * py,
            size=tile.size,
            response=1.0,
            source_width=1920,
            source_height=1080,
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_config(**runner_overrides: Any) -> CalibrationConfig:
    runner = dict(
        delta_steps=400,
        dwell_s=0.0,
        sample_timeout_s=0.2,
        max_detection_retries=2,
        retry_delay_s=0.0,
    )
    runner.update(runner_overrides)
    return CalibrationConfig(
        timeouts=CommandTimeoutsConfig(ack_timeout_s=1.0, completion_timeout_s=1.0),
        detection=DetectionConfig(min_samples=3, capture_delay_s=0.0, poll_interval_s=0.001),
        runner=RunnerSettings(**runner),
    )


def two_by_two_assignments() -> dict[str, MirrorAssignment]:
    """Tiles on two controller nodes, both axes wired."""
    assignments = {}
    for row in range(2):
        mac = f"node-{row}"
        for col in range(2):
            assignments[f"{row}-{col}"] = MirrorAssignment(
                x=MotorRef(mac, col * 2), y=MotorRef(mac, col * 2 + 1),
            )
    return assignments


# Ideal centres of a 2x2 grid in a 1920x1080 frame with no gap.
IDEAL_CENTERS_2X2 = {
    "0-0": Point(-0.28125, -0.5),
    "0-1": Point(0.28125, -0.5),
    "1-0": Point(-0.28125, 0.5),
    "1-1": Point(0.28125, 0.5),
}


@pytest.fixture
def config() -> CalibrationConfig:
    return make_config()


@pytest.fixture
def grid() -> GridSize:
    return GridSize(2, 2)


@pytest.fixture
def assignments() -> dict[str, MirrorAssignment]:
    return two_by_two_assignments()


@pytest.fixture
def drift() -> Point:
    return Point(0.01, -0.02)


@pytest.fixture
def make_array(assignments, drift):
    """Factory building a simulated 2x2 array on a given transport."""

    def _make(transport: FakeTransport) -> SimulatedArray:
        tiles = {
            key: SimTile(
                assignment=assignments[key],
                home=Point(center.x + drift.x, center.y + drift.y),
            )
            for key, center in IDEAL_CENTERS_2X2.items()
        }
        return SimulatedArray(transport, tiles)

    return _make


@pytest.fixture
def config_factory():
    return make_config


@pytest.fixture
def transport_factory():
    return FakeTransport


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


def calibrated_tile(
    key: str,
    center: Point,
    *,
    per_step: tuple[float, float] = (2.5e-4, -2.0e-4),
    steps: tuple[int | None, int | None] = (0, 0),
    bounds: Bounds | None = None,
) -> TileCalibrationResults:
    """Completed tile sitting on *center* with default reach bounds."""
    row, col = (int(part) for part in key.split("-"))
    if bounds is None:
        bounds = geometry.compute_live_tile_bounds(
            center, StepVector(*per_step), MotorLimitsConfig(),
        )
    return TileCalibrationResults(
        tile=TileAddress(row, col),
        status=TileStatus.COMPLETED,
        home_measurement=BlobMeasurement(
            x=center.x, y=center.y, size=0.2, response=1.0, captured_at=0.0,
            source_width=1920, source_height=1080,
        ),
        home_offset=HomeOffset(0.0, 0.0),
        adjusted_home=TilePosition(center.x, center.y, steps[0], steps[1]),
        step_to_displacement=StepVector(*per_step),
        motor_reach_bounds=bounds,
        combined_bounds=bounds,
    )


def make_profile(
    tiles: dict[str, TileCalibrationResults] | None = None,
    *,
    grid: GridSize = GridSize(2, 2),
    **fields: Any,
) -> CalibrationProfile:
    if tiles is None:
        tiles = {key: calibrated_tile(key, center) for key, center in IDEAL_CENTERS_2X2.items()}
    return CalibrationProfile(
        name=fields.pop("name", "bench"),
        grid_size=grid,
        grid_blueprint=fields.pop(
            "grid_blueprint", geometry.build_ideal_blueprint(grid, 0.0, 1920, 1080),
        ),
        step_test_settings=StepTestSettings(400),
        tiles=tiles,
        **fields,
    )
