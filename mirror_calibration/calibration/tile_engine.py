"""Per-tile calibration sequence and cached motor motion.

:class:`MotionController` wraps the command adapter with a cache of the
last commanded position of every motor (moves to the cached position are
skipped), an abort guard checked before every command, and command-log
bookkeeping.

:class:`TileCalibrationEngine` measures one tile:

1. move its axes to home (step 0), dwell and sample the home position
2. for each axis with a motor: jog by the signed delta, dwell, sample,
   move back to home
3. derive step-to-displacement, motor reach bounds and the provisional
   home offset against the ideal blueprint
4. move the tile back aside so it no longer occludes the camera

Command and detection failures are tile-scoped: they produce a ``failed``
result.  :class:`~mirror_calibration.detection.sampler.DetectionUnavailable`
and :class:`~mirror_calibration.calibration.state.RunAborted` propagate.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable

from mirror_calibration.calibration import geometry
from mirror_calibration.calibration.command_log import CommandLog
from mirror_calibration.calibration.models import (
    AXES,
    GridBlueprint,
    GridSize,
    MirrorAssignment,
    Point,
    TileAddress,
    TileCalibrationResults,
    TileStatus,
)
from mirror_calibration.calibration.staging import HOME_POSE, PoseTargets, compute_pose_targets
from mirror_calibration.calibration.step_test import (
    AxisStepTestResult,
    combine_step_test_results,
    compute_axis_step_test_result,
    get_axis_step_delta,
    is_usable_per_step,
)
from mirror_calibration.configs.loader import CalibrationConfig, RunnerSettings
from mirror_calibration.detection.sampler import (
    BlobMeasurement,
    DetectionError,
    DetectionSampler,
    DetectionUnavailable,
)
from mirror_calibration.hardware.command_protocol import (
    CommandError,
    CommandOutcome,
    MotorCommandAdapter,
    MotorRef,
    clamp_target,
)

logger = logging.getLogger(__name__)

Checkpoint = Callable[[str, TileAddress], Awaitable[None]]


class TileCalibrationFailed(Exception):
    """Internal signal: the tile cannot be calibrated; run continues."""

    pass


# ---------------------------------------------------------------------------
# Motion
# ---------------------------------------------------------------------------


class MotionController:
    """Cached, guarded, logged motor moves.

    Parameters
    ----------
    adapter : MotorCommandAdapter
        Command channel.
    log : CommandLog
        Receives one entry per issued command and one per outcome.
    guard : callable
        Called before every command; raises to stop issuing (abort).
    phase : callable
        Returns the current phase name for log entries.
    """

    def __init__(
        self,
        adapter: MotorCommandAdapter,
        log: CommandLog,
        guard: Callable[[], None] = lambda: None,
        phase: Callable[[], str | None] = lambda: None,
    ) -> None:
        self.adapter = adapter
        self.log = log
        self.guard = guard
        self.phase = phase
        self.positions: dict[str, int] = {}

    def reset_positions(self, motors: Iterable[MotorRef], value: int = 0) -> None:
        for motor in motors:
            self.positions[motor.key] = value

    async def move_axis(
        self,
        motor: MotorRef,
        target: float,
        *,
        tile: TileAddress | None = None,
        hint: str = "move",
    ) -> CommandOutcome | None:
        """Move one motor; ``None`` when it already sits at the target."""
        clamp = clamp_target(target, self.adapter.limits)
        if self.positions.get(motor.key) == clamp.target:
            return None
        self.guard()
        tile_key = tile.key if tile else None
        group = f"{motor.key}@{len(self.log) + 1}"
        self.log.record(
            hint, phase=self.phase(), tile=tile_key, group=group,
            motor=motor.key, action="MOVE", position_steps=clamp.target,
            clamped=clamp.clamped,
        )
        try:
            outcome = await self.adapter.move(motor, clamp.target)
        except CommandError as exc:
            self.positions.pop(motor.key, None)
            self.log.record(
                f"{hint}:error", phase=self.phase(), tile=tile_key, group=group,
                motor=motor.key, cmd_id=exc.cmd_id, error=str(exc),
            )
            raise
        self.positions[motor.key] = clamp.target
        self.log.record(
            f"{hint}:done", phase=self.phase(), tile=tile_key, group=group,
            motor=motor.key, cmd_id=outcome.cmd_id,
            actual_ms=outcome.actual_duration_ms,
        )
        return outcome

    async def move_tile(
        self,
        tile: TileAddress,
        assignment: MirrorAssignment,
        pose: PoseTargets,
        hint: str = "move",
    ) -> None:
        """Move every assigned axis of *tile*; X first, then Y."""
        for axis in AXES:
            motor = assignment.motor(axis)
            if motor is not None:
                await self.move_axis(motor, getattr(pose, axis), tile=tile, hint=hint)

    async def home_nodes(self, node_macs: Iterable[str]) -> dict[str, Exception | None]:
        """HOME every actuator on each node; per-node error or ``None``."""
        results: dict[str, Exception | None] = {}
        macs = sorted(set(node_macs))
        self.guard()
        for mac in macs:
            self.log.record("home-all", phase=self.phase(), group=f"home:{mac}", node_mac=mac)
        outcomes = await _gather_settled(self.adapter.home_all([mac]) for mac in macs)
        for mac, outcome in zip(macs, outcomes):
            error = outcome if isinstance(outcome, Exception) else None
            results[mac] = error
            self.log.record(
                "home-all:error" if error else "home-all:done",
                phase=self.phase(), group=f"home:{mac}", node_mac=mac,
                error=str(error) if error else None,
            )
        return results


async def _gather_settled(coros: Iterable[Awaitable]) -> list:
    return await asyncio.gather(*coros, return_exceptions=True)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


async def _no_checkpoint(step: str, tile: TileAddress) -> None:
    return None


class TileCalibrationEngine:
    """Measure one tile at a time.

    Parameters
    ----------
    motion : MotionController
        Shared motion cache for the run.
    sampler : DetectionSampler
        Blob measurement gateway.
    config : CalibrationConfig
        Motor limits are used for bounds and targets.
    settings : RunnerSettings
        Delta steps, dwell, rotation and staging strategy.
    grid : GridSize
        Array layout.
    blueprint : GridBlueprint
        Ideal blueprint for the provisional home offset.
    checkpoint : callable, optional
        Awaited after each discrete action (``measure-home``,
        ``step-test-x``, ``step-test-y``); may block (pause / step mode)
        or raise to abort.
    """

    def __init__(
        self,
        motion: MotionController,
        sampler: DetectionSampler,
        config: CalibrationConfig,
        settings: RunnerSettings,
        grid: GridSize,
        blueprint: GridBlueprint,
        checkpoint: Checkpoint = _no_checkpoint,
    ) -> None:
        self.motion = motion
        self.sampler = sampler
        self.limits = config.motor
        self.settings = settings
        self.grid = grid
        self.blueprint = blueprint
        self.checkpoint = checkpoint

    def aside_pose(self, tile: TileAddress) -> PoseTargets:
        return compute_pose_targets(
            tile, "aside", self.grid, self.settings.array_rotation,
            self.settings.staging_position, self.limits,
        )

    async def move_aside(self, tile: TileAddress, assignment: MirrorAssignment) -> None:
        await self.motion.move_tile(tile, assignment, self.aside_pose(tile), hint="stage")

    async def calibrate(
        self,
        tile: TileAddress,
        assignment: MirrorAssignment,
        expected_position: Point | None = None,
        tolerance: float | None = None,
    ) -> TileCalibrationResults:
        """Run the full measurement sequence for *tile*.

        Returns
        -------
        TileCalibrationResults
            ``completed`` or ``failed`` (with ``error`` set).
        """
        fields: dict = {}
        try:
            await self._measure(tile, assignment, expected_position, tolerance, fields)
        except TileCalibrationFailed as exc:
            logger.warning("Tile %s failed: %s", tile.key, exc)
            warnings = await self._park_after_failure(tile, assignment)
            return TileCalibrationResults(
                tile=tile, status=TileStatus.FAILED, error=str(exc), warnings=warnings, **fields,
            )

        result = TileCalibrationResults(tile=tile, status=TileStatus.COMPLETED, **fields)
        logger.info(
            "Tile %s calibrated: home=(%.4f, %.4f) per_step=(%s, %s)",
            tile.key, result.home_measurement.x, result.home_measurement.y,
            _fmt(result.step_to_displacement.x), _fmt(result.step_to_displacement.y),
        )
        return result

    async def _measure(
        self,
        tile: TileAddress,
        assignment: MirrorAssignment,
        expected_position: Point | None,
        tolerance: float | None,
        fields: dict,
    ) -> None:
        try:
            await self.motion.move_tile(tile, assignment, HOME_POSE, hint="home")
        except CommandError as exc:
            raise TileCalibrationFailed(f"Failed to move tile to home: {exc}") from exc

        expected = (expected_position.x, expected_position.y) if expected_position else None
        try:
            home = await self.sampler.sample(
                settle_delay_s=self.settings.dwell_s,
                expected_position=expected,
                tolerance=tolerance if expected else None,
            )
        except DetectionUnavailable:
            raise
        except DetectionError as exc:
            await self.checkpoint("measure-home", tile)
            raise TileCalibrationFailed(
                f"Unable to detect blob at home position: {exc}"
            ) from exc
        fields["home_measurement"] = home
        await self.checkpoint("measure-home", tile)

        probes: dict[str, AxisStepTestResult] = {}
        for axis in AXES:
            motor = assignment.motor(axis)
            if motor is None:
                continue
            probes[axis] = await self._probe_axis(tile, axis, motor, home)
            await self.checkpoint(f"step-test-{axis}", tile)

        combined = combine_step_test_results(probes.get("x"), probes.get("y"))
        fields["step_to_displacement"] = combined.step_to_displacement
        fields["size_delta_at_step_test"] = combined.size_delta_at_step_test

        home_point = Point(home.x, home.y)
        movable = (assignment.x is not None, assignment.y is not None)
        reach = geometry.compute_live_tile_bounds(
            home_point, combined.step_to_displacement, self.limits, movable,
        )
        fields["motor_reach_bounds"] = reach
        fields["combined_bounds"] = reach
        fields["footprint_bounds"] = geometry.tile_footprint_bounds(
            self.blueprint, tile.row, tile.col,
        )
        fields["home_offset"] = geometry.compute_home_offset(
            home_point, geometry.tile_center(self.blueprint, tile),
        )

        try:
            await self.move_aside(tile, assignment)
        except CommandError as exc:
            raise TileCalibrationFailed(f"Failed to move tile aside: {exc}") from exc

    async def _probe_axis(
        self,
        tile: TileAddress,
        axis: str,
        motor: MotorRef,
        home: BlobMeasurement,
    ) -> AxisStepTestResult:
        delta = get_axis_step_delta(
            axis, self.settings.delta_steps, self.settings.array_rotation, self.limits,
        )
        if delta is None:
            raise TileCalibrationFailed(f"Step test {axis.upper()}: delta steps must be positive")
        label = axis.upper()

        try:
            await self.motion.move_axis(motor, delta, tile=tile, hint=f"step-test-{axis}")
            try:
                step = await self.sampler.sample(settle_delay_s=self.settings.dwell_s)
            finally:
                await self.motion.move_axis(motor, 0, tile=tile, hint=f"step-test-{axis}:return")
        except DetectionUnavailable:
            raise
        except DetectionError as exc:
            raise TileCalibrationFailed(f"Step test {label} failed: {exc}") from exc
        except CommandError as exc:
            raise TileCalibrationFailed(f"Step test {label} move failed: {exc}") from exc

        probe = compute_axis_step_test_result(home, step, axis, delta)
        if not is_usable_per_step(probe.per_step):
            raise TileCalibrationFailed(
                f"Axis {label} did not move the reflection "
                f"(displacement {probe.displacement:.5f} over {delta} steps)"
            )
        logger.debug(
            "Tile %s axis %s: displacement=%.5f per_step=%.3e size_delta=%s",
            tile.key, label, probe.displacement, probe.per_step, _fmt(probe.size_delta),
        )
        return probe

    async def _park_after_failure(
        self,
        tile: TileAddress,
        assignment: MirrorAssignment,
    ) -> tuple[str, ...]:
        try:
            await self.move_aside(tile, assignment)
        except CommandError as exc:
            logger.warning("Tile %s could not be parked: %s", tile.key, exc)
            return (f"Failed to move tile aside: {exc}",)
        return ()


def _fmt(value: float | None) -> str:
    return "n/a" if value is None else f"{value:.3e}"
