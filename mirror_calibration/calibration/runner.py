"""Calibration run orchestrator.

:class:`CalibrationRunner` is the side-effect executor around the pure
:func:`~mirror_calibration.calibration.state.transition` function.  It owns
the single :class:`RunnerState` of a run and drives the motion controller,
the detection sampler and the per-tile engine on the asyncio loop.

Run order:

1. **homing** - one HOME (``target_ids: "ALL"``) per controller node
2. **staging** - every tile with motors is moved aside concurrently
3. **measuring** - each eligible tile in row-major order
4. summary - adjusted blueprint, per-tile refinement
5. **aligning** - each completed tile is moved onto its adjusted home
6. **completed**

Modes:

``auto``
    Runs straight through; :meth:`pause` takes effect at the next
    checkpoint (between tiles and between sub-steps of a tile).
``step``
    Halts after every discrete action with ``awaiting_advance`` set until
    :meth:`advance` is called.  Pause/resume are no-ops.

Usage::

    runner = CalibrationRunner(adapter, sampler, cfg, GridSize(2, 3), assignments)
    runner.start()
    state = await runner.wait()
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Callable, Iterable, Mapping

from mirror_calibration.calibration import geometry
from mirror_calibration.calibration.command_log import CommandLog
from mirror_calibration.calibration.models import (
    CalibrationRunSummary,
    GridBlueprint,
    GridSize,
    MirrorAssignment,
    Point,
    StepTestSettings,
    TileAddress,
    TileCalibrationResults,
    TileRunState,
    TileStatus,
)
from mirror_calibration.calibration.staging import PoseTargets
from mirror_calibration.calibration.state import (
    Abort,
    Advance,
    AwaitAdvance,
    Fail,
    FatalRunError,
    Finish,
    Pause,
    PhaseEntered,
    Resume,
    RunAborted,
    RunEvent,
    RunMode,
    RunnerState,
    RunPhase,
    Start,
    SummaryUpdated,
    TileCompleted,
    TileFailed,
    TileStaged,
    TileStarted,
    transition,
)
from mirror_calibration.calibration.summary import (
    compute_calibration_summary,
    compute_run_metrics,
)
from mirror_calibration.calibration.tile_engine import MotionController, TileCalibrationEngine
from mirror_calibration.configs.loader import CalibrationConfig, RunnerSettings
from mirror_calibration.detection.sampler import DetectionSampler, DetectionUnavailable
from mirror_calibration.hardware.command_protocol import CommandError, MotorCommandAdapter
from mirror_calibration.utils.logging_config import log_context

logger = logging.getLogger(__name__)

NO_ELIGIBLE_TILES = (
    "No tiles with X/Y motors assigned. Assign motors to at least one tile "
    "before running calibration."
)


class CalibrationRunner:
    """Drive one calibration run over a grid of tiles.

    Parameters
    ----------
    adapter : MotorCommandAdapter
        Motor command channel.
    sampler : DetectionSampler
        Blob measurement gateway.
    config : CalibrationConfig
        Motor limits, camera size and default runner settings.
    grid : GridSize
        Array layout.
    assignments : Mapping[str, MirrorAssignment]
        Motors per tile key; missing keys mean no motors.
    settings : RunnerSettings, optional
        Overrides ``config.runner``.
    mode : RunMode or str
        ``"auto"`` or ``"step"``.
    selected : Iterable[str], optional
        Tile keys to calibrate; others are skipped.
    on_state_change : callable, optional
        Called with every new :class:`RunnerState`.
    command_log : CommandLog, optional
        Log to append to; a new one is created otherwise.
    """

    def __init__(
        self,
        adapter: MotorCommandAdapter,
        sampler: DetectionSampler,
        config: CalibrationConfig,
        grid: GridSize,
        assignments: Mapping[str, MirrorAssignment],
        *,
        settings: RunnerSettings | None = None,
        mode: RunMode | str = RunMode.AUTO,
        selected: Iterable[str] | None = None,
        on_state_change: Callable[[RunnerState], None] | None = None,
        command_log: CommandLog | None = None,
    ) -> None:
        self.adapter = adapter
        self.sampler = sampler
        self.config = config
        self.settings = settings or config.runner
        self.grid = grid
        self.assignments = dict(assignments)
        self.mode = RunMode(mode)
        self.selected = set(selected) if selected is not None else None
        self.on_state_change = on_state_change
        self.command_log = command_log or CommandLog()
        self.run_id = uuid.uuid4().hex[:8]

        self._state = RunnerState(mode=self.mode)
        self._changed = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._results: dict[str, TileCalibrationResults] = {}
        self._ideal: GridBlueprint | None = None
        self.motion = MotionController(
            adapter, self.command_log,
            guard=self._guard,
            phase=lambda: self._state.phase.value,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> RunnerState:
        return self._state

    def start(self) -> asyncio.Task:
        """Schedule the run on the running loop and return its task."""
        if self._task is not None and not self._task.done():
            raise RuntimeError("Calibration run already in progress")
        self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    def pause(self) -> None:
        self._dispatch(Pause())

    def resume(self) -> None:
        self._dispatch(Resume())

    def abort(self) -> None:
        """Stop issuing device commands; in-flight ones complete."""
        if self._dispatch(Abort()):
            logger.warning("Calibration run %s abort requested", self.run_id)

    def advance(self) -> None:
        self._dispatch(Advance())

    async def wait(self) -> RunnerState:
        """Wait for the run started with :meth:`start` to finish."""
        if self._task is None:
            return self._state
        return await self._task

    async def run(self) -> RunnerState:
        """Execute the run to completion and return the final state."""
        with log_context(run_id=self.run_id):
            try:
                await self._execute()
            except RunAborted:
                logger.warning("Calibration run aborted")
            except (FatalRunError, DetectionUnavailable) as exc:
                logger.error("Calibration run failed: %s", exc)
                self._dispatch(Fail(str(exc)))
            except Exception as exc:
                logger.exception("Calibration run crashed")
                self._dispatch(Fail(f"Unexpected error: {exc}"))
                raise
        return self._state

    # ------------------------------------------------------------------
    # State plumbing
    # ------------------------------------------------------------------

    def _dispatch(self, event: RunEvent) -> bool:
        new = transition(self._state, event)
        if new is self._state:
            return False
        previous = self._state
        self._state = new
        if new.phase != previous.phase:
            logger.info("Calibration phase %s -> %s", previous.phase.value, new.phase.value)
        self._changed.set()
        if self.on_state_change is not None:
            self.on_state_change(new)
        return True

    def _guard(self) -> None:
        if self._state.phase == RunPhase.ABORTED:
            raise RunAborted()

    async def _wait_for_change(self) -> None:
        self._changed.clear()
        await self._changed.wait()

    async def _checkpoint(self) -> None:
        """Block while paused or awaiting advance; raise if aborted."""
        while True:
            self._guard()
            if self._state.phase != RunPhase.PAUSED and not self._state.awaiting_advance:
                return
            await self._wait_for_change()

    async def _step(self, kind: str, tile: TileAddress | None = None) -> None:
        """End of a discrete action: halt in step mode, honour pause in auto."""
        if self.mode == RunMode.STEP:
            logger.info("Step '%s'%s done; awaiting advance", kind, f" ({tile.key})" if tile else "")
            self._dispatch(AwaitAdvance(kind))
        await self._checkpoint()

    async def _enter(self, phase: RunPhase) -> None:
        await self._checkpoint()
        self._dispatch(PhaseEntered(phase))

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def _initial_tiles(self) -> dict[str, TileRunState]:
        tiles: dict[str, TileRunState] = {}
        for tile in self.grid.tiles():
            assignment = self.assignments.get(tile.key, MirrorAssignment())
            eligible = assignment.motor_count > 0 and (
                self.selected is None or tile.key in self.selected
            )
            tiles[tile.key] = TileRunState(
                tile=tile,
                status=TileStatus.PENDING if eligible else TileStatus.SKIPPED,
                assignment=assignment,
            )
        return tiles

    def _summary(self) -> CalibrationRunSummary:
        return CalibrationRunSummary(
            grid_blueprint=self._ideal,
            tiles=dict(self._results),
            step_test_settings=StepTestSettings(self.settings.delta_steps, self.settings.dwell_s),
            metrics=compute_run_metrics(self._results),
        )

    async def _execute(self) -> None:
        self._results = {}
        tiles = self._initial_tiles()
        for key, entry in tiles.items():
            if entry.status == TileStatus.SKIPPED:
                self._results[key] = TileCalibrationResults(tile=entry.tile, status=TileStatus.SKIPPED)
        try:
            self._ideal = geometry.build_ideal_blueprint(
                self.grid,
                self.settings.grid_gap_normalized,
                self.config.camera.source_width,
                self.config.camera.source_height,
            )
        except ValueError as exc:
            raise FatalRunError(str(exc)) from exc

        if not self._dispatch(Start(tiles, self.mode, self._summary())):
            raise RuntimeError(f"Cannot start from phase {self._state.phase.value}")
        eligible = [entry for entry in tiles.values() if entry.status == TileStatus.PENDING]
        logger.info(
            "Calibration run %s started: %d/%d tile(s) eligible, mode=%s",
            self.run_id, len(eligible), len(tiles), self.mode.value,
        )
        if not eligible:
            raise FatalRunError(NO_ELIGIBLE_TILES)

        eligible, unhomed = await self._home_all(eligible)
        await self._step("home-all")

        # Unselected tiles with motors are homed too; they must be parked.
        parked = [
            entry for entry in tiles.values()
            if entry.status == TileStatus.SKIPPED
            and entry.assignment.motor_count > 0
            and not {m.node_mac for m in entry.assignment.motors()} & unhomed
        ]

        await self._enter(RunPhase.STAGING)
        eligible = await self._stage_all(eligible, parked)
        await self._step("stage-all")

        await self._enter(RunPhase.MEASURING)
        await self._measure_all(eligible, parked)

        summary = compute_calibration_summary(
            self._results, self.grid, self.settings, self.config.motor, self._ideal,
        )
        self._dispatch(SummaryUpdated(summary))

        await self._enter(RunPhase.ALIGNING)
        await self._align(summary)
        await self._step("align-grid")

        self._dispatch(Finish())
        metrics = summary.metrics
        logger.info(
            "Calibration run %s completed: %d completed, %d failed, %d skipped",
            self.run_id, metrics.completed_tiles, metrics.failed_tiles, metrics.skipped_tiles,
        )

    def _fail_tile(self, entry: TileRunState, error: str) -> None:
        result = TileCalibrationResults(tile=entry.tile, status=TileStatus.FAILED, error=error)
        self._results[entry.tile.key] = result
        self._dispatch(TileFailed(entry.tile.key, error, result))

    async def _home_all(
        self, eligible: list[TileRunState],
    ) -> tuple[list[TileRunState], set[str]]:
        """Home every controller; returns the tiles still usable and unhomed MACs."""
        motors = [m for a in self.assignments.values() for m in a.motors()]
        macs = {m.node_mac for m in motors}
        errors = await self.motion.home_nodes(macs)
        failed = {mac for mac, error in errors.items() if error is not None}
        if failed and failed == macs:
            raise FatalRunError(
                "Homing failed on every controller: "
                + "; ".join(f"{mac}: {errors[mac]}" for mac in sorted(failed))
            )
        self.motion.reset_positions(m for m in motors if m.node_mac not in failed)

        remaining = []
        for entry in eligible:
            bad = {m.node_mac for m in entry.assignment.motors()} & failed
            if bad:
                self._fail_tile(entry, f"Homing failed: {errors[sorted(bad)[0]]}")
            else:
                remaining.append(entry)
        return remaining, failed

    async def _stage_all(
        self, eligible: list[TileRunState], parked: list[TileRunState],
    ) -> list[TileRunState]:
        engine = self._engine()
        self._guard()
        staged = eligible + parked
        outcomes = await asyncio.gather(
            *(engine.move_aside(entry.tile, entry.assignment) for entry in staged),
            return_exceptions=True,
        )
        remaining = []
        for index, (entry, outcome) in enumerate(zip(staged, outcomes)):
            if isinstance(outcome, RunAborted):
                raise outcome
            if isinstance(outcome, CommandError):
                if index < len(eligible):
                    self._fail_tile(entry, f"Failed to move tile aside: {outcome}")
                else:
                    logger.warning("Could not park skipped tile %s: %s", entry.tile.key, outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            elif index < len(eligible):
                self._dispatch(TileStaged(entry.tile.key))
                remaining.append(entry)
        return remaining

    def _engine(self) -> TileCalibrationEngine:
        return TileCalibrationEngine(
            self.motion,
            self.sampler,
            self.config,
            self.settings,
            self.grid,
            self._ideal,
            checkpoint=self._step,
        )

    def _expected_position(self, tile: TileAddress) -> tuple[Point, float]:
        measured = [
            (entry.tile, Point(entry.home_measurement.x, entry.home_measurement.y))
            for entry in self._results.values()
            if entry.status == TileStatus.COMPLETED and entry.home_measurement is not None
        ]
        expected = geometry.estimate_expected_position(self._ideal, tile, measured)
        if measured:
            return expected, self.settings.max_blob_distance_threshold
        return expected, self.settings.first_tile_tolerance

    async def _measure_all(
        self, eligible: list[TileRunState], parked: list[TileRunState],
    ) -> None:
        engine = self._engine()
        for index, entry in enumerate(eligible):
            await self._checkpoint()
            tile = entry.tile
            with log_context(tile=tile.key):
                # Siblings not yet measured must stay out of the frame.
                for sibling in eligible[index + 1:] + parked:
                    try:
                        await engine.move_aside(sibling.tile, sibling.assignment)
                    except CommandError as exc:
                        logger.warning("Could not keep tile %s aside: %s", sibling.tile.key, exc)

                self._dispatch(TileStarted(tile))
                expected, tolerance = self._expected_position(tile)
                result = await engine.calibrate(tile, entry.assignment, expected, tolerance)
                self._results[tile.key] = result
                if result.status == TileStatus.COMPLETED:
                    self._dispatch(TileCompleted(tile.key, result))
                else:
                    self._dispatch(TileFailed(tile.key, result.error or "failed", result))
                self._dispatch(SummaryUpdated(compute_calibration_summary(
                    self._results, self.grid, self.settings, self.config.motor, self._ideal,
                )))

    async def _align(self, summary: CalibrationRunSummary) -> None:
        for key, result in summary.tiles.items():
            if result.status != TileStatus.COMPLETED or result.adjusted_home is None:
                continue
            await self._checkpoint()
            assignment = self.assignments.get(key, MirrorAssignment())
            home = result.adjusted_home
            pose = PoseTargets(home.steps_x or 0, home.steps_y or 0)
            try:
                await self.motion.move_tile(result.tile, assignment, pose, hint="align")
            except CommandError as exc:
                logger.warning("Alignment of tile %s failed: %s", key, exc)
