"""Calibration run state machine.

The run state is an immutable :class:`RunnerState`; every change goes
through the pure :func:`transition` function with one of the event
dataclasses below.  Events that are not legal in the current state return
the state unchanged (the same object), so callers can detect no-ops with
``is``.

Phases::

    idle -> homing -> staging -> measuring -> aligning -> completed
                 \\________ paused (auto mode) ________/
    any busy/paused phase -> aborted | error
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Mapping, Union

from mirror_calibration.calibration.models import (
    CalibrationRunSummary,
    TileAddress,
    TileCalibrationResults,
    TileRunState,
    TileStatus,
)


class RunPhase(str, Enum):
    IDLE = "idle"
    HOMING = "homing"
    STAGING = "staging"
    MEASURING = "measuring"
    ALIGNING = "aligning"
    PAUSED = "paused"
    ABORTED = "aborted"
    COMPLETED = "completed"
    ERROR = "error"


class RunMode(str, Enum):
    AUTO = "auto"
    STEP = "step"


BUSY_PHASES = frozenset({RunPhase.HOMING, RunPhase.STAGING, RunPhase.MEASURING, RunPhase.ALIGNING})
TERMINAL_PHASES = frozenset({RunPhase.IDLE, RunPhase.ABORTED, RunPhase.COMPLETED, RunPhase.ERROR})


# ---------------------------------------------------------------------------
# Run control exceptions
# ---------------------------------------------------------------------------


class RunAborted(Exception):
    """The run was aborted; no further device commands may be issued."""

    pass


class FatalRunError(Exception):
    """Run-scoped failure that ends the run in the ``error`` phase."""

    pass


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunProgress:
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def done(self) -> int:
        return self.completed + self.failed + self.skipped


@dataclass(frozen=True)
class RunnerState:
    """Snapshot of one calibration run."""

    phase: RunPhase = RunPhase.IDLE
    mode: RunMode = RunMode.AUTO
    active_tile: TileAddress | None = None
    progress: RunProgress = RunProgress()
    tiles: Mapping[str, TileRunState] = field(default_factory=dict)
    summary: CalibrationRunSummary | None = None
    error: str | None = None
    awaiting_advance: bool = False
    pending_step: str | None = None
    resume_phase: RunPhase | None = None

    @property
    def is_busy(self) -> bool:
        return self.phase in BUSY_PHASES

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Start:
    tiles: Mapping[str, TileRunState]
    mode: RunMode = RunMode.AUTO
    summary: CalibrationRunSummary | None = None


@dataclass(frozen=True)
class PhaseEntered:
    phase: RunPhase


@dataclass(frozen=True)
class TileStarted:
    tile: TileAddress


@dataclass(frozen=True)
class TileStaged:
    key: str


@dataclass(frozen=True)
class TileCompleted:
    key: str
    results: TileCalibrationResults


@dataclass(frozen=True)
class TileFailed:
    key: str
    error: str
    results: TileCalibrationResults | None = None


@dataclass(frozen=True)
class SummaryUpdated:
    summary: CalibrationRunSummary


@dataclass(frozen=True)
class Pause:
    pass


@dataclass(frozen=True)
class Resume:
    pass


@dataclass(frozen=True)
class Abort:
    pass


@dataclass(frozen=True)
class AwaitAdvance:
    step: str


@dataclass(frozen=True)
class Advance:
    pass


@dataclass(frozen=True)
class Fail:
    error: str


@dataclass(frozen=True)
class Finish:
    pass


RunEvent = Union[
    Start, PhaseEntered, TileStarted, TileStaged, TileCompleted, TileFailed,
    SummaryUpdated, Pause, Resume, Abort, AwaitAdvance, Advance, Fail, Finish,
]


# ---------------------------------------------------------------------------
# Transition
# ---------------------------------------------------------------------------


def _with_tile(state: RunnerState, key: str, **changes) -> RunnerState | None:
    current = state.tiles.get(key)
    if current is None:
        return None
    tiles = dict(state.tiles)
    tiles[key] = replace(current, **changes)
    return replace(state, tiles=tiles)


def _active(state: RunnerState) -> bool:
    return state.is_busy or state.phase == RunPhase.PAUSED


def transition(state: RunnerState, event: RunEvent) -> RunnerState:
    """Apply *event* to *state*.

    Returns a new state, or *state* itself when the event does not apply.
    """
    if isinstance(event, Start):
        if not state.is_terminal:
            return state
        statuses = [tile.status for tile in event.tiles.values()]
        return RunnerState(
            phase=RunPhase.HOMING,
            mode=event.mode,
            progress=RunProgress(
                total=len(statuses),
                skipped=statuses.count(TileStatus.SKIPPED),
            ),
            tiles=dict(event.tiles),
            summary=event.summary,
        )

    if isinstance(event, PhaseEntered):
        if event.phase not in BUSY_PHASES:
            return state
        if state.phase == RunPhase.PAUSED:
            return replace(state, resume_phase=event.phase)
        if not state.is_busy or state.phase == event.phase:
            return state
        return replace(state, phase=event.phase)

    if isinstance(event, TileStarted):
        if not _active(state):
            return state
        updated = _with_tile(state, event.tile.key, status=TileStatus.MEASURING, error=None)
        if updated is None:
            return state
        return replace(updated, active_tile=event.tile)

    if isinstance(event, TileStaged):
        if not _active(state):
            return state
        return _with_tile(state, event.key, status=TileStatus.STAGED) or state

    if isinstance(event, (TileCompleted, TileFailed)):
        if not _active(state):
            return state
        current = state.tiles.get(event.key)
        if current is None or current.status in (
            TileStatus.COMPLETED, TileStatus.FAILED, TileStatus.SKIPPED,
        ):
            return state
        if isinstance(event, TileCompleted):
            updated = _with_tile(
                state, event.key,
                status=TileStatus.COMPLETED,
                warnings=tuple(event.results.warnings),
                metrics=event.results,
            )
            progress = replace(state.progress, completed=state.progress.completed + 1)
        else:
            updated = _with_tile(
                state, event.key,
                status=TileStatus.FAILED,
                error=event.error,
                metrics=event.results,
            )
            progress = replace(state.progress, failed=state.progress.failed + 1)
        active = state.active_tile
        if active is not None and active.key == event.key:
            active = None
        return replace(updated, progress=progress, active_tile=active)

    if isinstance(event, SummaryUpdated):
        if state.phase == RunPhase.IDLE:
            return state
        return replace(state, summary=event.summary)

    if isinstance(event, Pause):
        if state.mode != RunMode.AUTO or not state.is_busy:
            return state
        return replace(state, phase=RunPhase.PAUSED, resume_phase=state.phase)

    if isinstance(event, Resume):
        if state.phase != RunPhase.PAUSED:
            return state
        return replace(
            state,
            phase=state.resume_phase or RunPhase.MEASURING,
            resume_phase=None,
        )

    if isinstance(event, Abort):
        if not _active(state):
            return state
        return replace(
            state,
            phase=RunPhase.ABORTED,
            active_tile=None,
            awaiting_advance=False,
            pending_step=None,
            resume_phase=None,
        )

    if isinstance(event, AwaitAdvance):
        if state.mode != RunMode.STEP or not state.is_busy:
            return state
        return replace(state, awaiting_advance=True, pending_step=event.step)

    if isinstance(event, Advance):
        if not state.awaiting_advance:
            return state
        return replace(state, awaiting_advance=False, pending_step=None)

    if isinstance(event, Fail):
        if state.phase in (RunPhase.ABORTED, RunPhase.COMPLETED, RunPhase.ERROR):
            return state
        return replace(
            state,
            phase=RunPhase.ERROR,
            error=event.error,
            active_tile=None,
            awaiting_advance=False,
            pending_step=None,
            resume_phase=None,
        )

    if isinstance(event, Finish):
        if not state.is_busy:
            return state
        return replace(state, phase=RunPhase.COMPLETED, active_tile=None, awaiting_advance=False)

    return state
