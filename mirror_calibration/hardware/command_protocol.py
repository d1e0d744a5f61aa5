"""Motor command protocol over an opaque publish/subscribe transport.

Handles:
    - MOVE / HOME command issuance with unique correlation ids
    - Acknowledge / done / error reply correlation by ``cmd_id``
    - One timeout timer per in-flight command (ack window, then
      completion window once acknowledged)
    - Absolute step-target clamping to the configured travel range
    - Bidirectional "nudge" target selection with headroom checks

Wire format (JSON objects, one per message)::

    publish  {"cmd_id": "...", "action": "MOVE",
              "params": {"target_ids": [0], "position_steps": 400}}
    replies  {"cmd_id": "...", "action": "MOVE", "status": "ack",
              "result": {"est_ms": 250}}
             {"cmd_id": "...", "action": "MOVE", "status": "done",
              "result": {"actual_ms": 275}}
             {"cmd_id": "...", "action": "MOVE", "status": "error",
              "errors": [{"code": "BUSY", "reason": "...", "message": "..."}]}

The transport is any object with an ``async publish(node_mac, payload)``
coroutine; replies are fed back through :meth:`MotorCommandAdapter.handle_reply`.
Motion commands are never retried.  Timeouts come from
``CalibrationConfig.timeouts``.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Protocol

from mirror_calibration.configs.loader import CommandTimeoutsConfig, MotorLimitsConfig

logger = logging.getLogger(__name__)

HOME_ALL_TARGET = "ALL"


class CommandAction(str, Enum):
    """Device actions understood by the motor controllers."""

    MOVE = "MOVE"
    HOME = "HOME"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class CommandError(Exception):
    """Base exception for all motor command failures."""

    def __init__(self, message: str, cmd_id: str | None = None) -> None:
        super().__init__(message)
        self.cmd_id = cmd_id


class CommandTimeout(CommandError):
    """No acknowledgement or completion arrived within its window."""

    def __init__(self, kind: str, cmd_id: str) -> None:
        super().__init__(f"Command {cmd_id} failed: {kind}", cmd_id)
        self.kind = kind


class CommandRejected(CommandError):
    """The device replied with ``status: error``."""

    def __init__(
        self,
        cmd_id: str,
        code: str | None = None,
        reason: str | None = None,
        message: str | None = None,
    ) -> None:
        super().__init__(message or f"Command {cmd_id} failed: error", cmd_id)
        self.kind = "error"
        self.code = code
        self.reason = reason


class CommandCancelled(CommandError):
    """The command was withdrawn locally before it settled."""

    def __init__(self, cmd_id: str, reason: str = "cancelled") -> None:
        super().__init__(f"Command {cmd_id} {reason}", cmd_id)
        self.kind = "cancelled"


class InsufficientHeadroom(ValueError):
    """Neither nudge direction fits inside the travel range."""

    pass


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MotorRef:
    """One physical actuator: controller node MAC plus channel index."""

    node_mac: str
    motor_index: int

    @property
    def key(self) -> str:
        """Stable ``mac:index`` identity used for caching and plan keys."""
        return f"{self.node_mac}:{self.motor_index}"


@dataclass(frozen=True)
class ClampResult:
    """Outcome of clamping a requested absolute step target."""

    requested: float
    target: int
    clamped: bool


@dataclass(frozen=True)
class NudgeTargets:
    """Probe move out and back, both inside the travel range."""

    outbound_target: int
    direction: int
    return_target: int


@dataclass
class CommandOutcome:
    """Settled command: acknowledgement and completion details."""

    cmd_id: str
    action: str
    node_mac: str | None
    status: str
    estimated_duration_ms: float | None = None
    actual_duration_ms: float | None = None
    clamped: bool = False
    responses: list[dict[str, Any]] = field(default_factory=list)


class CommandTransport(Protocol):
    """Opaque channel delivering command payloads to one controller node."""

    async def publish(self, node_mac: str, payload: dict[str, Any]) -> None: ...


# ---------------------------------------------------------------------------
# Step math
# ---------------------------------------------------------------------------


def round_steps(value: float) -> int:
    """Round to whole steps; non-finite input maps to 0."""
    if not math.isfinite(value):
        return 0
    return int(round(value))


def clamp_steps(value: float, limits: MotorLimitsConfig) -> float:
    """Clamp *value* into ``[min_position_steps, max_position_steps]``."""
    return min(limits.max_position_steps, max(limits.min_position_steps, value))


def clamp_target(value: float, limits: MotorLimitsConfig) -> ClampResult:
    """Round and clamp an absolute target, reporting whether it moved."""
    rounded = round_steps(value)
    target = int(clamp_steps(rounded, limits))
    return ClampResult(requested=value, target=target, clamped=target != rounded)


def compute_nudge_targets(
    current_position: float,
    delta: float,
    min_steps: int,
    max_steps: int,
) -> NudgeTargets:
    """Pick a probe direction that has room for *delta* steps.

    Positive is preferred when it fits and either negative does not fit or
    the actuator sits at or below zero; otherwise negative is used.

    Parameters
    ----------
    current_position : float
        Present absolute position in steps.
    delta : float
        Probe distance in steps (magnitude).
    min_steps, max_steps : int
        Travel range.

    Returns
    -------
    NudgeTargets
        Clamped outbound target, chosen direction, and clamped return target.

    Raises
    ------
    InsufficientHeadroom
        If ``current + delta > max`` and ``current - delta < min``.
    """
    can_positive = current_position + delta <= max_steps
    can_negative = current_position - delta >= min_steps
    if not can_positive and not can_negative:
        raise InsufficientHeadroom(
            f"No room for a {delta}-step nudge from {current_position} "
            f"within [{min_steps}, {max_steps}]"
        )
    if can_positive and (not can_negative or current_position <= 0):
        direction = 1
    else:
        direction = -1

    def _clamp(value: float) -> int:
        return int(min(max_steps, max(min_steps, round_steps(value))))

    return NudgeTargets(
        outbound_target=_clamp(current_position + direction * delta),
        direction=direction,
        return_target=_clamp(current_position),
    )


# ---------------------------------------------------------------------------
# In-flight request table
# ---------------------------------------------------------------------------


@dataclass
class _PendingCommand:
    cmd_id: str
    action: str
    node_mac: str | None
    future: asyncio.Future
    issued_at: float
    timer: asyncio.TimerHandle | None = None
    acked: bool = False
    estimated_duration_ms: float | None = None
    responses: list[dict[str, Any]] = field(default_factory=list)


class PendingCommandTracker:
    """Table of in-flight commands keyed by correlation id.

    Each entry owns exactly one timer handle: the acknowledgement window is
    armed at registration and replaced by the completion window when the
    ``ack`` reply arrives.  Entries leave the table when they settle.

    Parameters
    ----------
    ack_timeout_s : float
        Seconds allowed between publish and ``ack``.
    completion_timeout_s : float
        Seconds allowed between ``ack`` and ``done``.
    """

    def __init__(self, ack_timeout_s: float, completion_timeout_s: float) -> None:
        self.ack_timeout_s = ack_timeout_s
        self.completion_timeout_s = completion_timeout_s
        self._entries: dict[str, _PendingCommand] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, cmd_id: object) -> bool:
        return cmd_id in self._entries

    def register(
        self,
        cmd_id: str,
        action: str,
        node_mac: str | None = None,
        expect_ack: bool = True,
    ) -> asyncio.Future:
        """Add a command and return the future that settles with it.

        Must be called from within the running event loop.

        Raises
        ------
        ValueError
            If *cmd_id* is already in flight.
        """
        if cmd_id in self._entries:
            raise ValueError(f"Command id {cmd_id} is already pending")
        loop = asyncio.get_running_loop()
        entry = _PendingCommand(
            cmd_id=cmd_id,
            action=action,
            node_mac=node_mac,
            future=loop.create_future(),
            issued_at=time.monotonic(),
        )
        self._entries[cmd_id] = entry
        if expect_ack:
            self._arm(entry, self.ack_timeout_s, "ack-timeout")
        else:
            entry.acked = True
            self._arm(entry, self.completion_timeout_s, "completion-timeout")
        return entry.future

    def handle_reply(self, message: dict[str, Any]) -> bool:
        """Route a device reply to its pending command.

        Returns
        -------
        bool
            ``True`` if the reply matched an in-flight command.
        """
        cmd_id = message.get("cmd_id")
        entry = self._entries.get(cmd_id) if isinstance(cmd_id, str) else None
        if entry is None:
            logger.debug("Ignoring reply for unknown command %s", cmd_id)
            return False

        entry.responses.append(message)
        status = message.get("status")
        result = message.get("result") or {}

        if status == "ack":
            entry.acked = True
            entry.estimated_duration_ms = _finite_or_none(result.get("est_ms"))
            self._arm(entry, self.completion_timeout_s, "completion-timeout")
        elif status == "done":
            self._settle(entry)
            entry.future.set_result(
                CommandOutcome(
                    cmd_id=entry.cmd_id,
                    action=entry.action,
                    node_mac=entry.node_mac,
                    status="done",
                    estimated_duration_ms=entry.estimated_duration_ms,
                    actual_duration_ms=_finite_or_none(result.get("actual_ms")),
                    responses=list(entry.responses),
                )
            )
        elif status == "error":
            errors = message.get("errors") or []
            first = errors[0] if errors and isinstance(errors[0], dict) else {}
            self._settle(entry)
            entry.future.set_exception(
                CommandRejected(
                    entry.cmd_id,
                    code=first.get("code"),
                    reason=first.get("reason"),
                    message=first.get("message"),
                )
            )
        else:
            logger.warning(
                "Unrecognised status %r for command %s", status, entry.cmd_id,
            )
        return True

    def cancel(self, cmd_id: str, reason: str = "cancelled") -> bool:
        """Reject one pending command locally."""
        entry = self._entries.get(cmd_id)
        if entry is None:
            return False
        self._settle(entry)
        entry.future.set_exception(CommandCancelled(cmd_id, reason))
        return True

    def dispose(self, reason: str = "disposed") -> int:
        """Reject every pending command; returns how many were dropped."""
        ids = list(self._entries)
        for cmd_id in ids:
            self.cancel(cmd_id, reason)
        return len(ids)

    # -- internals ---------------------------------------------------------

    def _arm(self, entry: _PendingCommand, delay_s: float, kind: str) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
        loop = asyncio.get_running_loop()
        entry.timer = loop.call_later(delay_s, self._on_timeout, entry.cmd_id, kind)

    def _on_timeout(self, cmd_id: str, kind: str) -> None:
        entry = self._entries.get(cmd_id)
        if entry is None:
            return
        logger.warning(
            "Command %s (%s -> %s) timed out: %s",
            cmd_id, entry.action, entry.node_mac, kind,
        )
        self._settle(entry)
        entry.future.set_exception(CommandTimeout(kind, cmd_id))

    def _settle(self, entry: _PendingCommand) -> None:
        self._entries.pop(entry.cmd_id, None)
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None


def _finite_or_none(value: Any) -> float | None:
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    return None


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class MotorCommandAdapter:
    """Issue MOVE / HOME commands and await their correlated outcome.

    Parameters
    ----------
    transport : CommandTransport
        Channel used to publish payloads to controller nodes.
    limits : MotorLimitsConfig
        Travel range used for clamping absolute targets.
    timeouts : CommandTimeoutsConfig
        Acknowledgement and completion windows.

    Examples
    --------
    >>> adapter = MotorCommandAdapter(transport, cfg.motor, cfg.timeouts)
    >>> outcome = await adapter.move(MotorRef("aa:bb", 0), 400)
    """

    def __init__(
        self,
        transport: CommandTransport,
        limits: MotorLimitsConfig,
        timeouts: CommandTimeoutsConfig,
    ) -> None:
        self.transport = transport
        self.limits = limits
        self.tracker = PendingCommandTracker(
            timeouts.ack_timeout_s, timeouts.completion_timeout_s,
        )
        self._seq = itertools.count(1)
        self._session = uuid.uuid4().hex[:8]

    def _next_id(self) -> str:
        return f"{self._session}-{next(self._seq)}"

    def handle_reply(self, message: dict[str, Any]) -> bool:
        """Feed one reply from the transport subscription."""
        return self.tracker.handle_reply(message)

    async def issue(
        self,
        node_mac: str,
        action: CommandAction | str,
        params: dict[str, Any],
        expect_ack: bool = True,
    ) -> CommandOutcome:
        """Publish one command and wait until it settles.

        Raises
        ------
        CommandTimeout
            If the ack or completion window elapses.
        CommandRejected
            If the device reports an error.
        CommandCancelled
            If the command is cancelled or the tracker disposed.
        """
        action_name = CommandAction(action).value
        cmd_id = self._next_id()
        future = self.tracker.register(cmd_id, action_name, node_mac, expect_ack)
        payload = {"cmd_id": cmd_id, "action": action_name, "params": params}
        logger.debug("Publishing %s %s to %s: %s", action_name, cmd_id, node_mac, params)
        try:
            await self.transport.publish(node_mac, payload)
        except Exception as exc:
            self.tracker.cancel(cmd_id, "publish failed")
            future.exception()
            raise CommandError(
                f"Failed to publish {action_name} to {node_mac}: {exc}", cmd_id,
            ) from exc
        return await future

    async def move(self, motor: MotorRef, position_steps: float) -> CommandOutcome:
        """Move one actuator to an absolute (clamped) step position."""
        clamp = clamp_target(position_steps, self.limits)
        if clamp.clamped:
            logger.warning(
                "Clamped %s target %.1f -> %d", motor.key, position_steps, clamp.target,
            )
        outcome = await self.issue(
            motor.node_mac,
            CommandAction.MOVE,
            {"target_ids": [motor.motor_index], "position_steps": clamp.target},
        )
        outcome.clamped = clamp.clamped
        return outcome

    async def nudge(
        self,
        motor: MotorRef,
        current_position: float,
        delta: float | None = None,
    ) -> NudgeTargets:
        """Move one actuator out by *delta* steps and back again.

        *delta* defaults to ``limits.nudge_delta_steps``.  The direction is
        chosen by :func:`compute_nudge_targets`; :class:`InsufficientHeadroom`
        is raised before anything is published when neither side fits.
        """
        if delta is None:
            delta = self.limits.nudge_delta_steps
        targets = compute_nudge_targets(
            current_position, delta,
            self.limits.min_position_steps, self.limits.max_position_steps,
        )
        logger.info(
            "Nudging %s %+d steps (%d -> %d)",
            motor.key, targets.direction * int(delta),
            targets.return_target, targets.outbound_target,
        )
        await self.move(motor, targets.outbound_target)
        await self.move(motor, targets.return_target)
        return targets

    async def home(self, motors: Iterable[MotorRef]) -> list[CommandOutcome]:
        """Home the given actuators, one command per controller node."""
        by_mac: dict[str, list[int]] = {}
        for motor in motors:
            by_mac.setdefault(motor.node_mac, []).append(motor.motor_index)
        return await _gather_outcomes(
            self.issue(mac, CommandAction.HOME, {"target_ids": sorted(ids)})
            for mac, ids in by_mac.items()
        )

    async def home_all(self, node_macs: Iterable[str]) -> list[CommandOutcome]:
        """Home every actuator on each listed controller node."""
        macs = list(dict.fromkeys(node_macs))
        logger.info("Homing %d controller node(s)", len(macs))
        return await _gather_outcomes(
            self.issue(mac, CommandAction.HOME, {"target_ids": HOME_ALL_TARGET})
            for mac in macs
        )

    def dispose(self) -> int:
        """Reject all in-flight commands (e.g. on shutdown)."""
        return self.tracker.dispose()


async def _gather_outcomes(coros: Iterable[Any]) -> list[CommandOutcome]:
    """Await all commands, then raise the first failure if any failed."""
    results = await asyncio.gather(*coros, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return list(results)
