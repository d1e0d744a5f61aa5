"""Motor command protocol: issuance, reply correlation, clamping, nudges."""

from mirror_calibration.hardware.command_protocol import (
    ClampResult,
    CommandAction,
    CommandCancelled,
    CommandError,
    CommandOutcome,
    CommandRejected,
    CommandTimeout,
    CommandTransport,
    InsufficientHeadroom,
    MotorCommandAdapter,
    MotorRef,
    NudgeTargets,
    PendingCommandTracker,
    clamp_steps,
    clamp_target,
    compute_nudge_targets,
    round_steps,
)

__all__ = [
    "ClampResult",
    "CommandAction",
    "CommandCancelled",
    "CommandError",
    "CommandOutcome",
    "CommandRejected",
    "CommandTimeout",
    "CommandTransport",
    "InsufficientHeadroom",
    "MotorCommandAdapter",
    "MotorRef",
    "NudgeTargets",
    "PendingCommandTracker",
    "clamp_steps",
    "clamp_target",
    "compute_nudge_targets",
    "round_steps",
]
