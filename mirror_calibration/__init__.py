"""
Mirror Calibration Package.

Calibration and motion mapping for a grid of dual-axis steerable mirrors.
Drives the actuators through an opaque command transport, measures each
mirror's reflection through an opaque blob detector, and turns the results
into a persisted profile used to validate and play back patterns.

Subpackages:
    hardware: Motor command protocol (correlation, timeouts, clamping)
    detection: Blob sampling gateway with retries and jitter checks
    calibration: Per-tile engine, run state machine and calibration math
    validation: Pattern / waypoint reachability checks
    playback: Angle- and profile-based step target planning
    persistence: Versioned profile and settings storage
    configs: Configuration loading and validation
"""

__all__ = [
    "hardware",
    "detection",
    "calibration",
    "validation",
    "playback",
    "persistence",
    "configs",
    "utils",
]
