"""
Playback module.

Turns mirror angles (legacy solver path) or a calibration profile plus a
pattern into absolute per-axis motor step targets.
"""

from mirror_calibration.playback.planner import (
    PlaybackError,
    ProfileAxisTarget,
    ProfilePlaybackPlan,
    TilePlaybackPlan,
    is_tile_calibrated,
    plan_profile_playback,
)
from mirror_calibration.playback.targets import (
    AxisPlan,
    AxisTarget,
    MirrorPlan,
    SkippedAxis,
    build_axis_targets,
    convert_angle_to_steps,
)

__all__ = [
    "AxisPlan",
    "AxisTarget",
    "MirrorPlan",
    "PlaybackError",
    "ProfileAxisTarget",
    "ProfilePlaybackPlan",
    "SkippedAxis",
    "TilePlaybackPlan",
    "build_axis_targets",
    "convert_angle_to_steps",
    "is_tile_calibrated",
    "plan_profile_playback",
]
