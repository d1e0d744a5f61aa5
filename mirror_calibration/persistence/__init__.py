"""
Persistence module.

Versioned JSON storage for calibration profiles and YAML storage for the
operator's last runner settings.
"""

from mirror_calibration.persistence.profiles import (
    STORAGE_VERSION,
    CalibrationProfile,
    ProfileStorageError,
    ProfileStore,
    build_profile_from_summary,
    compute_grid_state_fingerprint,
    merge_tile_results,
    profile_to_run_summary,
)
from mirror_calibration.persistence.settings import (
    load_runner_settings,
    save_runner_settings,
)

__all__ = [
    "STORAGE_VERSION",
    "CalibrationProfile",
    "ProfileStorageError",
    "ProfileStore",
    "build_profile_from_summary",
    "compute_grid_state_fingerprint",
    "merge_tile_results",
    "load_runner_settings",
    "profile_to_run_summary",
    "save_runner_settings",
]
