"""Robust statistics for calibration measurements.

Median / MAD based estimators keep a single noisy or oversized blob from
skewing grid pitch, tile size or detection acceptance.

* MAD (median absolute deviation): ``median(|x_i - center|)``.
* Normalized MAD: ``MAD * 1.4826``, comparable to a standard deviation for
  normally distributed data.
* Outliers: values further than ``threshold`` normalized MADs from the
  median.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

NORMALIZED_MAD_FACTOR = 1.4826
DEFAULT_OUTLIER_MAD_THRESHOLD = 3.0


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------


@dataclass
class OutlierResult:
    """Split of a sample into inliers and outliers.

    ``outlier_indices`` index into the original sequence.  Thresholds are
    infinite when no split was possible (empty input, single value, or
    zero spread).
    """

    inliers: list[float] = field(default_factory=list)
    outliers: list[float] = field(default_factory=list)
    outlier_indices: list[int] = field(default_factory=list)
    median: float = 0.0
    mad: float = 0.0
    nmad: float = 0.0
    upper_threshold: float = float("inf")
    lower_threshold: float = float("-inf")


# ---------------------------------------------------------------------------
# Estimators
# ---------------------------------------------------------------------------


def median(values: Sequence[float]) -> float:
    """Median of *values*; 0.0 for an empty sequence."""
    if len(values) == 0:
        return 0.0
    return float(np.median(np.asarray(values, dtype=float)))


def mad(values: Sequence[float], center: float) -> float:
    """Median absolute deviation of *values* around *center*."""
    if len(values) == 0:
        return 0.0
    return float(np.median(np.abs(np.asarray(values, dtype=float) - center)))


def normalized_mad(values: Sequence[float], center: float) -> float:
    return mad(values, center) * NORMALIZED_MAD_FACTOR


def detect_outliers(
    values: Sequence[float],
    threshold: float = DEFAULT_OUTLIER_MAD_THRESHOLD,
    direction: str = "both",
) -> OutlierResult:
    """Classify *values* as inliers or outliers using MAD distance.

    Parameters
    ----------
    values : Sequence[float]
        Sample to analyse.
    threshold : float
        Number of normalized MADs from the median tolerated.
    direction : str
        ``"both"``, ``"high"`` or ``"low"``: which tail is tested.

    Returns
    -------
    OutlierResult
        Inlier/outlier split plus the statistics used.
    """
    if direction not in ("both", "high", "low"):
        raise ValueError(f"direction must be 'both', 'high' or 'low', got {direction!r}")

    result = OutlierResult()
    if len(values) == 0:
        return result
    if len(values) == 1:
        result.inliers = [float(values[0])]
        result.median = float(values[0])
        return result

    arr = np.asarray(values, dtype=float)
    result.median = float(np.median(arr))
    result.mad = float(np.median(np.abs(arr - result.median)))
    result.nmad = result.mad * NORMALIZED_MAD_FACTOR

    if result.mad == 0:
        result.inliers = arr.tolist()
        return result

    deviation = threshold * result.nmad
    result.upper_threshold = result.median + deviation
    result.lower_threshold = result.median - deviation

    for index, value in enumerate(arr.tolist()):
        high = direction in ("both", "high") and value > result.upper_threshold
        low = direction in ("both", "low") and value < result.lower_threshold
        if high or low:
            result.outliers.append(value)
            result.outlier_indices.append(index)
        else:
            result.inliers.append(value)
    return result


def robust_max(
    values: Sequence[float],
    threshold: float = DEFAULT_OUTLIER_MAD_THRESHOLD,
) -> float:
    """Largest value that is not a high outlier.

    Falls back to the plain maximum when every value is an outlier; 0.0 for
    empty input.
    """
    if len(values) == 0:
        return 0.0
    split = detect_outliers(values, threshold, direction="high")
    if not split.inliers:
        return float(max(values))
    return float(max(split.inliers))


def robust_min(
    values: Sequence[float],
    threshold: float = DEFAULT_OUTLIER_MAD_THRESHOLD,
) -> float:
    """Smallest value that is not a low outlier."""
    if len(values) == 0:
        return 0.0
    split = detect_outliers(values, threshold, direction="low")
    if not split.inliers:
        return float(min(values))
    return float(min(split.inliers))
