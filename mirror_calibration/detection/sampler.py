"""Stable blob measurement on top of an opaque per-frame detector.

The detector itself (image processing) is out of scope: anything that
implements :class:`BlobSource` can feed the sampler.  The sampler:

    - waits a settle delay after motion
    - collects raw observations until ``min_samples`` are accepted or the
      per-attempt timeout elapses
    - discards observations far from the running medians, or far from an
      expected position when a tolerance is given
    - reduces accepted observations to medians and checks the jitter
      (absolute and median absolute deviation) against a threshold
    - retries rejected attempts with a fixed delay

All positions are normalized camera coordinates; ``size`` is normalized to
the frame as well.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, replace
from typing import Protocol, Sequence

import numpy as np

from mirror_calibration.configs.loader import DetectionConfig, RunnerSettings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class DetectionError(Exception):
    """Base class for rejected or failed blob measurements.

    ``kind`` is one of ``insufficient-samples``, ``too-jittery``,
    ``timeout`` or ``unavailable``.
    """

    kind = "error"


class InsufficientSamples(DetectionError):
    """Fewer than ``min_samples`` observations were accepted."""

    kind = "insufficient-samples"


class TooJittery(DetectionError):
    """Accepted observations spread more than the jitter threshold."""

    kind = "too-jittery"


class DetectionTimeout(DetectionError):
    """No usable observation arrived before the attempt timed out."""

    kind = "timeout"


class DetectionUnavailable(DetectionError):
    """The blob source itself failed; not retried."""

    kind = "unavailable"


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BlobObservation:
    """One raw detection for one camera frame."""

    x: float
    y: float
    size: float
    response: float = 0.0
    source_width: int | None = None
    source_height: int | None = None


@dataclass(frozen=True)
class MeasurementStats:
    """Spread of the observations behind a :class:`BlobMeasurement`."""

    sample_count: int
    median_x: float
    median_y: float
    median_size: float
    mad_x: float
    mad_y: float
    mad_size: float
    passed: bool


@dataclass(frozen=True)
class BlobMeasurement:
    """Median blob position, size and response over accepted samples."""

    x: float
    y: float
    size: float
    response: float
    captured_at: float
    source_width: int | None = None
    source_height: int | None = None
    stats: MeasurementStats | None = None

    def shifted(self, dx: float, dy: float) -> BlobMeasurement:
        """Copy translated by ``(dx, dy)``, stats medians included."""
        stats = self.stats
        if stats is not None:
            stats = replace(stats, median_x=stats.median_x + dx, median_y=stats.median_y + dy)
        return replace(self, x=self.x + dx, y=self.y + dy, stats=stats)


class BlobSource(Protocol):
    """Per-frame detector returning the most recent blob, if any."""

    async def read(
        self, expected_position: tuple[float, float] | None = None,
    ) -> BlobObservation | None: ...


# ---------------------------------------------------------------------------
# Reduction
# ---------------------------------------------------------------------------


def aggregate_observations(
    observations: Sequence[BlobObservation],
    config: DetectionConfig,
    captured_at: float | None = None,
) -> BlobMeasurement:
    """Reduce accepted observations to a single stable measurement.

    Parameters
    ----------
    observations : Sequence[BlobObservation]
        Accepted raw observations, oldest first.
    config : DetectionConfig
        ``min_samples`` and ``max_median_deviation`` are used.
    captured_at : float, optional
        Timestamp to record; defaults to ``time.time()``.

    Returns
    -------
    BlobMeasurement

    Raises
    ------
    InsufficientSamples
        If fewer than ``config.min_samples`` observations are given.
    TooJittery
        If any observation deviates from the median, or any MAD exceeds,
        ``config.max_median_deviation``.
    """
    if len(observations) < config.min_samples:
        raise InsufficientSamples(
            f"Only {len(observations)} of {config.min_samples} samples accepted"
        )

    # Columns: x, y, size
    samples = np.array([[obs.x, obs.y, obs.size] for obs in observations], dtype=float)
    medians = np.median(samples, axis=0)
    deviation = np.abs(samples - medians)
    mads = np.median(deviation, axis=0)
    threshold = config.max_median_deviation

    max_dev = float(deviation.max())
    max_mad = float(mads.max())
    passed = max_dev <= threshold and max_mad <= threshold

    stats = MeasurementStats(
        sample_count=len(observations),
        median_x=float(medians[0]),
        median_y=float(medians[1]),
        median_size=float(medians[2]),
        mad_x=float(mads[0]),
        mad_y=float(mads[1]),
        mad_size=float(mads[2]),
        passed=passed,
    )
    if not passed:
        axes = ("x", "y", "size")
        if max_mad > threshold:
            worst = int(np.argmax(mads))
            label, value = "median absolute deviation", max_mad
        else:
            worst = int(np.argmax(deviation.max(axis=0)))
            label, value = "max deviation", max_dev
        raise TooJittery(
            f"Blob measurement unstable: {label} ({axes[worst]}) {value:.4f} "
            f"exceeds {threshold:.4f} (samples={len(observations)})"
        )

    last = observations[-1]
    return BlobMeasurement(
        x=stats.median_x,
        y=stats.median_y,
        size=stats.median_size,
        response=float(np.median([obs.response for obs in observations])),
        captured_at=time.time() if captured_at is None else captured_at,
        source_width=last.source_width,
        source_height=last.source_height,
        stats=stats,
    )


def _within_running_medians(
    obs: BlobObservation,
    accepted: Sequence[BlobObservation],
    threshold: float,
) -> bool:
    if not accepted:
        return True
    medians = np.median([[a.x, a.y, a.size] for a in accepted], axis=0)
    offsets = np.abs(np.array([obs.x, obs.y, obs.size]) - medians)
    return bool((offsets <= threshold).all())


def _within_tolerance(
    obs: BlobObservation,
    expected: tuple[float, float] | None,
    tolerance: float | None,
) -> bool:
    if expected is None or tolerance is None:
        return True
    return math.hypot(obs.x - expected[0], obs.y - expected[1]) <= tolerance


# ---------------------------------------------------------------------------
# Sampler
# ---------------------------------------------------------------------------


class DetectionSampler:
    """Sample a stable blob position with retry and timeout.

    Parameters
    ----------
    source : BlobSource
        Opaque detector.
    detection : DetectionConfig
        Acceptance thresholds, capture delay and poll interval.
    settings : RunnerSettings
        ``sample_timeout_s``, ``max_detection_retries`` and
        ``retry_delay_s`` are used.
    """

    def __init__(
        self,
        source: BlobSource,
        detection: DetectionConfig,
        settings: RunnerSettings,
    ) -> None:
        self.source = source
        self.detection = detection
        self.settings = settings

    async def sample(
        self,
        settle_delay_s: float | None = None,
        expected_position: tuple[float, float] | None = None,
        tolerance: float | None = None,
    ) -> BlobMeasurement:
        """Measure the blob, retrying rejected attempts.

        Raises
        ------
        DetectionError
            The last rejection once ``max_detection_retries`` attempts
            have failed.
        DetectionUnavailable
            Immediately, if the source raises.
        """
        if settle_delay_s:
            await asyncio.sleep(settle_delay_s)

        attempts = max(1, self.settings.max_detection_retries)
        attempt = 1
        while True:
            try:
                return await self.sample_once(expected_position, tolerance)
            except DetectionUnavailable:
                raise
            except DetectionError as exc:
                if attempt >= attempts:
                    logger.warning(
                        "Detection failed after %d attempt(s): %s", attempts, exc,
                    )
                    raise
                logger.debug(
                    "Detection attempt %d/%d rejected (%s): %s",
                    attempt, attempts, exc.kind, exc,
                )
            if self.settings.retry_delay_s > 0:
                await asyncio.sleep(self.settings.retry_delay_s)
            attempt += 1

    async def sample_once(
        self,
        expected_position: tuple[float, float] | None = None,
        tolerance: float | None = None,
    ) -> BlobMeasurement:
        """One attempt: capture delay, collect, aggregate."""
        if self.detection.capture_delay_s > 0:
            await asyncio.sleep(self.detection.capture_delay_s)

        accepted: list[BlobObservation] = []
        discarded = 0
        timeout_s = self.settings.sample_timeout_s
        deadline = time.monotonic() + timeout_s

        while len(accepted) < self.detection.min_samples:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                obs = await asyncio.wait_for(
                    self.source.read(expected_position), timeout=remaining,
                )
            except asyncio.TimeoutError:
                break
            except Exception as exc:
                raise DetectionUnavailable(f"Blob source failed: {exc}") from exc

            if obs is None:
                await asyncio.sleep(self.detection.poll_interval_s)
                continue
            if not _within_tolerance(obs, expected_position, tolerance):
                discarded += 1
                continue
            if not _within_running_medians(
                obs, accepted, self.detection.ignore_sample_above_deviation,
            ):
                discarded += 1
                continue
            accepted.append(obs)

        if not accepted:
            raise DetectionTimeout(
                f"No blob detected within {timeout_s:.2f}s "
                f"({discarded} observation(s) discarded)"
            )
        if len(accepted) < self.detection.min_samples:
            raise InsufficientSamples(
                f"Only {len(accepted)} of {self.detection.min_samples} samples "
                f"accepted within {timeout_s:.2f}s"
            )
        return aggregate_observations(accepted, self.detection)
