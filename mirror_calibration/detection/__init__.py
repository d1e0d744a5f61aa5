"""Detection sampler gateway around an opaque blob source."""

from mirror_calibration.detection.sampler import (
    BlobMeasurement,
    BlobObservation,
    BlobSource,
    DetectionError,
    DetectionSampler,
    DetectionTimeout,
    DetectionUnavailable,
    InsufficientSamples,
    MeasurementStats,
    TooJittery,
    aggregate_observations,
)

__all__ = [
    "BlobMeasurement",
    "BlobObservation",
    "BlobSource",
    "DetectionError",
    "DetectionSampler",
    "DetectionTimeout",
    "DetectionUnavailable",
    "InsufficientSamples",
    "MeasurementStats",
    "TooJittery",
    "aggregate_observations",
]
