"""Threshold-based severity classification."""

from dbwatch.config import Level, ThresholdSet


def classify(value: float | None, thresholds: ThresholdSet) -> Level | None:
    """Return the highest tier whose floor ``value`` meets, or None if none does."""
    if value is None:
        return None
    if thresholds.critical is not None and value >= thresholds.critical:
        return "critical"
    if thresholds.warning is not None and value >= thresholds.warning:
        return "warning"
    if thresholds.info is not None and value >= thresholds.info:
        return "info"
    return None
