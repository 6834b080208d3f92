"""
Engagement scoring helpers.

Observed engagement rates are mapped onto the same 0-100 scale as
predicted scores, and predictions are corrected with the per-platform
``gain * predicted + bias`` calibration owned by the reconciliation
engine.
"""

from typing import Callable

from postflow.models import CalibrationState, Platform, PlatformCalibration

DEFAULT_ENGAGEMENT_RATE_CEILING = 0.10


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def normalize_engagement(
    rate: float, ceiling: float = DEFAULT_ENGAGEMENT_RATE_CEILING
) -> float:
    """Engagement rate -> 0-100 score; ``ceiling`` and above score 100."""
    if ceiling <= 0:
        raise ValueError(f"ceiling must be positive, got {ceiling}")
    return _clamp(100.0 * rate / ceiling)


def calibrated_score(calibration: PlatformCalibration, predicted: float) -> float:
    return _clamp(calibration.gain * predicted + calibration.bias)


class EngagementScorer:
    """Read-only view of calibration for callers that forecast engagement.

    Args:
        snapshot: Returns the current calibration snapshot, normally
            :meth:`ReconciliationEngine.snapshot`.
    """

    def __init__(self, snapshot: Callable[[], CalibrationState]) -> None:
        self._snapshot = snapshot

    def calibrated(self, platform: Platform, predicted: float) -> float:
        """Apply the current calibration of *platform* to a raw forecast."""
        state = self._snapshot()
        return calibrated_score(state.for_platform(platform), predicted)


__all__ = [
    "DEFAULT_ENGAGEMENT_RATE_CEILING",
    "EngagementScorer",
    "calibrated_score",
    "normalize_engagement",
]
