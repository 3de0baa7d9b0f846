"""Detection state machine: MotionSample + DetectionConfig -> status and candidates.

Decision rule, evaluated in priority order:

1. Fall: fall detection enabled, vertical_distribution < 0.3 and
   normalized_motion_value > 0.6 -> ALERT, emits a critical fall_detected
   candidate.
2. Unusual movement: normalized_motion_value > adjusted threshold
   (0.7 at sensitivity 0 down to 0.3 at sensitivity 100) -> WARNING; also
   emits a warning motion_detected candidate when the value exceeds 0.85.
3. Otherwise NORMAL with no candidate.

classify() is a total function of the current sample and config. Any
path dependence (debounce) lives in DebouncedStatusFilter, applied on top.
"""

from __future__ import annotations

from dataclasses import dataclass

from carewatch.core.logging import get_logger
from carewatch.models.detection import (
    MAX_SENSITIVITY,
    MIN_SENSITIVITY,
    AlertCandidate,
    DetectionConfig,
)
from carewatch.models.enums import AlertSeverity, AlertType, DetectionStatus
from carewatch.models.motion import MotionSample

logger = get_logger(__name__)

FALL_VERTICAL_DISTRIBUTION_MAX = 0.3
FALL_MOTION_MIN = 0.6
MOTION_ALERT_MIN = 0.85

# Threshold in percent: 70 at sensitivity 0, 30 at sensitivity 100
_BASE_THRESHOLD_PCT = 70.0
_THRESHOLD_RANGE_PER_SENSITIVITY = 0.4

FALL_CANDIDATE = AlertCandidate(
    type=AlertType.FALL_DETECTED,
    severity=AlertSeverity.CRITICAL,
    title="Fall Detected",
    message="Potential fall detected in the monitoring area. Please check immediately.",
)

MOTION_CANDIDATE = AlertCandidate(
    type=AlertType.MOTION_DETECTED,
    severity=AlertSeverity.WARNING,
    title="Unusual Movement Detected",
    message="Abnormal movement detected in the monitoring area.",
)


def adjusted_threshold(sensitivity: float) -> float:
    """Motion threshold for the warning branch.

    Equivalent to ``0.7 - (sensitivity / 100) * 0.4``, computed in percent so
    round sensitivities land on exact thresholds (50 -> 0.5). Sensitivity is
    clamped to [0, 100], so the result is always within [0.3, 0.7] and
    non-increasing in sensitivity.
    """
    s = max(MIN_SENSITIVITY, min(MAX_SENSITIVITY, sensitivity))
    return (_BASE_THRESHOLD_PCT - s * _THRESHOLD_RANGE_PER_SENSITIVITY) / 100.0


@dataclass(frozen=True, slots=True)
class DetectionResult:
    """Status for one tick plus the alert candidates it produced."""

    status: DetectionStatus
    candidates: tuple[AlertCandidate, ...] = ()


def classify(sample: MotionSample, config: DetectionConfig) -> DetectionResult:
    """Classify one motion sample under the current configuration."""
    motion = sample.normalized_motion_value

    if (
        config.enable_fall_detection
        and sample.vertical_distribution < FALL_VERTICAL_DISTRIBUTION_MAX
        and motion > FALL_MOTION_MIN
    ):
        return DetectionResult(DetectionStatus.ALERT, (FALL_CANDIDATE,))

    if motion > adjusted_threshold(config.sensitivity):
        if motion > MOTION_ALERT_MIN:
            return DetectionResult(DetectionStatus.WARNING, (MOTION_CANDIDATE,))
        return DetectionResult(DetectionStatus.WARNING)

    return DetectionResult(DetectionStatus.NORMAL)


class DebouncedStatusFilter:
    """Publish a new status only after it persists for N consecutive ticks.

    While a change is pending, the previously published status is reported
    and the tick's candidates are dropped. With ``required_ticks=1`` every
    result passes through unchanged.
    """

    def __init__(self, required_ticks: int = 1) -> None:
        if required_ticks < 1:
            raise ValueError(f"required_ticks must be >= 1, got {required_ticks}")
        self.required_ticks = required_ticks
        self._published = DetectionStatus.NORMAL
        self._pending: DetectionStatus | None = None
        self._pending_count = 0

    @property
    def status(self) -> DetectionStatus:
        return self._published

    def apply(self, result: DetectionResult) -> DetectionResult:
        if result.status == self._published:
            self._pending = None
            self._pending_count = 0
            return result

        if result.status == self._pending:
            self._pending_count += 1
        else:
            self._pending = result.status
            self._pending_count = 1

        if self._pending_count >= self.required_ticks:
            logger.debug(f"Detection status {self._published} -> {result.status}")
            self._published = result.status
            self._pending = None
            self._pending_count = 0
            return result

        return DetectionResult(self._published)

    def reset(self) -> None:
        self._published = DetectionStatus.NORMAL
        self._pending = None
        self._pending_count = 0
