"""Enumeration types for the monitoring engine."""

from enum import Enum


class DetectionStatus(str, Enum):
    """Instantaneous classification of the monitored subject.

    Recomputed on every tick and never persisted; the alert log is the
    durable record of what happened.
    """

    NORMAL = "normal"
    WARNING = "warning"
    ALERT = "alert"

    def __str__(self) -> str:
        return self.value


class AlertSeverity(str, Enum):
    """Alert severity levels."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    def __str__(self) -> str:
        return self.value


class AlertType(str, Enum):
    """Kinds of alerts written to the alert log."""

    FALL_DETECTED = "fall_detected"
    MOTION_DETECTED = "motion_detected"
    STREAM_STARTED = "stream_started"
    STREAM_ENDED = "stream_ended"
    TEST = "test"

    def __str__(self) -> str:
        return self.value


class ActivityLabel(str, Enum):
    """Coarse posture label derived from wrist/knee ordering."""

    SITTING = "Sitting"
    STANDING = "Standing"
    UNKNOWN = "Unknown"

    def __str__(self) -> str:
        return self.value


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"

    def __str__(self) -> str:
        return self.value
