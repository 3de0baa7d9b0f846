"""Typed records and enumerations shared by the engine components."""

from .alert import AlertEvent, SystemNotification
from .detection import AlertCandidate, DetectionConfig
from .enums import ActivityLabel, AlertSeverity, AlertType, DetectionStatus, SchedulerState
from .motion import MotionSample
from .pose import KEYPOINT_NAMES, NUM_KEYPOINTS, Keypoint, PoseEstimate
from .session import StreamSession

__all__ = [
    "KEYPOINT_NAMES",
    "NUM_KEYPOINTS",
    "ActivityLabel",
    "AlertCandidate",
    "AlertEvent",
    "AlertSeverity",
    "AlertType",
    "DetectionConfig",
    "DetectionStatus",
    "Keypoint",
    "MotionSample",
    "PoseEstimate",
    "SchedulerState",
    "StreamSession",
    "SystemNotification",
]
