"""Engine components: pose source, motion metrics, detection, alerts, scheduling, sessions."""

from .alert_dispatcher import (
    AlertDispatcher,
    CandidateCooldown,
    NotificationObserver,
    generate_record_id,
)
from .detection_state import DebouncedStatusFilter, DetectionResult, adjusted_threshold, classify
from .motion_metrics import (
    EwmaDisplacementMotion,
    MotionFunction,
    MotionMetricCalculator,
    compute_motion_sample,
)
from .pose_source import ArrayPoseEstimator, PoseEstimator, PoseSourceAdapter
from .redis_store import RedisRecordStore
from .sampling_scheduler import SamplingScheduler
from .session_manager import SessionLifecycleManager
from .store import InMemoryRecordStore, Query, RecordStore

__all__ = [
    "AlertDispatcher",
    "ArrayPoseEstimator",
    "CandidateCooldown",
    "DebouncedStatusFilter",
    "DetectionResult",
    "EwmaDisplacementMotion",
    "InMemoryRecordStore",
    "MotionFunction",
    "MotionMetricCalculator",
    "NotificationObserver",
    "PoseEstimator",
    "PoseSourceAdapter",
    "Query",
    "RecordStore",
    "RedisRecordStore",
    "SamplingScheduler",
    "SessionLifecycleManager",
    "adjusted_threshold",
    "classify",
    "compute_motion_sample",
    "generate_record_id",
]
