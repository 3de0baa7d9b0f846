"""Motion metric calculator: PoseEstimate -> MotionSample.

Metrics per tick:
    - avg_confidence: mean confidence over all 17 keypoints
    - vertical_distribution: y-span of visible keypoints / frame height
    - normalized_motion_value: avg_confidence * motion(previous, current), clamped
    - activity_label: wrist vs knee vertical ordering

A keypoint is "visible" when its confidence is strictly above 0.3. A pose
with no visible keypoint produces no sample and the tick is skipped.

The motion term is pluggable. The default, EwmaDisplacementMotion, measures
frame-to-frame displacement of keypoints visible in both poses and smooths it
with an exponentially weighted moving average.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import numpy as np

from carewatch.core.logging import get_logger
from carewatch.models.enums import ActivityLabel
from carewatch.models.motion import MotionSample
from carewatch.models.pose import PoseEstimate

logger = get_logger(__name__)

VISIBILITY_THRESHOLD = 0.3

_WRISTS = ("left_wrist", "right_wrist")
_KNEES = ("left_knee", "right_knee")


class MotionFunction(Protocol):
    """Motion measure in [0, 1] between two consecutive poses.

    ``previous_motion`` is the value this function returned on the previous
    sample (0.0 when there is none), which lets implementations smooth.
    """

    def __call__(
        self,
        previous: PoseEstimate | None,
        current: PoseEstimate,
        previous_motion: float,
    ) -> float: ...


def clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


def mean_keypoint_displacement(
    previous: PoseEstimate,
    current: PoseEstimate,
    threshold: float = VISIBILITY_THRESHOLD,
) -> float | None:
    """Mean displacement of keypoints visible in both poses, in frame heights.

    Returns:
        Mean Euclidean displacement divided by the current frame height, or
        None if no keypoint is visible in both poses.
    """
    prev = previous.to_array()
    cur = current.to_array()
    mask = (prev[:, 2] > threshold) & (cur[:, 2] > threshold)
    if not mask.any():
        return None
    distances = np.linalg.norm(cur[mask, :2] - prev[mask, :2], axis=1)
    return float(distances.mean() / current.frame_height)


@dataclass(frozen=True, slots=True)
class EwmaDisplacementMotion:
    """Exponentially smoothed keypoint displacement.

    Attributes:
        alpha: Weight of the newest measurement (1.0 disables smoothing)
        full_scale: Displacement, as a fraction of frame height per tick,
            that maps to a raw motion of 1.0
    """

    alpha: float = 0.5
    full_scale: float = 0.1

    def __post_init__(self) -> None:
        if not 0.0 < self.alpha <= 1.0:
            raise ValueError(f"alpha must be in (0, 1], got {self.alpha}")
        if self.full_scale <= 0.0:
            raise ValueError(f"full_scale must be positive, got {self.full_scale}")

    def __call__(
        self,
        previous: PoseEstimate | None,
        current: PoseEstimate,
        previous_motion: float,
    ) -> float:
        if previous is None:
            return 0.0
        displacement = mean_keypoint_displacement(previous, current)
        raw = 0.0 if displacement is None else clamp(displacement / self.full_scale)
        return clamp(self.alpha * raw + (1.0 - self.alpha) * previous_motion)


@dataclass(frozen=True, slots=True)
class MotionState:
    """What the calculator carries from one sample to the next."""

    pose: PoseEstimate
    motion: float = 0.0


def visible_keypoints_y(
    pose: PoseEstimate, threshold: float = VISIBILITY_THRESHOLD
) -> list[float]:
    return [kp.y for kp in pose.keypoints if kp.confidence > threshold]


def classify_activity(
    pose: PoseEstimate, threshold: float = VISIBILITY_THRESHOLD
) -> ActivityLabel:
    """Classify posture from wrist vs knee ordering (pixel y grows downward).

    Both wrists above both knees -> Sitting; both wrists below both knees ->
    Standing; anything else, including a missing wrist or knee, -> Unknown.
    """
    wrists = [pose.keypoint(name) for name in _WRISTS]
    knees = [pose.keypoint(name) for name in _KNEES]
    if any(kp.confidence <= threshold for kp in (*wrists, *knees)):
        return ActivityLabel.UNKNOWN

    wrist_ys = [kp.y for kp in wrists]
    knee_ys = [kp.y for kp in knees]
    if max(wrist_ys) < min(knee_ys):
        return ActivityLabel.SITTING
    if min(wrist_ys) > max(knee_ys):
        return ActivityLabel.STANDING
    return ActivityLabel.UNKNOWN


def compute_motion_sample(
    pose: PoseEstimate,
    previous: MotionState | None = None,
    motion_fn: MotionFunction | None = None,
) -> tuple[MotionSample, MotionState] | None:
    """Compute a MotionSample and the state to feed into the next call.

    Args:
        pose: Current pose estimate
        previous: State returned by the previous successful call, if any
        motion_fn: Motion measure; defaults to EwmaDisplacementMotion()

    Returns:
        (sample, next_state), or None when no keypoint is visible (skip)
    """
    visible_ys = visible_keypoints_y(pose)
    if not visible_ys:
        return None

    if motion_fn is None:
        motion_fn = EwmaDisplacementMotion()

    avg_confidence = clamp(
        sum(kp.confidence for kp in pose.keypoints) / len(pose.keypoints)
    )
    vertical_distribution = clamp((max(visible_ys) - min(visible_ys)) / pose.frame_height)

    previous_pose = previous.pose if previous is not None else None
    previous_motion = previous.motion if previous is not None else 0.0
    motion = clamp(motion_fn(previous_pose, pose, previous_motion))

    sample = MotionSample(
        avg_confidence=avg_confidence,
        vertical_distribution=vertical_distribution,
        normalized_motion_value=clamp(avg_confidence * motion),
        activity_label=classify_activity(pose),
    )
    return sample, MotionState(pose=pose, motion=motion)


class MotionMetricCalculator:
    """Stateful wrapper that threads MotionState between consecutive ticks."""

    def __init__(self, motion_fn: MotionFunction | None = None) -> None:
        self._motion_fn: MotionFunction = motion_fn or EwmaDisplacementMotion()
        self._state: MotionState | None = None

    @property
    def state(self) -> MotionState | None:
        return self._state

    def compute(self, pose: PoseEstimate) -> MotionSample | None:
        """Return the sample for this pose, or None to skip the tick.

        Skipped poses leave the carried state untouched.
        """
        result = compute_motion_sample(pose, self._state, self._motion_fn)
        if result is None:
            logger.debug("No visible keypoints; skipping motion sample")
            return None
        sample, self._state = result
        return sample

    def reset(self) -> None:
        """Forget the previous pose, e.g. when monitoring restarts."""
        self._state = None
