"""Pose estimate records in COCO 17-keypoint layout."""

from __future__ import annotations

from typing import Any

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator

# COCO keypoint order:
# 0: nose, 1: left_eye, 2: right_eye, 3: left_ear, 4: right_ear,
# 5: left_shoulder, 6: right_shoulder, 7: left_elbow, 8: right_elbow,
# 9: left_wrist, 10: right_wrist, 11: left_hip, 12: right_hip,
# 13: left_knee, 14: right_knee, 15: left_ankle, 16: right_ankle
KEYPOINT_NAMES: tuple[str, ...] = (
    "nose",
    "left_eye",
    "right_eye",
    "left_ear",
    "right_ear",
    "left_shoulder",
    "right_shoulder",
    "left_elbow",
    "right_elbow",
    "left_wrist",
    "right_wrist",
    "left_hip",
    "right_hip",
    "left_knee",
    "right_knee",
    "left_ankle",
    "right_ankle",
)

NUM_KEYPOINTS = len(KEYPOINT_NAMES)


class Keypoint(BaseModel):
    """A named anatomical landmark in frame pixel space."""

    model_config = ConfigDict(frozen=True)

    name: str
    x: float
    y: float
    confidence: float = Field(ge=0.0, le=1.0)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if v not in KEYPOINT_NAMES:
            raise ValueError(f"Unknown keypoint name: {v}")
        return v


class PoseEstimate(BaseModel):
    """The full set of keypoints for one frame.

    Keypoints are always 17 entries in COCO order; undetected landmarks are
    present with low confidence rather than missing.
    """

    model_config = ConfigDict(frozen=True)

    keypoints: tuple[Keypoint, ...]
    frame_width: float = Field(gt=0)
    frame_height: float = Field(gt=0)

    @field_validator("keypoints")
    @classmethod
    def validate_keypoints(cls, v: tuple[Keypoint, ...]) -> tuple[Keypoint, ...]:
        if len(v) != NUM_KEYPOINTS:
            raise ValueError(f"Expected {NUM_KEYPOINTS} keypoints, got {len(v)}")
        names = tuple(kp.name for kp in v)
        if names != KEYPOINT_NAMES:
            raise ValueError("Keypoints must be in COCO order")
        return v

    def keypoint(self, name: str) -> Keypoint:
        """Return the keypoint with the given body-part name."""
        return self.keypoints[KEYPOINT_NAMES.index(name)]

    def to_array(self) -> np.ndarray:
        """Return keypoints as a [17, 3] array of (x, y, confidence)."""
        return np.array([[kp.x, kp.y, kp.confidence] for kp in self.keypoints], dtype=np.float64)

    @classmethod
    def from_array(cls, array: Any, frame_width: float, frame_height: float) -> PoseEstimate:
        """Build a PoseEstimate from a [17, 3] array of (x, y, confidence) rows.

        Confidence values are clipped into [0, 1] since some models emit raw
        scores slightly outside that range.
        """
        arr = np.asarray(array, dtype=np.float64)
        if arr.shape != (NUM_KEYPOINTS, 3):
            raise ValueError(f"Expected array of shape ({NUM_KEYPOINTS}, 3), got {arr.shape}")
        conf = np.clip(arr[:, 2], 0.0, 1.0)
        keypoints = tuple(
            Keypoint(name=name, x=float(arr[i, 0]), y=float(arr[i, 1]), confidence=float(conf[i]))
            for i, name in enumerate(KEYPOINT_NAMES)
        )
        return cls(keypoints=keypoints, frame_width=frame_width, frame_height=frame_height)
