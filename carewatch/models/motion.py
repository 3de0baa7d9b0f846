"""Motion sample derived from a single pose estimate."""

from pydantic import BaseModel, ConfigDict, Field

from carewatch.models.enums import ActivityLabel


class MotionSample(BaseModel):
    """Per-tick motion and posture metrics.

    Only produced when at least one keypoint is visible; otherwise the tick
    is skipped entirely.
    """

    model_config = ConfigDict(frozen=True)

    avg_confidence: float = Field(ge=0.0, le=1.0)
    vertical_distribution: float = Field(ge=0.0, le=1.0)
    normalized_motion_value: float = Field(ge=0.0, le=1.0)
    activity_label: ActivityLabel = ActivityLabel.UNKNOWN
