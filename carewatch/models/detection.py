"""Detection configuration and alert candidate records."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from carewatch.models.enums import AlertSeverity, AlertType

MIN_SENSITIVITY = 0.0
MAX_SENSITIVITY = 100.0


class DetectionConfig(BaseModel):
    """Operator-tunable detection settings.

    Mutable at any time; the scheduler reads it fresh on every tick.
    Out-of-range sensitivity is clamped rather than rejected.
    """

    model_config = ConfigDict(validate_assignment=True)

    sensitivity: float = Field(default=50.0, ge=MIN_SENSITIVITY, le=MAX_SENSITIVITY)
    enable_fall_detection: bool = True
    enable_motion_tracking: bool = True
    sampling_interval_ms: int = Field(default=500, gt=0)

    @field_validator("sensitivity", mode="before")
    @classmethod
    def clamp_sensitivity(cls, v: Any) -> float:
        return max(MIN_SENSITIVITY, min(MAX_SENSITIVITY, float(v)))


class AlertCandidate(BaseModel):
    """A potential alert produced before it is identified and persisted."""

    model_config = ConfigDict(frozen=True)

    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
