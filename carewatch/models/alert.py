"""Alert log records."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_serializer

from carewatch.models.detection import AlertCandidate
from carewatch.models.enums import AlertSeverity, AlertType


class AlertEvent(BaseModel):
    """A persisted, uniquely identified alert for one subject.

    Append-only: the engine only ever flips ``read``.
    """

    id: str
    subject_id: str
    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp: datetime
    read: bool = False

    def to_candidate(self) -> AlertCandidate:
        return AlertCandidate(
            type=self.type, severity=self.severity, title=self.title, message=self.message
        )


class SystemNotification(BaseModel):
    """Broadcast-scoped alert converted into personal alerts by each observer.

    ``processed_by`` holds the observer ids that already created their own
    AlertEvent for this notification.
    """

    id: str
    created_by: str
    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp: datetime
    processed_by: set[str] = Field(default_factory=set)

    @field_serializer("processed_by")
    def serialize_processed_by(self, value: set[str]) -> list[str]:
        return sorted(value)

    def to_candidate(self) -> AlertCandidate:
        return AlertCandidate(
            type=self.type, severity=self.severity, title=self.title, message=self.message
        )
