"""Monitoring session records."""

from datetime import datetime

from pydantic import BaseModel


class StreamSession(BaseModel):
    """One monitoring session for a subject.

    At most one session per subject is active at a time. ``slot`` numbers a
    subject's sessions in creation order and is part of the id.
    """

    id: str
    subject_id: str
    slot: int = 0
    start_time: datetime
    end_time: datetime | None = None
    active: bool = True
