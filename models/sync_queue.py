"""SQLModel table for deferred remote mutations."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from utils.datetime_utils import utc_now


QUEUE_ACTIONS = ("create", "update", "delete", "rsvp")


class SyncQueueItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    # local event id; remote ids travel in the payload
    event_ref: str = Field(index=True)
    calendar_id: str
    action: str
    payload: str = "{}"
    attempts: int = Field(default=0)
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now, index=True)


__all__ = ["QUEUE_ACTIONS", "SyncQueueItem"]
