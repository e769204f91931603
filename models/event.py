"""SQLModel tables for mirrored events and their attendees."""
from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import Column, ForeignKey, String, UniqueConstraint
from sqlmodel import Field, SQLModel

from utils.datetime_utils import utc_now


EVENT_STATUSES = ("confirmed", "tentative", "cancelled")
PENDING_ACTIONS = ("create", "update", "delete")
RESPONSE_STATUSES = ("needsAction", "accepted", "declined", "tentative")


def new_local_id() -> str:
    return str(uuid.uuid4())


class Event(SQLModel, table=True):
    id: str = Field(default_factory=new_local_id, primary_key=True)
    remote_id: Optional[str] = Field(default=None, unique=True, index=True)
    calendar_id: str = Field(index=True)
    summary: str = ""
    description: str = ""
    location: str = ""
    # all-day events keep midnight UTC here and their dates in start_date/end_date
    start: datetime = Field(index=True)
    end: datetime = Field(index=True)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    all_day: bool = False
    time_zone: Optional[str] = None
    status: str = "confirmed"
    self_response: Optional[str] = None
    organizer_email: Optional[str] = None
    organizer_name: Optional[str] = None
    is_organizer: bool = False
    recurrence_rule: Optional[str] = None
    recurring_event_id: Optional[str] = Field(default=None, index=True)
    html_link: Optional[str] = None
    hangout_link: Optional[str] = None
    conference_data: Optional[str] = None  # JSON
    transparency: str = "opaque"
    visibility: str = "default"
    color_id: Optional[str] = None
    reminders: Optional[str] = None  # JSON
    attachments: Optional[str] = None  # JSON
    etag: Optional[str] = None
    local_only: bool = False
    pending_action: Optional[str] = None
    pending_payload: Optional[str] = None  # JSON
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Attendee(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("event_id", "email", name="ux_attendee_event_email"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("event.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )
    )
    email: str = Field(index=True)
    display_name: Optional[str] = None
    response_status: str = "needsAction"
    is_organizer: bool = False
    is_self: bool = False


__all__ = [
    "Attendee",
    "EVENT_STATUSES",
    "Event",
    "PENDING_ACTIONS",
    "RESPONSE_STATUSES",
    "new_local_id",
]
